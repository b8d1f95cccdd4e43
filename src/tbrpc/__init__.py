"""Python API and CLI for debugging ThingsBoard two-way RPC calls."""

from tbrpc.client import (
    AuthError,
    Client,
    FetchError,
    InvalidCredentials,
    InvalidParams,
    RefreshRejected,
    RequestSetupError,
    ServerError,
    SessionExpired,
    ThingsBoardError,
    TokenExpiredError,
    Unreachable,
    parse_params,
)
from tbrpc.models import Device, DeviceSession, ErrorKind, RpcResult, Screen, Session
from tbrpc.store import ConfigStore, Favorites, RpcLog, SessionStore

__all__ = [
    "AuthError",
    "Client",
    "ConfigStore",
    "Device",
    "DeviceSession",
    "ErrorKind",
    "Favorites",
    "FetchError",
    "InvalidCredentials",
    "InvalidParams",
    "RefreshRejected",
    "RequestSetupError",
    "RpcLog",
    "RpcResult",
    "Screen",
    "ServerError",
    "Session",
    "SessionExpired",
    "SessionStore",
    "ThingsBoardError",
    "TokenExpiredError",
    "Unreachable",
    "parse_params",
]
