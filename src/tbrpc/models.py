"""Value types shared by the client, the local store and the CLI."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from enum import StrEnum


class Screen(StrEnum):
    """Screens the interactive console navigates between."""

    LOGIN = "login"
    DEVICE_LIST = "deviceList"
    RPC_CONSOLE = "rpcConsole"


class ErrorKind(StrEnum):
    """Classification of a failed RPC call."""

    SERVER_REJECTED = "ServerRejected"
    NO_RESPONSE = "NoResponse"
    REQUEST_SETUP_ERROR = "RequestSetupError"
    INVALID_PARAMS = "InvalidParams"


@dataclass
class Session:
    """The logged-in user's session on a ThingsBoard server.

    ``token`` and ``refresh_token`` are always set or cleared together; use
    :meth:`update_tokens` and :meth:`clear_tokens` rather than assigning them
    one at a time.
    """

    server_url: str = ""
    """Base URL of the server, without a trailing slash."""

    username: str = ""
    """Login name, display only."""

    token: str | None = None
    """JWT bearer token; ``None`` when logged out."""

    refresh_token: str | None = None
    """Credential exchanged for a new :attr:`token`."""

    user_id: str | None = None
    """Server-side user identifier, display only."""

    remember_me: bool = True
    """Keep server URL and username after logout."""

    def __post_init__(self) -> None:
        self.server_url = self.server_url.strip().rstrip("/")

    @property
    def logged_in(self) -> bool:
        return bool(self.token)

    @property
    def token_expiry(self) -> float | None:
        """Expiry of :attr:`token` as a Unix timestamp, if it is a JWT."""
        if not self.token:
            return None
        exp = _decode_jwt_claims(self.token).get("exp")
        try:
            return float(str(exp)) if exp is not None else None
        except ValueError:
            return None

    def update_tokens(self, token: str, refresh_token: str | None = None) -> None:
        """Install a new token pair.

        A missing *refresh_token* keeps the current one, so a session never
        holds a token it cannot renew.
        """
        if not token:
            raise ValueError("token must not be empty")
        self.token = token
        if refresh_token:
            self.refresh_token = refresh_token
        if not self.user_id:
            user_id = _decode_jwt_claims(token).get("userId")
            if user_id:
                self.user_id = str(user_id)

    def clear_tokens(self) -> None:
        self.token = None
        self.refresh_token = None

    def to_dict(self) -> dict[str, object]:
        return {
            "serverUrl": self.server_url,
            "username": self.username,
            "token": self.token,
            "refreshToken": self.refresh_token,
            "userId": self.user_id,
            "rememberMe": self.remember_me,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> Session:
        session = cls(
            server_url=str(data.get("serverUrl") or ""),
            username=str(data.get("username") or ""),
            user_id=str(data["userId"]) if data.get("userId") else None,
            remember_me=bool(data.get("rememberMe", True)),
        )
        token = data.get("token")
        refresh_token = data.get("refreshToken")
        # A stored token without its refresh token is treated as logged out.
        if token and refresh_token:
            session.token = str(token)
            session.refresh_token = str(refresh_token)
        return session


@dataclass
class DeviceSession:
    """Device-scoped session used by the RPC console."""

    url: str
    access_token: str
    device_name: str
    device_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "url": self.url,
            "accessToken": self.access_token,
            "deviceName": self.device_name,
            "deviceId": self.device_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> DeviceSession | None:
        url = data.get("url")
        device_id = data.get("deviceId")
        if not url or not device_id:
            return None
        return cls(
            url=str(url).rstrip("/"),
            access_token=str(data.get("accessToken") or ""),
            device_name=str(data.get("deviceName") or device_id),
            device_id=str(device_id),
        )


@dataclass(frozen=True)
class Device:
    """A device as reported by the tenant device list.

    ``active`` is the online status at fetch time, not a live value.
    """

    id: str
    name: str
    type: str | None = None
    active: bool = False

    @classmethod
    def from_api(cls, data: dict[str, object]) -> Device:
        raw_id = data["id"]
        device_id = raw_id.get("id") if isinstance(raw_id, dict) else raw_id
        if not device_id:
            raise ValueError(f"device record without an id: {raw_id!r}")
        dev_type = data.get("type")
        return cls(
            id=str(device_id),
            name=str(data.get("name") or device_id),
            type=str(dev_type) if dev_type else None,
            active=bool(data.get("active", False)),
        )

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on name or type."""
        query = query.strip().lower()
        if not query:
            return True
        return query in self.name.lower() or (
            self.type is not None and query in self.type.lower()
        )


@dataclass
class RpcTemplate:
    """A saved RPC request used to prefill method and params."""

    name: str
    method: str
    params: object = field(default_factory=dict)


@dataclass
class RpcResult:
    """Outcome of one two-way RPC call."""

    status: str
    """``"success"`` or ``"error"``."""

    duration_ms: int

    data: object = None
    """Response body on success."""

    kind: ErrorKind | None = None
    detail: dict[str, object] | None = None

    token_refreshed: bool = False
    """The call succeeded only after the user token was refreshed."""

    session_expired: bool = False
    """A 401 could not be recovered; the user must log in again."""

    @property
    def ok(self) -> bool:
        return self.status == "success"


def split_favorites(
    devices: list[Device], favorites: set[str] | frozenset[str]
) -> tuple[list[Device], list[Device]]:
    """Split *devices* into ``(favorites, others)``, keeping server order."""
    favs = [d for d in devices if d.id in favorites]
    others = [d for d in devices if d.id not in favorites]
    return favs, others


def _decode_jwt_claims(token: str) -> dict[str, object]:
    """Decode the claims of a JWT without verifying the signature.

    Returns an empty dict if the token is not a decodable JWT.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    # base64url padding: length must be a multiple of 4
    padded = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded))
    except (ValueError, TypeError):
        return {}
    return payload if isinstance(payload, dict) else {}
