"""ThingsBoard REST client for interactive two-way RPC debugging.

The :class:`Client` class is the main entry point.  Use :meth:`Client.login`
to authenticate (or :meth:`Client.from_saved` to resume a stored session),
then list devices, pick one and send RPC calls to it::

    import asyncio
    from tbrpc import Client

    client = await Client.login("https://tb.example.com", "tenant@example.com", "secret")
    devices = await client.list_devices()

    device_session = await client.fetch_device_session(devices[0])
    result = await client.invoke(device_session, "getState", {"pin": 3}, 5000)
    print(result.status, result.data)

Every authenticated call goes through a single refresh-and-retry step: when
the server answers HTTP 401 the refresh token is exchanged once and the call
is repeated once.  A refresh is never itself retried.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import NamedTuple, TypeVar

import aiohttp
from yarl import URL

from tbrpc._constants import (
    ATTRIBUTES_PATH,
    CONNECTION_CHECK_TIMEOUT,
    CREDENTIALS_PATH,
    DEFAULT_RPC_TIMEOUT_MS,
    DEVICES_PATH,
    HTTP_TIMEOUT,
    JSON_HEADERS,
    LOGIN_PATH,
    PAGE_SIZE,
    REFRESH_PATH,
    TWOWAY_RPC_PATH,
)
from tbrpc.models import Device, DeviceSession, ErrorKind, RpcResult, Session
from tbrpc.store import RpcLog, SessionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ThingsBoardError(Exception):
    """Base class for errors raised by :mod:`tbrpc`."""


class AuthError(ThingsBoardError):
    """Authentication or session renewal failed."""


class InvalidCredentials(AuthError):
    """Raised when the server rejects a login with HTTP 401."""


class RefreshRejected(AuthError):
    """Raised when a refresh call comes back without a new token.

    The session can no longer be renewed; the user has to log in again.
    """


class SessionExpired(AuthError):
    """Raised when an HTTP 401 could not be recovered by a token refresh.

    *unauthorized* is the original 401 error, when there was one.
    """

    def __init__(self, message: str, *, unauthorized: TokenExpiredError | None = None) -> None:
        super().__init__(message)
        self.unauthorized = unauthorized


class Unreachable(ThingsBoardError, ConnectionError):
    """Raised when a request was sent but no response arrived (network error or timeout)."""


class RequestSetupError(ThingsBoardError):
    """Raised when a request could not be built, e.g. for a malformed server URL."""


class ServerError(ThingsBoardError):
    """Raised when the server answered with a non-2xx status or an unusable body."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        reason: str | None = None,
        body: object = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.reason = reason
        self.body = body


class TokenExpiredError(ServerError):
    """Raised when an authenticated call is answered with HTTP 401."""


class FetchError(ServerError):
    """Raised when the device list or device credentials cannot be read."""


class InvalidParams(ThingsBoardError, ValueError):
    """Raised for an empty RPC method name or params that are not valid JSON."""


class Client:
    """ThingsBoard API client bound to one user :class:`Session`.

    When a :class:`SessionStore` is given, every token change is written to
    it before the next request is made.  When an :class:`RpcLog` is given,
    each :meth:`invoke` appends exactly one history record.
    """

    def __init__(
        self,
        session: Session,
        *,
        store: SessionStore | None = None,
        rpc_log: RpcLog | None = None,
    ) -> None:
        self._session = session
        self._store = store
        self._rpc_log = rpc_log
        self._devices: list[Device] = []

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    async def login(
        cls,
        server_url: str,
        username: str,
        password: str,
        *,
        remember_me: bool = True,
        store: SessionStore | None = None,
        rpc_log: RpcLog | None = None,
    ) -> Client:
        """Authenticate and return a new client.

        The session is persisted to *store* (if given) only after the server
        accepted the credentials.
        """
        tokens = await _http_login(server_url, username, password)
        session = Session(
            server_url=server_url,
            username=username,
            user_id=tokens["userId"],
            remember_me=remember_me,
        )
        session.update_tokens(str(tokens["token"]), tokens["refreshToken"])
        client = cls(session, store=store, rpc_log=rpc_log)
        client._persist()
        logger.info("Logged in to %s as %s", session.server_url, username)
        return client

    @classmethod
    def from_saved(
        cls, store: SessionStore | None = None, rpc_log: RpcLog | None = None
    ) -> Client:
        """Resume the session stored in ``~/.config/tbrpc/config.json``.

        The returned client persists token changes and logs RPC calls to the
        default history file.  It may be logged out; check
        :attr:`Session.logged_in`.
        """
        store = store if store is not None else SessionStore()
        rpc_log = rpc_log if rpc_log is not None else RpcLog()
        return cls(store.load(), store=store, rpc_log=rpc_log)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def token(self) -> str:
        """Current JWT bearer token (empty when logged out)."""
        return self._session.token or ""

    @property
    def store(self) -> SessionStore | None:
        return self._store

    @property
    def devices(self) -> list[Device]:
        """Device list from the last :meth:`list_devices` call."""
        return self._devices

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def refresh(self) -> None:
        """Exchange the refresh token for a new token pair.

        One attempt only.  On success the session is updated and persisted;
        on failure the error propagates and the session is left unchanged.

        Raises:
            RefreshRejected: No refresh token, or the server issued no token.
            Unreachable: The server did not answer.
        """
        if not self._session.refresh_token:
            raise RefreshRejected("No refresh token available. Please log in again.")
        tokens = await _http_refresh(self._session.server_url, self._session.refresh_token)
        self._session.update_tokens(str(tokens["token"]), tokens["refreshToken"])
        self._persist()
        logger.info("Refreshed access token for %s", self._session.server_url)

    def logout(self) -> None:
        """Forget the tokens and the selected device."""
        if self._store is not None:
            self._store.clear(self._session)
        else:
            self._session.clear_tokens()
        self._devices = []
        logger.info("Logged out of %s", self._session.server_url)

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save(self._session)

    async def _execute_with_refresh(
        self, request: Callable[[str], Awaitable[T]]
    ) -> tuple[T, bool]:
        """Run ``request(token)``, refreshing once and retrying once on HTTP 401.

        Returns ``(result, refreshed)``.  A 401 on the retry propagates as
        :class:`TokenExpiredError`; a failed refresh raises
        :class:`SessionExpired` chained from the refresh error.
        """
        if not self._session.token:
            raise SessionExpired("Not logged in.")
        try:
            return await request(self._session.token), False
        except TokenExpiredError as e:
            unauthorized = e

        logger.info("Token rejected (HTTP 401), refreshing once")
        try:
            await self.refresh()
        except ThingsBoardError as e:
            logger.warning("Token refresh failed: %s", e)
            raise SessionExpired(
                "Session expired. Please log in again.", unauthorized=unauthorized
            ) from e

        assert self._session.token is not None
        return await request(self._session.token), True

    # ------------------------------------------------------------------
    # Device directory
    # ------------------------------------------------------------------

    async def list_devices(self) -> list[Device]:
        """Fetch every tenant device, page by page.

        A 401 part-way through refreshes the token and restarts from page 0;
        pages fetched with the old token are discarded.

        Raises:
            SessionExpired: The token could not be renewed.
            FetchError: The server rejected a page or sent an unusable body.
            Unreachable: The server did not answer.
        """
        server_url = self._session.server_url
        try:
            devices, _ = await self._execute_with_refresh(
                lambda token: _fetch_all_devices(server_url, token)
            )
        except TokenExpiredError as e:
            raise SessionExpired("Session expired. Please log in again.", unauthorized=e) from e
        self._devices = devices
        return devices

    def find_device(self, ref: str) -> Device:
        """Look up a cached device by id or exact name.

        Raises :class:`KeyError` if nothing matches.
        """
        for dev in self._devices:
            if dev.id == ref:
                return dev
        for dev in self._devices:
            if dev.name == ref:
                return dev
        raise KeyError(f"No device with id or name '{ref}'.")

    async def fetch_device_session(self, device: Device) -> DeviceSession:
        """Read the device's credentials and store them as the selected device."""
        server_url = self._session.server_url
        try:
            credentials_id, _ = await self._execute_with_refresh(
                lambda token: _fetch_device_credentials(server_url, token, device.id)
            )
        except TokenExpiredError as e:
            raise SessionExpired("Session expired. Please log in again.", unauthorized=e) from e
        device_session = DeviceSession(
            url=server_url,
            access_token=credentials_id,
            device_name=device.name,
            device_id=device.id,
        )
        if self._store is not None:
            self._store.save_device_session(device_session)
        return device_session

    async def check_connection(self, device_session: DeviceSession | None) -> tuple[bool, str]:
        """Probe the server by reading the selected device's attributes.

        Returns ``(ok, message)``.  No token refresh is attempted.
        """
        if device_session is None or not device_session.device_id:
            return False, "No device selected."
        if not self._session.token:
            return False, "Not logged in."
        try:
            url = _api_url(
                device_session.url, ATTRIBUTES_PATH.format(device_id=device_session.device_id)
            )
            async with aiohttp.ClientSession() as http:
                response = await _send(
                    http, "GET", url, token=self._session.token, timeout=CONNECTION_CHECK_TIMEOUT
                )
        except Unreachable:
            return False, "Connection failed: no response from server."
        except RequestSetupError as e:
            return False, f"Connection failed: {e}"
        if response.status == 200:
            return True, "Connected."
        return False, f"Connection failed: status {response.status}."

    # ------------------------------------------------------------------
    # Two-way RPC
    # ------------------------------------------------------------------

    async def invoke(
        self,
        device_session: DeviceSession,
        method: str,
        params: object = None,
        timeout_ms: object = None,
    ) -> RpcResult:
        """Send one two-way RPC call to the selected device.

        The call authenticates with the user token, not the device
        credential.  *timeout_ms* falls back to 5000 when missing or not a
        positive number.

        Transport and server failures are reported in the returned
        :class:`RpcResult` rather than raised.  Exactly one history record
        is written per call.

        Raises:
            InvalidParams: *method* is empty or not a string.
        """
        if not isinstance(method, str) or not method.strip():
            raise InvalidParams("RPC method name is required.")
        method = method.strip()
        if params is None:
            params = {}
        timeout = aiohttp.ClientTimeout(total=_coerce_timeout(timeout_ms) / 1000)
        body = {"method": method, "params": params}

        started = time.monotonic()
        data: object = None
        refreshed = False
        error: ThingsBoardError | None = None
        try:
            url = _api_url(
                device_session.url, TWOWAY_RPC_PATH.format(device_id=device_session.device_id)
            )
            data, refreshed = await self._execute_with_refresh(
                lambda token: _post_twoway_rpc(url, token, body, timeout)
            )
        except ThingsBoardError as e:
            error = e
        duration_ms = int((time.monotonic() - started) * 1000)

        if error is None:
            result = RpcResult("success", duration_ms, data=data, token_refreshed=refreshed)
        else:
            kind, detail = _classify_rpc_error(error)
            result = RpcResult(
                "error",
                duration_ms,
                kind=kind,
                detail=detail,
                session_expired=isinstance(error, SessionExpired),
            )
            logger.debug("RPC %s failed after %d ms: %s", method, duration_ms, error)
        self._record_rpc(method, params, result)
        return result

    def _record_rpc(self, method: str, params: object, result: RpcResult) -> None:
        if self._rpc_log is None:
            return
        record: dict[str, object] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": "RESPONSE" if result.ok else "ERROR",
            "method": method,
            "params": params,
            "durationMs": result.duration_ms,
            "status": result.status,
        }
        if result.ok:
            record["data"] = result.data
            record["tokenRefreshed"] = result.token_refreshed
        else:
            record["error"] = {"kind": str(result.kind), **(result.detail or {})}
        try:
            self._rpc_log.append(record)
        except OSError as e:
            logger.error("Could not write RPC history to %s: %s", self._rpc_log.path, e)


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


class _Response(NamedTuple):
    status: int
    reason: str | None
    body: object

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def parse_params(text: str | None) -> object:
    """Parse user-supplied RPC params.  Blank text means ``{}``.

    Raises :class:`InvalidParams` for malformed JSON.
    """
    if text is None or not text.strip():
        return {}
    try:
        return json.loads(text)
    except ValueError as e:
        raise InvalidParams(f"Params are not valid JSON: {e}") from None


def _coerce_timeout(timeout_ms: object) -> int:
    """Return *timeout_ms* as a positive int, or the 5000 ms default."""
    if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, (int, float, str)):
        return DEFAULT_RPC_TIMEOUT_MS
    try:
        value = int(float(timeout_ms))
    except (ValueError, OverflowError):
        return DEFAULT_RPC_TIMEOUT_MS
    return value if value > 0 else DEFAULT_RPC_TIMEOUT_MS


def _api_url(base: str, path: str) -> str:
    """Join a server base URL and an API path.

    Raises :class:`RequestSetupError` unless the result is an absolute
    http(s) URL.
    """
    try:
        url = URL(base.strip().rstrip("/") + path)
    except (ValueError, TypeError) as e:
        raise RequestSetupError(f"Invalid server URL '{base}': {e}") from e
    if url.scheme not in ("http", "https") or not url.host:
        raise RequestSetupError(f"Invalid server URL '{base}'.")
    return str(url)


def _decode_body(text: str) -> object:
    """Decode a response body as JSON, falling back to the raw text."""
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def _server_message(response: _Response) -> str:
    body = response.body
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {response.status}"


def _raise_for_status(
    response: _Response, what: str, *, error: type[ServerError] = ServerError
) -> None:
    """Raise for a non-2xx *response*; HTTP 401 always maps to :class:`TokenExpiredError`."""
    if response.ok:
        return
    cls = TokenExpiredError if response.status == 401 else error
    raise cls(
        f"{what}: {_server_message(response)}",
        status=response.status,
        reason=response.reason,
        body=response.body,
    )


def _entity_id(value: object) -> str | None:
    """Unwrap ThingsBoard's ``{"entityType": ..., "id": ...}`` identifiers."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


async def _send(
    http: aiohttp.ClientSession,
    method: str,
    url: str,
    *,
    token: str | None = None,
    json_body: object = None,
    timeout: aiohttp.ClientTimeout = HTTP_TIMEOUT,
) -> _Response:
    """Issue one request and return its status and decoded body.

    Raises :class:`Unreachable` when no response arrives and
    :class:`RequestSetupError` when aiohttp refuses the URL.
    """
    headers = dict(JSON_HEADERS)
    if token:
        headers["X-Authorization"] = f"Bearer {token}"
    logger.debug("%s %s", method, url)
    try:
        async with http.request(
            method, url, json=json_body, headers=headers, timeout=timeout
        ) as resp:
            text = await resp.text(errors="replace")
            return _Response(resp.status, resp.reason, _decode_body(text))
    except aiohttp.InvalidURL as e:
        raise RequestSetupError(f"Invalid request URL: {e}") from e
    except TimeoutError as e:
        raise Unreachable("No response from server: request timed out.") from e
    except aiohttp.ClientError as e:
        raise Unreachable(f"No response from server: {e}") from e


async def _http_login(server_url: str, username: str, password: str) -> dict[str, str | None]:
    """Exchange credentials for ``{token, refreshToken, userId}``."""
    url = _api_url(server_url, LOGIN_PATH)
    async with aiohttp.ClientSession() as http:
        response = await _send(
            http, "POST", url, json_body={"username": username, "password": password}
        )
    if response.status == 401:
        raise InvalidCredentials("Login failed: invalid username or password.")
    _raise_for_status(response, "Login failed")

    body = response.body
    if not isinstance(body, dict) or not body.get("token") or not body.get("refreshToken"):
        raise ServerError(
            "Login failed: invalid response.", status=response.status, body=body
        )
    return {
        "token": str(body["token"]),
        "refreshToken": str(body["refreshToken"]),
        "userId": _entity_id(body.get("userId")),
    }


async def _http_refresh(server_url: str, refresh_token: str) -> dict[str, str | None]:
    """Exchange a refresh token for ``{token, refreshToken}``.

    Any answer without a token is a :class:`RefreshRejected`, whatever its
    status code.
    """
    url = _api_url(server_url, REFRESH_PATH)
    async with aiohttp.ClientSession() as http:
        response = await _send(http, "POST", url, json_body={"refreshToken": refresh_token})

    body = response.body
    if not isinstance(body, dict) or not body.get("token"):
        raise RefreshRejected(
            f"Session can no longer be renewed ({_server_message(response)})."
        )
    _raise_for_status(response, "Token refresh failed")
    new_refresh = body.get("refreshToken")
    return {
        "token": str(body["token"]),
        "refreshToken": str(new_refresh) if new_refresh else None,
    }


async def _fetch_device_page(
    http: aiohttp.ClientSession, server_url: str, token: str, page: int, page_size: int
) -> list[Device]:
    """Fetch one page of the tenant device list."""
    url = f"{_api_url(server_url, DEVICES_PATH)}?pageSize={page_size}&page={page}"
    response = await _send(http, "GET", url, token=token)
    _raise_for_status(response, "Device list fetch failed", error=FetchError)

    body = response.body
    items = body.get("data") if isinstance(body, dict) else None
    if not isinstance(items, list):
        raise FetchError(
            "Device list fetch failed: invalid response format.",
            status=response.status,
            body=body,
        )
    try:
        return [Device.from_api(item) for item in items]
    except (KeyError, TypeError, AttributeError, ValueError) as e:
        raise FetchError(
            f"Device list fetch failed: malformed device record ({e}).",
            status=response.status,
            body=body,
        ) from e


async def _fetch_all_devices(
    server_url: str, token: str, *, page_size: int = PAGE_SIZE
) -> list[Device]:
    """Fetch every page, stopping at the first page shorter than *page_size*."""
    devices: list[Device] = []
    page = 0
    async with aiohttp.ClientSession() as http:
        while True:
            logger.debug("Fetching device page %d", page)
            items = await _fetch_device_page(http, server_url, token, page, page_size)
            devices.extend(items)
            if len(items) < page_size:
                break
            page += 1
    return devices


async def _fetch_device_credentials(server_url: str, token: str, device_id: str) -> str:
    """Return the device's ``credentialsId`` (its access token)."""
    url = _api_url(server_url, CREDENTIALS_PATH.format(device_id=device_id))
    async with aiohttp.ClientSession() as http:
        response = await _send(http, "GET", url, token=token)
    _raise_for_status(response, "Device credentials fetch failed", error=FetchError)

    body = response.body
    if not isinstance(body, dict) or not body.get("credentialsId"):
        raise FetchError(
            "Device credentials fetch failed: invalid response format.",
            status=response.status,
            body=body,
        )
    return str(body["credentialsId"])


async def _post_twoway_rpc(
    url: str, token: str, body: dict[str, object], timeout: aiohttp.ClientTimeout
) -> object:
    """POST a two-way RPC request and return the device's reply."""
    async with aiohttp.ClientSession() as http:
        response = await _send(http, "POST", url, token=token, json_body=body, timeout=timeout)
    _raise_for_status(response, "RPC request failed")
    return response.body


def _classify_rpc_error(error: ThingsBoardError) -> tuple[ErrorKind, dict[str, object]]:
    """Map a failed RPC call to an :class:`ErrorKind` and display detail."""
    if isinstance(error, SessionExpired):
        # Report the 401 that started it, not the refresh failure.
        if error.unauthorized is not None:
            return _classify_rpc_error(error.unauthorized)
        return ErrorKind.REQUEST_SETUP_ERROR, {"error": "Request error", "message": str(error)}
    if isinstance(error, ServerError):
        return ErrorKind.SERVER_REJECTED, {
            "status": error.status,
            "statusText": error.reason,
            "data": error.body,
        }
    if isinstance(error, Unreachable):
        return ErrorKind.NO_RESPONSE, {"error": "No response received", "message": str(error)}
    return ErrorKind.REQUEST_SETUP_ERROR, {"error": "Request error", "message": str(error)}
