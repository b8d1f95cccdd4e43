"""Thin CLI wrapper over :class:`tbrpc.Client`."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
import time
from datetime import datetime
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.syntax import Syntax

from tbrpc import _constants
from tbrpc.client import (
    Client,
    InvalidParams,
    SessionExpired,
    ThingsBoardError,
    parse_params,
)
from tbrpc.models import (
    Device,
    DeviceSession,
    RpcResult,
    RpcTemplate,
    Screen,
    split_favorites,
)
from tbrpc.store import Favorites, RpcLog, SessionStore, load_templates

app = typer.Typer(help="Debug ThingsBoard two-way RPC calls.", invoke_without_command=True)

logger = logging.getLogger(__name__)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log HTTP traffic to stderr"),
) -> None:
    """Debug ThingsBoard two-way RPC calls."""
    _configure_logging(verbose)
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit(0)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _print_json(obj: object) -> None:
    """Print JSON, syntax-highlighted when stdout is a TTY, compact otherwise."""
    if sys.stdout.isatty():
        Console().print(Syntax(json.dumps(obj, indent=2, ensure_ascii=False), "json"))
    else:
        typer.echo(json.dumps(obj, ensure_ascii=False))


def _ensure_client() -> Client:
    """Load the saved session or exit with an error."""
    client = Client.from_saved()
    if not client.session.logged_in:
        typer.echo("Not logged in. Run `tbrpc login` first.", err=True)
        raise typer.Exit(1)
    return client


def _end_session(client: Client, message: str) -> NoReturn:
    """Drop an unrecoverable session and send the user back to `login`."""
    typer.echo(f"{message} Run `tbrpc login` to sign in again.", err=True)
    client.logout()
    raise typer.Exit(1)


def _load_devices(client: Client) -> list[Device]:
    try:
        return asyncio.run(client.list_devices())
    except SessionExpired as e:
        _end_session(client, str(e))
    except ThingsBoardError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None


def _ordered(devices: list[Device], favorite_ids: frozenset[str]) -> list[Device]:
    """Favorites first, each group in server order.  Indexes refer to this order."""
    favs, others = split_favorites(devices, favorite_ids)
    return favs + others


def _pick_device(client: Client, ordered: list[Device], ref: str) -> Device:
    """Resolve a device by index into *ordered*, id or name, or exit."""
    if not ordered:
        typer.echo("No devices found.", err=True)
        raise typer.Exit(1)
    if ref.isdigit():
        index = int(ref)
        if index >= len(ordered):
            typer.echo(f"Invalid index {index}. Must be 0..{len(ordered) - 1}.", err=True)
            raise typer.Exit(1)
        return ordered[index]
    try:
        return client.find_device(ref)
    except KeyError as e:
        typer.echo(e.args[0], err=True)
        raise typer.Exit(1) from None


def _echo_devices(
    shown: list[tuple[int, Device]], favorite_ids: frozenset[str], selected_id: str | None
) -> None:
    is_tty = sys.stdout.isatty()
    for i, dev in shown:
        marker = "*" if dev.id == selected_id else " "
        star = "★" if dev.id in favorite_ids else "☆"
        state = "online" if dev.active else "offline"
        if is_tty:
            state = typer.style(state, fg="green" if dev.active else "red")
            name = typer.style(dev.name, bold=True)
        else:
            name = dev.name
        typer.echo(f"  {marker} [{i}] {star} {name} ({dev.type or 'unknown type'}, {state})")
        typer.echo(f"        ID: {dev.id}")


def _print_result(result: RpcResult) -> None:
    if result.ok:
        note = ", token refreshed" if result.token_refreshed else ""
        typer.echo(f"Success ({result.duration_ms} ms{note})")
        _print_json(result.data)
    else:
        typer.echo(f"Failed: {result.kind} ({result.duration_ms} ms)", err=True)
        _print_json(result.detail)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def login(
    server_url: str = typer.Option(
        ..., "--server-url", "-s", prompt="Server URL", help="ThingsBoard base URL"
    ),
    username: str = typer.Option(..., prompt=True, help="ThingsBoard username"),
    password: str = typer.Option(..., prompt=True, hide_input=True, help="ThingsBoard password"),
    remember: bool = typer.Option(
        True, "--remember/--no-remember", help="Keep server URL and username after logout"
    ),
) -> None:
    """Authenticate with ThingsBoard and save the session locally."""
    typer.echo(f"Logging in to {server_url} as {username}...")
    try:
        asyncio.run(
            Client.login(
                server_url,
                username,
                password,
                remember_me=remember,
                store=SessionStore(),
            )
        )
    except ThingsBoardError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    typer.echo("Logged in. Run `tbrpc devices` to pick a device.")


@app.command()
def logout() -> None:
    """Forget the saved tokens and selected device."""
    client = Client.from_saved()
    if not client.session.logged_in:
        typer.echo("Not logged in.")
        return
    client.logout()
    typer.echo("Logged out.")


@app.command()
def devices(
    search: str | None = typer.Option(None, "--search", "-s", help="Filter by name or type"),
    as_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List all tenant devices, favorites first."""
    client = _ensure_client()
    if not as_json:
        typer.echo("Fetching devices...")
    all_devices = _load_devices(client)

    favorite_ids = Favorites().ids
    ordered = _ordered(all_devices, favorite_ids)
    shown = [(i, d) for i, d in enumerate(ordered) if search is None or d.matches(search)]

    if as_json:
        _print_json(
            [
                {
                    "index": i,
                    "id": d.id,
                    "name": d.name,
                    "type": d.type,
                    "active": d.active,
                    "favorite": d.id in favorite_ids,
                }
                for i, d in shown
            ]
        )
        return

    if not shown:
        typer.echo("No devices found.", err=True)
        raise typer.Exit(1)

    assert client.store is not None
    selected = client.store.load_device_session()
    _echo_devices(shown, favorite_ids, selected.device_id if selected else None)
    typer.echo("\n  * = selected, ★ = favorite.  Use `tbrpc select <index>` to choose a device.")


@app.command()
def favorite(device: str = typer.Argument(..., help="Device index, id or name")) -> None:
    """Add a device to favorites, or remove it if it already is one."""
    client = _ensure_client()
    all_devices = _load_devices(client)
    favorites = Favorites()
    dev = _pick_device(client, _ordered(all_devices, favorites.ids), device)
    if favorites.toggle(dev.id):
        typer.echo(f"Added {dev.name} to favorites.")
    else:
        typer.echo(f"Removed {dev.name} from favorites.")


@app.command()
def select(device: str = typer.Argument(..., help="Device index, id or name")) -> None:
    """Select the device RPC calls are sent to."""
    client = _ensure_client()
    all_devices = _load_devices(client)
    dev = _pick_device(client, _ordered(all_devices, Favorites().ids), device)
    try:
        device_session = asyncio.run(client.fetch_device_session(dev))
    except SessionExpired as e:
        _end_session(client, str(e))
    except ThingsBoardError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(1) from None
    typer.echo(f"Selected: {device_session.device_name} (ID: {device_session.device_id})")


@app.command()
def status() -> None:
    """Show the saved session and test the connection to the selected device."""
    client = Client.from_saved()
    session = client.session
    if not session.logged_in:
        typer.echo("Not logged in.", err=True)
        raise typer.Exit(1)

    user = f"{session.username} ({session.user_id})" if session.user_id else session.username
    typer.echo(f"Server: {session.server_url}")
    typer.echo(f"User:   {user}")
    expiry = session.token_expiry
    if expiry is not None:
        typer.echo(f"Token expires: {datetime.fromtimestamp(expiry):%Y-%m-%d %H:%M:%S}")

    assert client.store is not None
    device_session = client.store.load_device_session()
    if device_session is None:
        typer.echo("Device: (none selected)")
        return
    typer.echo(f"Device: {device_session.device_name} (ID: {device_session.device_id})")
    ok, message = asyncio.run(client.check_connection(device_session))
    typer.echo(message)
    if not ok:
        raise typer.Exit(1)


@app.command("call", context_settings={"help_option_names": ["-h", "--help"]})
def call(
    method: str | None = typer.Argument(None, help="RPC method name"),
    params: str | None = typer.Argument(None, help="JSON params (default: {})"),
    timeout: str | None = typer.Option(
        None, "--timeout", "-t", help="Timeout in milliseconds (default: 5000)"
    ),
    template: str | None = typer.Option(
        None, "--template", "-T", help="Take method and params from a saved template"
    ),
) -> None:
    """Send a two-way RPC call to the selected device.

    \b
    Examples:
      tbrpc call getState
      tbrpc call setGpio '{"pin": 3, "enabled": true}' --timeout 10000
      tbrpc call --template reboot
    """
    client = _ensure_client()
    assert client.store is not None
    device_session = client.store.load_device_session()
    if device_session is None:
        typer.echo("No device selected. Run `tbrpc select <device>` first.", err=True)
        raise typer.Exit(1)

    params_value: object = None
    if template is not None:
        found = [t for t in _load_templates_or_exit() if t.name == template]
        if not found:
            typer.echo(f"Unknown template '{template}'. See `tbrpc templates`.", err=True)
            raise typer.Exit(1)
        method = method or found[0].method
        params_value = found[0].params

    if not method or not method.strip():
        typer.echo("RPC method name is required.", err=True)
        raise typer.Exit(1)
    if params is not None or params_value is None:
        try:
            params_value = parse_params(params)
        except InvalidParams as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(1) from None

    typer.echo(f"Calling {method} on {device_session.device_name}...")
    result = asyncio.run(client.invoke(device_session, method, params_value, timeout))
    _print_result(result)
    if result.session_expired:
        _end_session(client, "Session expired.")
    if not result.ok:
        raise typer.Exit(1)


def _load_templates_or_exit() -> list[RpcTemplate]:
    try:
        return load_templates()
    except (OSError, ValueError) as e:
        typer.echo(f"Could not read templates: {e}", err=True)
        raise typer.Exit(1) from None


@app.command("templates")
def list_templates() -> None:
    """List saved RPC templates."""
    templates = _load_templates_or_exit()
    if not templates:
        typer.echo(f"No templates. Add a JSON list to {_constants.TEMPLATES_FILE}.")
        return
    for t in templates:
        typer.echo(f"  {t.name}: {t.method} {json.dumps(t.params, ensure_ascii=False)}")


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show"),
    as_json: bool = typer.Option(False, "--json", "-j", help="Output raw JSON lines"),
) -> None:
    """Show the most recent RPC calls."""
    records = RpcLog().tail(limit)
    if not records:
        typer.echo("No RPC history yet.")
        return
    for record in records:
        if as_json:
            typer.echo(json.dumps(record, ensure_ascii=False))
            continue
        outcome = "OK " if record.get("type") == "RESPONSE" else "ERR"
        typer.echo(
            f"[{record.get('timestamp', '?')}] {outcome} {record.get('method', '?')}"
            f" ({record.get('durationMs', '?')} ms)"
        )


@app.command()
def console() -> None:
    """Interactive session: log in, pick a device and send RPC calls.

    Press Ctrl+C to leave.
    """
    with contextlib.suppress(KeyboardInterrupt):
        _Console(Client.from_saved()).run()


class _Console:
    """Prompt loop over the login, device list and RPC console screens."""

    def __init__(self, client: Client) -> None:
        assert client.store is not None
        self.client = client
        self.favorites = Favorites(client.store.config)
        self.device_session: DeviceSession | None = client.store.load_device_session()
        self.screen: Screen | None = (
            Screen.DEVICE_LIST if client.session.logged_in else Screen.LOGIN
        )

    def go_to(self, screen: Screen | None) -> None:
        logger.debug("Navigating to %s", screen)
        self.screen = screen

    def run(self) -> None:
        handlers = {
            Screen.LOGIN: self._login_screen,
            Screen.DEVICE_LIST: self._device_list_screen,
            Screen.RPC_CONSOLE: self._rpc_screen,
        }
        while self.screen is not None:
            handlers[self.screen]()

    def _expire(self, message: str) -> None:
        typer.echo(f"{message} Returning to login...", err=True)
        time.sleep(_constants.SESSION_EXPIRED_DELAY)
        self.client.logout()
        self.device_session = None
        self.go_to(Screen.LOGIN)

    def _login_screen(self) -> None:
        session = self.client.session
        server_url = typer.prompt("Server URL", default=session.server_url or None)
        username = typer.prompt("Username", default=session.username or None)
        password = typer.prompt("Password", hide_input=True)
        remember = typer.confirm("Remember me", default=session.remember_me)
        try:
            self.client = asyncio.run(
                Client.login(
                    server_url,
                    username,
                    password,
                    remember_me=remember,
                    store=self.client.store,
                    rpc_log=RpcLog(),
                )
            )
        except ThingsBoardError as e:
            typer.echo(str(e), err=True)
            return
        typer.echo(f"Logged in as {username}.")
        self.go_to(Screen.DEVICE_LIST)

    def _device_list_screen(self) -> None:
        typer.echo("Fetching devices...")
        try:
            all_devices = asyncio.run(self.client.list_devices())
        except SessionExpired as e:
            self._expire(str(e))
            return
        except ThingsBoardError as e:
            typer.echo(str(e), err=True)
            all_devices = []

        query = ""
        while True:
            favorite_ids = self.favorites.ids
            ordered = _ordered(all_devices, favorite_ids)
            shown = [(i, d) for i, d in enumerate(ordered) if d.matches(query)]
            if shown:
                selected = self.device_session.device_id if self.device_session else None
                _echo_devices(shown, favorite_ids, selected)
            else:
                typer.echo("  No devices found.")
            choice = typer.prompt(
                "Device number, /text to search, f<number> to (un)favorite,"
                " r to refresh, logout, q to quit"
            ).strip()

            if choice == "q":
                self.go_to(None)
                return
            if choice == "r":
                return
            if choice == "logout":
                self.client.logout()
                self.device_session = None
                self.go_to(Screen.LOGIN)
                return
            if choice.startswith("/"):
                query = choice[1:]
                continue
            if choice.startswith("f") and choice[1:].isdigit() and int(choice[1:]) < len(ordered):
                self.favorites.toggle(ordered[int(choice[1:])].id)
                continue
            if choice.isdigit() and int(choice) < len(ordered):
                if self._select(ordered[int(choice)]):
                    self.go_to(Screen.RPC_CONSOLE)
                return
            typer.echo(f"Unknown choice '{choice}'.", err=True)

    def _select(self, device: Device) -> bool:
        try:
            self.device_session = asyncio.run(self.client.fetch_device_session(device))
        except SessionExpired as e:
            self._expire(str(e))
            return False
        except ThingsBoardError as e:
            typer.echo(str(e), err=True)
            return False
        return True

    def _rpc_screen(self) -> None:
        device_session = self.device_session
        if device_session is None:
            self.go_to(Screen.DEVICE_LIST)
            return
        _, message = asyncio.run(self.client.check_connection(device_session))
        typer.echo(f"{device_session.device_name}: {message}")

        while True:
            method = typer.prompt("Method (b = back, q = quit)").strip()
            if method == "q":
                self.go_to(None)
                return
            if method == "b":
                self.go_to(Screen.DEVICE_LIST)
                return
            if not method:
                continue
            try:
                params = parse_params(typer.prompt("Params (JSON)", default="{}"))
            except InvalidParams as e:
                typer.echo(str(e), err=True)
                continue
            timeout = typer.prompt(
                "Timeout (ms)", default=str(_constants.DEFAULT_RPC_TIMEOUT_MS)
            )
            result = asyncio.run(self.client.invoke(device_session, method, params, timeout))
            _print_result(result)
            if result.session_expired:
                self._expire("Session expired.")
                return
