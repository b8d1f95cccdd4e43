"""Local persistence: config file, session store, favorites, RPC history log.

Everything lives under ``~/.config/tbrpc``.  The config file is a single JSON
object keyed like the desktop tool's store (``authConfig``, ``serverConfig``,
``favoriteDevices``); the RPC history is a JSON-lines file that is only ever
appended to.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from pathlib import Path

from tbrpc import _constants
from tbrpc._constants import AUTH_CONFIG_KEY, FAVORITES_KEY, SERVER_CONFIG_KEY
from tbrpc.models import DeviceSession, RpcTemplate, Session

logger = logging.getLogger(__name__)


class ConfigStore:
    """Key-value store backed by ``~/.config/tbrpc/config.json``.

    The file is re-read on every access so that several short-lived CLI
    processes see each other's writes.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path if path is not None else _constants.CONFIG_FILE

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str, default: object = None) -> object:
        return self._read().get(key, default)

    def set(self, key: str, value: object) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)

    def _read(self) -> dict[str, object]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text())
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable config file %s: %s", self._path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring config file %s: not a JSON object", self._path)
            return {}
        return data

    def _write(self, data: dict[str, object]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, indent=2))
        self._path.chmod(0o600)


class SessionStore:
    """Persists the user :class:`Session` and the selected :class:`DeviceSession`."""

    def __init__(self, config: ConfigStore | None = None) -> None:
        self._config = config if config is not None else ConfigStore()

    @property
    def config(self) -> ConfigStore:
        return self._config

    def load(self) -> Session:
        data = self._config.get(AUTH_CONFIG_KEY)
        if not isinstance(data, dict):
            return Session()
        return Session.from_dict(data)

    def save(self, session: Session) -> None:
        self._config.set(AUTH_CONFIG_KEY, session.to_dict())

    def clear(self, session: Session) -> None:
        """Forget the tokens of *session*.

        Server URL and username survive for the next login prompt only when
        the user asked to be remembered.
        """
        session.clear_tokens()
        if session.remember_me:
            self.save(session)
        else:
            self._config.delete(AUTH_CONFIG_KEY)
        self._config.delete(SERVER_CONFIG_KEY)

    def load_device_session(self) -> DeviceSession | None:
        data = self._config.get(SERVER_CONFIG_KEY)
        if not isinstance(data, dict):
            return None
        return DeviceSession.from_dict(data)

    def save_device_session(self, device_session: DeviceSession) -> None:
        self._config.set(SERVER_CONFIG_KEY, device_session.to_dict())


class Favorites:
    """Client-side set of favorite device ids."""

    def __init__(self, config: ConfigStore | None = None) -> None:
        self._config = config if config is not None else ConfigStore()

    @property
    def ids(self) -> frozenset[str]:
        raw = self._config.get(FAVORITES_KEY, [])
        if not isinstance(raw, list):
            return frozenset()
        return frozenset(str(i) for i in raw)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self.ids

    def toggle(self, device_id: str) -> bool:
        """Add or remove *device_id*.  Returns ``True`` if it is now a favorite."""
        raw = self._config.get(FAVORITES_KEY, [])
        current = [str(i) for i in raw] if isinstance(raw, list) else []
        if device_id in current:
            current.remove(device_id)
            added = False
        else:
            current.append(device_id)
            added = True
        self._config.set(FAVORITES_KEY, current)
        return added


class RpcLog:
    """Append-only JSON-lines history of RPC calls."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path if path is not None else _constants.RPC_LOG_FILE

    @property
    def path(self) -> Path:
        return self._path

    def append(self, record: dict[str, object]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

    def tail(self, limit: int = 20) -> list[dict[str, object]]:
        """Return up to *limit* of the newest records, oldest first."""
        if limit <= 0 or not self._path.exists():
            return []
        records: deque[dict[str, object]] = deque(maxlen=limit)
        with self._path.open(encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                except ValueError:
                    logger.warning("Skipping malformed line %d in %s", lineno, self._path)
                    continue
                if isinstance(record, dict):
                    records.append(record)
        return list(records)


def load_templates(path: Path | None = None) -> list[RpcTemplate]:
    """Load RPC templates from a JSON list of ``{name, method, params}``.

    A missing file yields an empty list.  Entries without a name or method
    are skipped.
    """
    path = path if path is not None else _constants.TEMPLATES_FILE
    if not path.exists():
        return []
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list of templates.")
    templates: list[RpcTemplate] = []
    for entry in data:
        if not isinstance(entry, dict) or not entry.get("name") or not entry.get("method"):
            logger.debug("Skipping incomplete template entry: %r", entry)
            continue
        templates.append(
            RpcTemplate(
                name=str(entry["name"]),
                method=str(entry["method"]),
                params=entry.get("params", {}),
            )
        )
    return templates
