"""Internal constants for the ThingsBoard REST API and local storage."""

from __future__ import annotations

from pathlib import Path

import aiohttp

PAGE_SIZE = 100

DEFAULT_RPC_TIMEOUT_MS = 5000

HTTP_TIMEOUT = aiohttp.ClientTimeout(total=15)
CONNECTION_CHECK_TIMEOUT = aiohttp.ClientTimeout(total=5)

# Seconds the console waits before returning to the login screen
SESSION_EXPIRED_DELAY = 2

LOGIN_PATH = "/api/auth/login"
REFRESH_PATH = "/api/auth/token"
DEVICES_PATH = "/api/tenant/devicesNew"
CREDENTIALS_PATH = "/api/device/{device_id}/credentials"
TWOWAY_RPC_PATH = "/api/plugins/rpc/twoway/{device_id}"
ATTRIBUTES_PATH = "/api/plugins/telemetry/DEVICE/{device_id}/values/attributes"

CONFIG_DIR = Path.home() / ".config" / "tbrpc"
CONFIG_FILE = CONFIG_DIR / "config.json"
TEMPLATES_FILE = CONFIG_DIR / "templates.json"
LOG_DIR = CONFIG_DIR / "logs"
RPC_LOG_FILE = LOG_DIR / "rpc-debug.log"

AUTH_CONFIG_KEY = "authConfig"
SERVER_CONFIG_KEY = "serverConfig"
FAVORITES_KEY = "favoriteDevices"

JSON_HEADERS: dict[str, str] = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}
