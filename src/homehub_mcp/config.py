import os
from pathlib import Path

SERVICE_TYPE = "_homehub._tcp.local."

DEFAULT_PORT = 8080
DEFAULT_SERVER_NAME = "HomeHub Server"
MANUAL_SERVER_NAME = "Manual Server"

RECENTS_CAPACITY = 10
RECENTS_KEY = "HomeHub_RecentServers"

DEFAULT_STATE_FILE = Path.home() / ".homehub" / "state.json"
DEFAULT_REQUEST_TIMEOUT = 10.0


def get_host() -> str:
    """Manual server address from HOMEHUB_HOST, or an empty string."""
    return os.environ.get("HOMEHUB_HOST", "").strip()


def get_state_file() -> Path:
    value = os.environ.get("HOMEHUB_STATE_FILE")
    return Path(value).expanduser() if value else DEFAULT_STATE_FILE


def get_request_timeout() -> float:
    value = os.environ.get("HOMEHUB_REQUEST_TIMEOUT")
    if not value:
        return DEFAULT_REQUEST_TIMEOUT
    try:
        timeout = float(value)
    except ValueError:
        return DEFAULT_REQUEST_TIMEOUT
    return timeout if timeout > 0 else DEFAULT_REQUEST_TIMEOUT


def get_log_level() -> str:
    return os.environ.get("HOMEHUB_LOG_LEVEL", "INFO").upper()
