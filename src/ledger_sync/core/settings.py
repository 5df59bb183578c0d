import os
from collections.abc import Callable
from typing import TypeVar

from dotenv import find_dotenv, load_dotenv

from ledger_sync.logger import get_logger

logger = get_logger(__name__)

N = TypeVar("N", int, float)

CONFIG_FILENAME = "config.yaml"

DEFAULT_SYNC_WINDOW_DAYS = 30
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 30.0
DEFAULT_RECATEGORIZE_MAX_ATTEMPTS = 3
DEFAULT_RECATEGORIZE_RETRY_DELAY_SECONDS = 0.5
DEFAULT_MONO_BASE_URL = "https://api.withmono.com/v2"
DEFAULT_MTN_BASE_URL = "https://sandbox.momodeveloper.mtn.com"
DEFAULT_STORE_BACKEND = "sqlite"
STORE_BACKENDS = ("sqlite", "memory")

# Keys a config file may provide. The environment always wins.
CONFIG_KEYS = (
    "HOST",
    "PORT",
    "LOG_LEVEL",
    "LOG_DIR",
    "DATA_DIR",
    "DATABASE_PATH",
    "STORE_BACKEND",
    "MONO_BASE_URL",
    "MONO_SECRET_KEY",
    "MTN_API_BASE_URL",
    "MTN_API_KEY",
    "MTN_API_SECRET",
    "MTN_SUBSCRIPTION_KEY",
    "MTN_TARGET_ENVIRONMENT",
    "PROVIDER_TIMEOUT",
    "SYNC_WINDOW_DAYS",
    "RECATEGORIZE_MAX_ATTEMPTS",
    "RECATEGORIZE_RETRY_DELAY",
)

_SENSITIVE_MARKERS = ("KEY", "TOKEN", "SECRET", "PASSWORD", "AUTH")


def _config_dir_file(name: str) -> str | None:
    config_dir = os.getenv("CONFIG_DIR")
    return os.path.join(config_dir, name) if config_dir else None


def _resolve_dotenv_path() -> str | None:
    candidate = _config_dir_file(".env")
    if candidate and os.path.exists(candidate):
        return candidate
    return find_dotenv(usecwd=True) or None


def _resolve_config_path() -> str:
    candidate = _config_dir_file(CONFIG_FILENAME)
    if candidate:
        return candidate
    nested = os.path.join(os.getcwd(), "config", CONFIG_FILENAME)
    if os.path.exists(nested):
        return nested
    return os.path.join(os.getcwd(), CONFIG_FILENAME)


def _clean_value(raw_value: str) -> str:
    """Drop an unquoted trailing ``# comment`` and one pair of surrounding quotes."""
    quote: str | None = None
    for index, char in enumerate(raw_value):
        if char in "\"'":
            quote = None if quote == char else (quote or char)
        elif char == "#" and quote is None:
            raw_value = raw_value[:index]
            break
    value = raw_value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1]
    return value


def read_config_file(path: str | None) -> dict[str, str]:
    """Read a flat ``KEY: value`` file; blank values and comments are skipped."""
    if not path or not os.path.exists(path):
        return {}

    values: dict[str, str] = {}
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped or stripped.startswith("#") or ":" not in stripped:
                continue
            key, raw_value = stripped.split(":", 1)
            key = key.strip()
            value = _clean_value(raw_value)
            if key and value:
                values[key] = value
    return values


def load_environment() -> None:
    dotenv_path = _resolve_dotenv_path()
    if dotenv_path:
        load_dotenv(dotenv_path=dotenv_path, override=False)

    file_values = read_config_file(_resolve_config_path())
    for key in CONFIG_KEYS:
        if key not in os.environ and key in file_values:
            os.environ[key] = file_values[key]


def ensure_dir(path: str | None) -> None:
    if path and path not in {".", "./"}:
        os.makedirs(path, exist_ok=True)


def _get_env_number(name: str, default: N, cast: Callable[[str], N], min_value: N | None) -> N:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning("[ENV] Invalid %s='%s', using default %s.", name, raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("[ENV] %s='%s' below minimum %s, using default %s.", name, raw, min_value, default)
        return default
    return value


def get_env_int(name: str, default: int, min_value: int | None = None) -> int:
    return _get_env_number(name, default, int, min_value)


def get_env_float(name: str, default: float, min_value: float | None = None) -> float:
    return _get_env_number(name, default, float, min_value)


def get_sync_window_days() -> int:
    return get_env_int("SYNC_WINDOW_DAYS", DEFAULT_SYNC_WINDOW_DAYS, min_value=1)


def get_provider_timeout() -> float:
    return get_env_float("PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT_SECONDS, min_value=0.1)


def get_recategorize_retry_policy() -> tuple[int, float]:
    """(attempts, fixed delay in seconds) for each bulk re-categorization write."""
    attempts = get_env_int("RECATEGORIZE_MAX_ATTEMPTS", DEFAULT_RECATEGORIZE_MAX_ATTEMPTS, min_value=1)
    delay = get_env_float("RECATEGORIZE_RETRY_DELAY", DEFAULT_RECATEGORIZE_RETRY_DELAY_SECONDS, min_value=0.0)
    return attempts, delay


def get_store_backend() -> str:
    backend = (os.getenv("STORE_BACKEND") or DEFAULT_STORE_BACKEND).strip().lower()
    if backend not in STORE_BACKENDS:
        logger.warning("[ENV] Unknown STORE_BACKEND %r, using %s", backend, DEFAULT_STORE_BACKEND)
        return DEFAULT_STORE_BACKEND
    return backend


def mask_env_value(name: str, value: str) -> str:
    sanitized = value.replace("\r", "\\r").replace("\n", "\\n")
    if not any(marker in name.upper() for marker in _SENSITIVE_MARKERS):
        return sanitized
    if len(sanitized) <= 4:
        return "****"
    return f"{sanitized[:2]}...{sanitized[-2:]}"


def log_environment() -> None:
    logger.info("[ENV] Logging configured environment variables (masked where needed).")
    for key in CONFIG_KEYS:
        raw_value = os.getenv(key)
        value = "<unset>" if raw_value is None else mask_env_value(key, raw_value)
        logger.info("[ENV] %s=%s", key, value)


# SSE headers to reduce proxy buffering and keep connections alive.
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


load_environment()

DATA_DIR = os.getenv("DATA_DIR", ".")
ensure_dir(DATA_DIR)
ensure_dir(os.getenv("LOG_DIR"))

DATABASE_PATH = os.getenv("DATABASE_PATH", os.path.join(DATA_DIR, "ledger.db"))
