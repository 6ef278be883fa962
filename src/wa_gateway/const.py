import os

from wa_gateway import __version__

__all__ = [
    "ADMIN_ORPHAN_MIN_AGE_SECONDS",
    "AUTO_PAIR_AFTER_RESET_DELAY",
    "AUTO_PAIR_COOLDOWN_SECONDS",
    "AUTO_PAIR_INITIAL_DELAY",
    "AUTO_PAIR_ON_OPEN_DELAY",
    "AUTO_PAIR_RETRY_BASE_SECONDS",
    "AUTO_PAIR_TIMER",
    "CREDS_FILE_NAME",
    "DEDUP_EVICT_BATCH",
    "DEDUP_MAX_IDS",
    "EARLY_CLOSE_RESTART_DELAY",
    "EARLY_CLOSE_WINDOW_SECONDS",
    "MANUAL_RESET_RESTART_DELAY",
    "MAX_AUTO_PAIR_ATTEMPTS",
    "MAX_BACKOFF_EXPONENT",
    "MAX_PAIRING_ATTEMPTS",
    "MAX_RECONNECT_DELAY_MS",
    "OUTBOUND_META_TTL_SECONDS",
    "PAIRING_ATTEMPT_WINDOW_SECONDS",
    "PAIRING_CODE_TTL_SECONDS",
    "PAIRING_MIN_REUSE_REMAINING_SECONDS",
    "PAIRING_REFRESH_LEEWAY_SECONDS",
    "PAIRING_REFRESH_MIN_DELAY",
    "PAIRING_REFRESH_TIMER",
    "RECONNECT_BASE_DELAY_MS",
    "RECONNECT_JITTER_MS",
    "RECONNECT_TIMER",
    "RESTART_REQUIRED_BASE_DELAY_MS",
    "RESTART_REQUIRED_STEP_MS",
    "RESTART_TIMER",
    "STALE_SESSION_MIN_AGE_SECONDS",
    "WA_ADMIN_MODE",
    "WA_DEBUG",
    "WA_EXTERNAL_ENDPOINT",
    "WA_LOG_CONN_VERBOSE",
    "WA_LOG_FORMAT",
    "WA_LOG_HUMAN_OUTPUT",
    "WA_LOG_JSON_FILE",
    "WA_LOG_MESSAGES",
    "WA_LOG_NAME",
    "WA_PAIR_PHONE",
    "WA_PORT",
    "WA_RUNTIME_CONFIG_PATH",
    "WA_SESSION_FACTORY",
    "WA_SESSION_FOLDER",
    "WA_SHUTDOWN_TIMEOUT",
    "WA_SRV_HOST",
    "WA_VERSION",
    "WEBHOOK_CONTENT_TYPE",
    "WEBHOOK_TIMEOUT_SECONDS",
    "YES_ANSWER",
    "env_bool",
    "env_float",
    "env_int",
    "env_str",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", "on")


def env_str(name: str, default: str | None = None) -> str | None:
    value = os.environ.get(name)
    if value is None:
        return default
    value = value.strip()
    if not value or value.lower() == "null":
        return default
    return value


def env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().casefold() in YES_ANSWER


def env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


WA_VERSION: str = __version__
WA_LOG_NAME: str = "wa_gateway"

WA_SRV_HOST: str = env_str("WA_SRV_HOST", "0.0.0.0") or "0.0.0.0"
WA_PORT: int = env_int("WA_PORT", 8000)
WA_SESSION_FOLDER: str = env_str("WA_SESSION_FOLDER", "baileys_auth_info") or "baileys_auth_info"
WA_PAIR_PHONE: str | None = env_str("WA_PAIR_PHONE")
WA_EXTERNAL_ENDPOINT: str | None = env_str("WA_EXTERNAL_ENDPOINT")
WA_ADMIN_MODE: bool = env_bool("WA_ADMIN_MODE")
WA_RUNTIME_CONFIG_PATH: str = env_str("WA_RUNTIME_CONFIG_PATH", "dynamic-config.json") or "dynamic-config.json"
WA_SESSION_FACTORY: str | None = env_str("WA_SESSION_FACTORY")
WA_SHUTDOWN_TIMEOUT: float = env_float("WA_SHUTDOWN_TIMEOUT", 15.0)

WA_DEBUG: bool = env_bool("WA_DEBUG")
WA_LOG_MESSAGES: bool = env_bool("WA_LOG_MESSAGES")
WA_LOG_CONN_VERBOSE: bool = env_bool("WA_LOG_CONN_VERBOSE")
WA_LOG_FORMAT: str = env_str("WA_LOG_FORMAT", "human") or "human"  # "json", "human", or "both"
WA_LOG_JSON_FILE: str | None = env_str("WA_LOG_JSON_FILE")
WA_LOG_HUMAN_OUTPUT: str = env_str("WA_LOG_HUMAN_OUTPUT", "stdout") or "stdout"

# Named controller timers
RECONNECT_TIMER = "reconnect"
PAIRING_REFRESH_TIMER = "pairing_refresh"
AUTO_PAIR_TIMER = "auto_pair"
RESTART_TIMER = "restart"

# Reconnect backoff (milliseconds)
RECONNECT_BASE_DELAY_MS: int = 1000
MAX_RECONNECT_DELAY_MS: int = 60_000
RECONNECT_JITTER_MS: int = 1000
# 2**16 seconds already exceeds MAX_RECONNECT_DELAY_MS
MAX_BACKOFF_EXPONENT: int = 16
RESTART_REQUIRED_BASE_DELAY_MS: int = 500
RESTART_REQUIRED_STEP_MS: int = 200

# Pairing (seconds)
PAIRING_CODE_TTL_SECONDS: float = 180.0
PAIRING_REFRESH_LEEWAY_SECONDS: float = 10.0
PAIRING_REFRESH_MIN_DELAY: float = 0.2
PAIRING_MIN_REUSE_REMAINING_SECONDS: float = 12.0
MAX_AUTO_PAIR_ATTEMPTS: int = 6
AUTO_PAIR_COOLDOWN_SECONDS: float = 12.0
AUTO_PAIR_RETRY_BASE_SECONDS: float = 1.0
PAIRING_ATTEMPT_WINDOW_SECONDS: float = 3600.0
MAX_PAIRING_ATTEMPTS: int = 4

AUTO_PAIR_INITIAL_DELAY: float = 2.0
AUTO_PAIR_ON_OPEN_DELAY: float = 1.5
AUTO_PAIR_AFTER_RESET_DELAY: float = 1.2

# Session directory housekeeping (seconds)
STALE_SESSION_MIN_AGE_SECONDS: float = 300.0
ADMIN_ORPHAN_MIN_AGE_SECONDS: float = 3600.0
MANUAL_RESET_RESTART_DELAY: float = 0.4
EARLY_CLOSE_WINDOW_SECONDS: float = 0.7
EARLY_CLOSE_RESTART_DELAY: float = 1.5
CREDS_FILE_NAME: str = "creds.json"

# Delivery tracking
DEDUP_MAX_IDS: int = 2000
DEDUP_EVICT_BATCH: int = 400
OUTBOUND_META_TTL_SECONDS: float = 24 * 3600.0

# Webhook
WEBHOOK_TIMEOUT_SECONDS: float = 8.0
WEBHOOK_CONTENT_TYPE: str = "application/vnd.api+json"
