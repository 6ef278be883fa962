"""Core data structures and typing protocols for the session gateway."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel

from wa_gateway import const
from wa_gateway.const import env_bool, env_float, env_int, env_str

__all__ = [
    "ConnectionState",
    "EventListener",
    "GatewaySettings",
    "LifecyclePhase",
    "SessionAuthState",
    "SessionCreds",
    "SessionFactory",
    "SessionHandle",
    "SessionState",
]


class ConnectionState(StrEnum):
    """Connection state reported to callers."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class LifecyclePhase(StrEnum):
    """Internal controller phase; ``STARTING`` and ``CONNECTING`` make start a no-op."""

    IDLE = "idle"
    STARTING = "starting"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class GatewaySettings(BaseModel):
    """Runtime settings for the gateway.

    Defaults mirror ``wa_gateway.const``; ``from_env`` re-reads the environment so
    values loaded from a dotenv file after import are honoured. Durations are seconds.
    """

    host: str = const.WA_SRV_HOST
    port: int = const.WA_PORT
    session_dir: Path = Path(const.WA_SESSION_FOLDER)
    pair_phone: str | None = None
    external_endpoint: str | None = None
    admin_mode: bool = False
    runtime_config_path: Path = Path(const.WA_RUNTIME_CONFIG_PATH)
    session_factory: str | None = None
    log_messages: bool = False
    log_conn_verbose: bool = False
    shutdown_timeout: float = const.WA_SHUTDOWN_TIMEOUT

    # Pairing
    pairing_code_ttl: float = const.PAIRING_CODE_TTL_SECONDS
    pairing_refresh_leeway: float = const.PAIRING_REFRESH_LEEWAY_SECONDS
    pairing_refresh_min_delay: float = const.PAIRING_REFRESH_MIN_DELAY
    pairing_min_reuse_remaining: float = const.PAIRING_MIN_REUSE_REMAINING_SECONDS
    max_auto_pair_attempts: int = const.MAX_AUTO_PAIR_ATTEMPTS
    auto_pair_cooldown: float = const.AUTO_PAIR_COOLDOWN_SECONDS
    auto_pair_retry_base: float = const.AUTO_PAIR_RETRY_BASE_SECONDS
    pairing_attempt_window: float = const.PAIRING_ATTEMPT_WINDOW_SECONDS
    max_pairing_attempts: int = const.MAX_PAIRING_ATTEMPTS
    auto_pair_initial_delay: float = const.AUTO_PAIR_INITIAL_DELAY
    auto_pair_on_open_delay: float = const.AUTO_PAIR_ON_OPEN_DELAY
    auto_pair_after_reset_delay: float = const.AUTO_PAIR_AFTER_RESET_DELAY

    # Lifecycle
    stale_session_min_age: float = const.STALE_SESSION_MIN_AGE_SECONDS
    admin_orphan_min_age: float = const.ADMIN_ORPHAN_MIN_AGE_SECONDS
    manual_reset_restart_delay: float = const.MANUAL_RESET_RESTART_DELAY
    early_close_window: float = const.EARLY_CLOSE_WINDOW_SECONDS
    early_close_restart_delay: float = const.EARLY_CLOSE_RESTART_DELAY

    # Delivery tracking
    dedup_max_ids: int = const.DEDUP_MAX_IDS
    dedup_evict_batch: int = const.DEDUP_EVICT_BATCH
    outbound_meta_ttl: float = const.OUTBOUND_META_TTL_SECONDS

    webhook_timeout: float = const.WEBHOOK_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls, **overrides: Any) -> GatewaySettings:
        """Build settings from the current process environment."""
        values: dict[str, Any] = {
            "host": env_str("WA_SRV_HOST", "0.0.0.0"),
            "port": env_int("WA_PORT", 8000),
            "session_dir": Path(env_str("WA_SESSION_FOLDER", "baileys_auth_info") or "baileys_auth_info"),
            "pair_phone": env_str("WA_PAIR_PHONE"),
            "external_endpoint": env_str("WA_EXTERNAL_ENDPOINT"),
            "admin_mode": env_bool("WA_ADMIN_MODE"),
            "runtime_config_path": Path(
                env_str("WA_RUNTIME_CONFIG_PATH", "dynamic-config.json") or "dynamic-config.json"
            ),
            "session_factory": env_str("WA_SESSION_FACTORY"),
            "log_messages": env_bool("WA_LOG_MESSAGES"),
            "log_conn_verbose": env_bool("WA_LOG_CONN_VERBOSE"),
            "shutdown_timeout": env_float("WA_SHUTDOWN_TIMEOUT", 15.0),
        }
        values.update(overrides)
        return cls(**values)


@dataclass
class SessionState:
    """Controller-owned session status snapshot."""

    connection: ConnectionState = ConnectionState.IDLE
    registered: bool = False
    has_credentials: bool = False
    reconnect_attempts: int = 0
    restart_scheduled: bool = False
    last_started_at: float | None = None
    should_stop_reconnecting: bool = False

    def started_recently(self, window: float, now: float | None = None) -> bool:
        if self.last_started_at is None:
            return False
        now = time.monotonic() if now is None else now
        return now - self.last_started_at < window

    def as_dict(self) -> dict[str, Any]:
        return {
            "connection": str(self.connection),
            "registered": self.registered,
            "hasCredentials": self.has_credentials,
            "reconnectAttempts": self.reconnect_attempts,
            "restartScheduled": self.restart_scheduled,
        }


class SessionCreds(Protocol):
    """Credential object of the external library."""

    registered: bool
    me: Any
    noise_key: Any


class SessionAuthState(Protocol):
    creds: SessionCreds


EventListener = Callable[[str, Any], None]


class SessionHandle(Protocol):
    """One authenticated connection created by the external protocol library."""

    auth_state: SessionAuthState

    @property
    def user_id(self) -> str | None:
        """JID of the logged-in account, once known."""
        ...

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Attach an event listener; returns a callable that detaches it."""
        ...

    async def request_pairing_code(self, phone: str) -> str:
        """Ask the remote service for a pairing code for ``phone``."""
        ...

    async def send_message(self, jid: str, content: dict[str, Any]) -> str | None:
        """Send a message; returns the remote message id when one is assigned."""
        ...

    async def save_creds(self) -> None:
        """Persist credentials to the session directory."""
        ...

    async def close(self) -> None:
        """Close the transport."""
        ...


SessionFactory = Callable[[Path], Awaitable[SessionHandle]]

