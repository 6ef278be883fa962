"""Pairing code issuance, caching and proactive refresh.

The coordinator keeps a single ``PairingRecord`` slot. It never holds a session
handle: every operation that talks to the protocol library receives the handle
from the controller. Its timers (refresh and auto-pair retry) live in the
controller's ``TimerRegistry``, and when one fires the coordinator calls back
into the controller, which supplies the current handle.
"""

from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from wa_gateway.const import AUTO_PAIR_TIMER, PAIRING_REFRESH_TIMER
from wa_gateway.exceptions import InvalidPhoneError
from wa_gateway.logging_abstraction import get_logger
from wa_gateway.notifier import PAIRING_CODE, EventNotifier
from wa_gateway.structs import GatewaySettings, SessionHandle
from wa_gateway.timers import TimerRegistry
from wa_gateway.utils import normalize_phone

__all__ = [
    "PairingAttemptLog",
    "PairingCoordinator",
    "PairingPhase",
    "PairingRecord",
    "PairingResult",
]

logger = get_logger(__name__)

Clock = Callable[[], float]
AutoPairDue = Callable[[bool], Awaitable[Any] | None]


class PairingPhase(StrEnum):
    IDLE = "idle"
    CODE_REQUESTED = "code_requested"
    CODE_ISSUED = "code_issued"
    CONSUMED = "consumed"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class PairingRecord:
    phone: str
    code: str
    issued_at: float
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at

    def remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


@dataclass(slots=True)
class PairingResult:
    ok: bool
    code: str | None = None
    phone: str | None = None
    cached: bool = False
    expires_at: float | None = None
    remaining: float | None = None
    ttl: float | None = None
    error: str | None = None
    # "no_session", "registered", "invalid_phone", "rate_limited", "request_failed"
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": self.ok}
        if self.ok:
            data["pairingCode"] = self.code
            data["phone"] = self.phone
            if self.cached:
                data["cached"] = True
            if self.remaining is not None:
                data["remainingMs"] = int(self.remaining * 1000)
            if self.expires_at is not None:
                data["expiresAt"] = _iso(self.expires_at)
            if self.ttl is not None:
                data["ttlMs"] = int(self.ttl * 1000)
        else:
            data["error"] = self.error
        return data


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat()


class PairingAttemptLog:
    """Rolling-window log of administrator pairing attempts."""

    def __init__(self, max_attempts: int, window: float, clock: Clock = time.time) -> None:
        self.max_attempts = max_attempts
        self.window = window
        self._clock = clock
        self._attempts: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._attempts and now - self._attempts[0] >= self.window:
            _ = self._attempts.popleft()

    def record(self) -> None:
        now = self._clock()
        self._attempts.append(now)
        self._prune(now)

    def count(self) -> int:
        self._prune(self._clock())
        return len(self._attempts)

    def can_request(self) -> bool:
        return self.count() < self.max_attempts

    def remaining(self) -> int:
        return max(0, self.max_attempts - self.count())

    def time_until_reset(self) -> float:
        """Seconds until the oldest attempt leaves the window (0 when empty)."""
        now = self._clock()
        self._prune(now)
        if not self._attempts:
            return 0.0
        return max(0.0, self._attempts[0] + self.window - now)


class PairingCoordinator:
    """Issues, caches and refreshes pairing codes and runs the auto-pair retries."""

    lp = "PairingCoordinator:"

    def __init__(
        self,
        settings: GatewaySettings,
        timers: TimerRegistry,
        notifier: EventNotifier,
        phone_provider: Callable[[], str | None],
        on_auto_pair_due: AutoPairDue,
        clock: Clock = time.time,
    ) -> None:
        self.settings = settings
        self.timers = timers
        self.notifier = notifier
        self._phone_provider = phone_provider
        self._on_auto_pair_due = on_auto_pair_due
        self._clock = clock

        self.phase: PairingPhase = PairingPhase.IDLE
        self.record: PairingRecord | None = None
        self.auto_pair_attempts: int = 0
        self.last_code_at: float | None = None
        self.attempt_log = PairingAttemptLog(settings.max_pairing_attempts, settings.pairing_attempt_window, clock)

    def _reusable(self, phone: str, now: float) -> PairingRecord | None:
        record = self.record
        if (
            record is not None
            and record.phone == phone
            and record.is_valid(now)
            and record.remaining(now) > self.settings.pairing_min_reuse_remaining
        ):
            return record
        return None

    def _store(self, phone: str, code: str, issued_at: float) -> PairingRecord:
        self.record = PairingRecord(
            phone=phone,
            code=code,
            issued_at=issued_at,
            expires_at=issued_at + self.settings.pairing_code_ttl,
        )
        self.last_code_at = issued_at
        self.phase = PairingPhase.CODE_ISSUED
        _ = self.notifier.emit(PAIRING_CODE, code)
        return self.record

    def _issued_result(self, record: PairingRecord) -> PairingResult:
        return PairingResult(
            ok=True,
            code=record.code,
            phone=record.phone,
            expires_at=record.expires_at,
            ttl=self.settings.pairing_code_ttl,
        )

    def _cached_result(self, record: PairingRecord, now: float) -> PairingResult:
        return PairingResult(
            ok=True,
            code=record.code,
            phone=record.phone,
            cached=True,
            expires_at=record.expires_at,
            remaining=record.remaining(now),
        )

    async def _issue(self, handle: SessionHandle, phone: str) -> PairingRecord:
        previous = self.phase
        self.phase = PairingPhase.CODE_REQUESTED
        issued_at = self._clock()
        try:
            code = await handle.request_pairing_code(phone)
        except BaseException:
            self.phase = previous
            raise
        return self._store(phone, code, issued_at)

    async def request_code(
        self,
        handle: SessionHandle | None,
        phone: str | None,
        force: bool = False,
    ) -> PairingResult:
        """Return a pairing code for ``phone``, reusing a cached one unless ``force``.

        Without a phone, falls back to the configured default, then to whatever
        valid code is cached.
        """
        lp = f"{self.lp}request_code:"
        if handle is None:
            return PairingResult(ok=False, error="Session not initialised yet", reason="no_session")
        if handle.auth_state.creds.registered:
            return PairingResult(
                ok=False,
                error="Session already registered. Reset the session to pair again.",
                reason="registered",
            )

        now = self._clock()
        raw_phone = phone or self._phone_provider()
        if not raw_phone:
            if self.record is not None and self.record.is_valid(now):
                return self._cached_result(self.record, now)
            return PairingResult(
                ok=False,
                error="Provide phone=<country code + number> or configure PAIR_PHONE",
                reason="invalid_phone",
            )
        try:
            clean_phone = normalize_phone(raw_phone)
        except InvalidPhoneError as e:
            return PairingResult(ok=False, error=str(e), reason="invalid_phone")

        if not force:
            cached = self._reusable(clean_phone, now)
            if cached is not None:
                logger.debug("%s reusing cached code", lp, extra={"phone": clean_phone})
                return self._cached_result(cached, now)

        try:
            record = await self._issue(handle, clean_phone)
        except Exception as e:
            logger.exception("%s failed to request pairing code", lp, extra={"phone": clean_phone})
            return PairingResult(ok=False, error=str(e) or type(e).__name__, reason="request_failed")

        self.schedule_refresh()
        logger.info("%s pairing code issued for %s: %s", lp, clean_phone, record.code, extra={"force": force})
        return self._issued_result(record)

    async def request_code_admin(self, handle: SessionHandle | None, phone: str | None) -> PairingResult:
        """Operator-initiated request; always issues a new code, within the attempt rate limit."""
        lp = f"{self.lp}request_code_admin:"
        if handle is None:
            return PairingResult(ok=False, error="Session not initialised yet", reason="no_session")
        if handle.auth_state.creds.registered:
            return PairingResult(
                ok=False,
                error="Session already registered. Reset the session to pair again.",
                reason="registered",
            )
        if not self.attempt_log.can_request():
            minutes = math.ceil(self.attempt_log.time_until_reset() / 60)
            logger.warning("%s attempt limit reached", lp, extra={"retry_in_min": minutes})
            return PairingResult(
                ok=False,
                error=f"Pairing attempt limit reached. Wait {minutes} minutes or use the QR code.",
                reason="rate_limited",
            )
        try:
            clean_phone = normalize_phone(phone)
        except InvalidPhoneError as e:
            return PairingResult(ok=False, error=str(e), reason="invalid_phone")

        try:
            record = await self._issue(handle, clean_phone)
        except Exception as e:
            logger.exception("%s failed to request pairing code", lp, extra={"phone": clean_phone})
            return PairingResult(ok=False, error=str(e) or type(e).__name__, reason="request_failed")

        self.attempt_log.record()
        self.schedule_refresh()
        logger.info(
            "%s pairing code issued for %s: %s",
            lp,
            clean_phone,
            record.code,
            extra={"remaining_attempts": self.attempt_log.remaining()},
        )
        return self._issued_result(record)

    def schedule_refresh(self) -> bool:
        """(Re)arm the single refresh timer to fire ``leeway`` seconds before expiry."""
        lp = f"{self.lp}schedule_refresh:"
        record = self.record
        if record is None:
            return False
        remaining = record.expires_at - self._clock()
        if remaining <= 0:
            logger.info("%s code already expired, refreshing now", lp)
            delay = 0.0
        else:
            delay = max(self.settings.pairing_refresh_min_delay, remaining - self.settings.pairing_refresh_leeway)
        _ = self.timers.schedule(PAIRING_REFRESH_TIMER, delay, self._refresh_due)
        logger.debug("%s refresh in %.1fs", lp, delay, extra={"remaining_s": round(remaining, 1)})
        return True

    def _refresh_due(self) -> Awaitable[Any] | None:
        logger.info("%srefresh: refreshing pairing code before expiry", self.lp)
        return self._on_auto_pair_due(True)

    def _retry_due(self) -> Awaitable[Any] | None:
        return self._on_auto_pair_due(False)

    def schedule_auto_pair(self, delay: float) -> bool:
        """Arm the auto-pair timer when a default phone exists and auto-pair is allowed."""
        lp = f"{self.lp}schedule_auto_pair:"
        if self.settings.admin_mode:
            logger.debug("%s skipped: admin mode", lp)
            return False
        if not self._phone_provider():
            return False
        if self.auto_pair_attempts > 0 and self.record is not None:
            return False
        _ = self.timers.schedule(AUTO_PAIR_TIMER, delay, self._retry_due)
        return True

    async def auto_pair(self, handle: SessionHandle | None, force: bool = False) -> bool:
        """Background code request for the default phone. Returns True when a new code was issued."""
        lp = f"{self.lp}auto_pair:"
        if handle is None or handle.auth_state.creds.registered:
            return False
        if self.settings.admin_mode and not force:
            logger.info("%s blocked: admin mode active", lp)
            return False
        raw_phone = self._phone_provider()
        if not raw_phone:
            return False
        try:
            phone = normalize_phone(raw_phone)
        except InvalidPhoneError:
            logger.warning("%s configured phone is invalid", lp, extra={"phone": raw_phone})
            return False

        now = self._clock()
        if not force:
            if self._reusable(phone, now) is not None:
                logger.info("%s skipped: valid code already issued", lp)
                return False
            if self.last_code_at is not None and now - self.last_code_at < self.settings.auto_pair_cooldown:
                logger.info(
                    "%s skipped: cooldown",
                    lp,
                    extra={"remaining_s": round(self.settings.auto_pair_cooldown - (now - self.last_code_at), 1)},
                )
                return False

        self.auto_pair_attempts += 1
        try:
            record = await self._issue(handle, phone)
        except Exception as e:
            if self.auto_pair_attempts < self.settings.max_auto_pair_attempts:
                backoff = self.settings.auto_pair_retry_base * (2 ** (self.auto_pair_attempts - 1))
                logger.warning(
                    "%s attempt %d failed: %s. Retrying in %.1fs",
                    lp,
                    self.auto_pair_attempts,
                    e,
                    backoff,
                )
                _ = self.timers.schedule(AUTO_PAIR_TIMER, backoff, self._retry_due)
            else:
                logger.error(
                    "%s giving up after %d attempts: %s",
                    lp,
                    self.auto_pair_attempts,
                    e,
                    extra={"phone": phone},
                )
            return False

        self.schedule_refresh()
        logger.info(
            "%s %s pairing code issued (attempt %d) for %s: %s",
            lp,
            "(forced)" if force else "(auto)",
            self.auto_pair_attempts,
            phone,
            record.code,
        )
        return True

    def mark_consumed(self) -> None:
        """Registration succeeded: drop the code and stop every pending refresh or retry."""
        _ = self.timers.cancel(PAIRING_REFRESH_TIMER)
        _ = self.timers.cancel(AUTO_PAIR_TIMER)
        self.record = None
        self.auto_pair_attempts = 0
        self.phase = PairingPhase.CONSUMED

    def mark_expired(self) -> None:
        _ = self.timers.cancel(PAIRING_REFRESH_TIMER)
        if self.record is not None:
            now = self._clock()
            self.record = PairingRecord(
                phone=self.record.phone,
                code=self.record.code,
                issued_at=self.record.issued_at,
                expires_at=min(self.record.expires_at, now),
            )
        self.phase = PairingPhase.EXPIRED

    def reset(self) -> None:
        _ = self.timers.cancel(PAIRING_REFRESH_TIMER)
        _ = self.timers.cancel(AUTO_PAIR_TIMER)
        self.record = None
        self.auto_pair_attempts = 0
        self.last_code_at = None
        self.phase = PairingPhase.IDLE

    def reset_auto_pair_attempts(self) -> None:
        self.auto_pair_attempts = 0

    def get_status(self) -> dict[str, Any] | None:
        record = self.record
        if record is None:
            return None
        now = self._clock()
        return {
            "phone": record.phone,
            "at": _iso(record.issued_at),
            "code": bool(record.code),
            "expiresAt": _iso(record.expires_at),
            "remainingMs": int(record.remaining(now) * 1000),
            "valid": record.is_valid(now),
            "phase": str(self.phase),
        }

    def get_info(self) -> dict[str, Any]:
        return {
            "attempts": self.attempt_log.count(),
            "remainingAttempts": self.attempt_log.remaining(),
            "timeUntilReset": int(self.attempt_log.time_until_reset() * 1000),
            "canRequestCode": self.attempt_log.can_request(),
        }
