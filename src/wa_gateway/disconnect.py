"""Disconnect classification.

Maps the numeric status code of a closed connection to a severity class and an
operator-facing diagnosis.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

__all__ = [
    "DISCONNECT_REASONS",
    "DisconnectClass",
    "DisconnectDiagnosis",
    "DisconnectReason",
    "classify",
    "is_pairing_expired",
]

_PAIRING_EXPIRED = re.compile(r"QR refs attempts ended", re.IGNORECASE)


class DisconnectClass(StrEnum):
    FATAL = "fatal"
    RETRYABLE = "retryable"
    RESTART_REQUIRED = "restart_required"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class DisconnectReason:
    key: str
    disconnect_class: DisconnectClass
    title: str
    suggestion: str


DISCONNECT_REASONS: dict[int, DisconnectReason] = {
    401: DisconnectReason(
        "loggedOut",
        DisconnectClass.FATAL,
        "Session ended or invalidated (logged out)",
        "Session folder is removed; request a new pairing code",
    ),
    403: DisconnectReason(
        "forbidden",
        DisconnectClass.FATAL,
        "Access denied (forbidden)",
        "Check whether the account is blocked or restricted",
    ),
    408: DisconnectReason(
        "connectionLost|timedOut",
        DisconnectClass.RETRYABLE,
        "Connection lost or timed out",
        "Check network connectivity and latency",
    ),
    411: DisconnectReason(
        "multideviceMismatch",
        DisconnectClass.FATAL,
        "Multi-device version mismatch",
        "Update the protocol library or pair again from an up to date client",
    ),
    428: DisconnectReason(
        "connectionClosed",
        DisconnectClass.RETRYABLE,
        "Connection closed by the server",
        "Reconnecting automatically",
    ),
    440: DisconnectReason(
        "connectionReplaced",
        DisconnectClass.RETRYABLE,
        "Session replaced by another connection",
        "Check whether another instance is using the same credentials",
    ),
    500: DisconnectReason(
        "badSession",
        DisconnectClass.FATAL,
        "Session corrupted or invalid",
        "Session folder is removed; pair again",
    ),
    503: DisconnectReason(
        "unavailableService",
        DisconnectClass.RETRYABLE,
        "Service temporarily unavailable",
        "Wait a few seconds and let the retry run",
    ),
    515: DisconnectReason(
        "restartRequired",
        DisconnectClass.RESTART_REQUIRED,
        "Restart required by the server",
        "Restarting automatically",
    ),
}


@dataclass(frozen=True, slots=True)
class DisconnectDiagnosis:
    disconnect_class: DisconnectClass
    key: str
    title: str
    suggestion: str
    code: int | None = None
    raw_message: str = ""

    @property
    def is_fatal(self) -> bool:
        return self.disconnect_class is DisconnectClass.FATAL

    @property
    def should_reconnect(self) -> bool:
        """Unknown codes are treated as retryable."""
        return self.disconnect_class is not DisconnectClass.FATAL

    def as_dict(self) -> dict[str, object]:
        return {
            "class": str(self.disconnect_class),
            "code": self.code,
            "key": self.key,
            "title": self.title,
            "suggestion": self.suggestion,
            "rawMessage": self.raw_message,
        }


def classify(code: int | None, raw_message: str | None = "") -> DisconnectDiagnosis:
    """Classify a disconnect by status code.

    Codes outside the table, and a missing code, classify as ``UNKNOWN``.
    """
    raw = raw_message or ""
    if not code:
        return DisconnectDiagnosis(
            DisconnectClass.UNKNOWN,
            "unknown",
            "Unknown disconnect reason",
            "Check the detailed logs and stack trace",
            code,
            raw,
        )
    reason = DISCONNECT_REASONS.get(code)
    if reason is None:
        return DisconnectDiagnosis(
            DisconnectClass.UNKNOWN,
            "unmapped",
            f"Unmapped disconnect code ({code})",
            "Check the protocol library documentation or extend the mapping",
            code,
            raw,
        )
    return DisconnectDiagnosis(reason.disconnect_class, reason.key, reason.title, reason.suggestion, code, raw)


def is_pairing_expired(raw_message: str | None) -> bool:
    """True when the close message says the pairing/QR references ran out."""
    return raw_message is not None and _PAIRING_EXPIRED.search(raw_message) is not None
