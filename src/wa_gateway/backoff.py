"""Reconnect delay calculation.

Exponential backoff with additive jitter for ordinary disconnects, and a short
linear schedule for disconnects where the server asked for an immediate restart.
"""

from __future__ import annotations

import random

from wa_gateway.const import (
    MAX_BACKOFF_EXPONENT,
    MAX_RECONNECT_DELAY_MS,
    RECONNECT_BASE_DELAY_MS,
    RECONNECT_JITTER_MS,
    RESTART_REQUIRED_BASE_DELAY_MS,
    RESTART_REQUIRED_STEP_MS,
)

__all__ = ["ReconnectBackoff", "reconnect_delay_ms", "restart_required_delay_ms"]


class ReconnectBackoff:
    """Exponential backoff policy with jitter.

    Jitter spreads reconnects of many gateways that lost the server at the
    same moment.
    """

    def __init__(
        self,
        base_delay_ms: int = RECONNECT_BASE_DELAY_MS,
        max_delay_ms: int = MAX_RECONNECT_DELAY_MS,
        jitter_ms: int = RECONNECT_JITTER_MS,
        restart_base_ms: int = RESTART_REQUIRED_BASE_DELAY_MS,
        restart_step_ms: int = RESTART_REQUIRED_STEP_MS,
    ) -> None:
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter_ms = jitter_ms
        self.restart_base_ms = restart_base_ms
        self.restart_step_ms = restart_step_ms

    def get_delay_ms(self, attempt: int) -> int:
        """Calculate the delay before reconnect attempt ``attempt``.

        Formula: min(base * 2**attempt, max) + jitter, jitter in [0, jitter_ms)

        Args:
            attempt: Number of reconnects already made (0 for the first one)

        Returns:
            Delay in milliseconds

        """
        exponent = min(max(attempt, 0), MAX_BACKOFF_EXPONENT)
        delay = min(self.base_delay_ms * (2**exponent), self.max_delay_ms)
        jitter = random.randrange(0, self.jitter_ms) if self.jitter_ms > 0 else 0
        return delay + jitter

    def restart_required_delay_ms(self, attempt: int) -> int:
        """Short linear delay used when the server requested a restart."""
        return self.restart_base_ms + max(attempt, 0) * self.restart_step_ms

    def __repr__(self) -> str:
        return (
            f"ReconnectBackoff(base={self.base_delay_ms}ms, "
            f"max={self.max_delay_ms}ms, "
            f"jitter={self.jitter_ms}ms)"
        )


_DEFAULT = ReconnectBackoff()


def reconnect_delay_ms(attempt: int) -> int:
    return _DEFAULT.get_delay_ms(attempt)


def restart_required_delay_ms(attempt: int) -> int:
    return _DEFAULT.restart_required_delay_ms(attempt)
