"""
Correlation ids for grouping log lines.

The process runs under one id (set in ``main``); each library event the session
controller processes gets its own ``evt-<generation>-<seq>`` id for the duration
of its handler, so every timer, pairing request and webhook post caused by that
event can be traced back to it.
"""

from __future__ import annotations

import contextvars
import itertools
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

__all__ = [
    "correlation_context",
    "ensure_correlation_id",
    "event_correlation_id",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
]

_current: contextvars.ContextVar[str | None] = contextvars.ContextVar("wa_correlation_id", default=None)
_event_counter = itertools.count(1)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def event_correlation_id(generation: int) -> str:
    """Id for one handle event: the handle generation plus a process-wide sequence number."""
    return f"evt-{generation}-{next(_event_counter)}"


def get_correlation_id() -> str | None:
    return _current.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _ = _current.set(correlation_id)


def ensure_correlation_id() -> str:
    """Return the active id, generating and installing one when there is none."""
    correlation_id = _current.get()
    if correlation_id is None:
        correlation_id = generate_correlation_id()
        _ = _current.set(correlation_id)
    return correlation_id


@contextmanager
def correlation_context(correlation_id: str | None = None, auto_generate: bool = True) -> Iterator[str | None]:
    """Run a block under ``correlation_id`` (a fresh one if omitted and ``auto_generate``).

    The previous id is restored on exit, including when the block raises.
    """
    if correlation_id is None and auto_generate:
        correlation_id = generate_correlation_id()
    token = _current.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _current.reset(token)
