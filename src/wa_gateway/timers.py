"""Named, individually cancellable timers.

The controller owns one ``TimerRegistry``; every delayed action (reconnect,
pairing refresh, auto-pair retry, fresh restart) is scheduled under a name, and
scheduling a name that is already pending replaces it. So at most one timer per
name can ever be pending.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import time
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from wa_gateway.logging_abstraction import get_logger

__all__ = ["PendingTimer", "TimerCallback", "TimerRegistry"]

logger = get_logger(__name__)

TimerCallback = Callable[[], Awaitable[Any] | None]


@dataclass
class PendingTimer:
    name: str
    delay: float
    due_at: float
    handle: asyncio.TimerHandle = field(repr=False)

    def remaining(self, now: float | None = None) -> float:
        now = time.monotonic() if now is None else now
        return max(0.0, self.due_at - now)


class TimerRegistry:
    """Owns named ``loop.call_later`` timers and the tasks their callbacks run in.

    A fired timer is removed from the registry before its callback runs, so the
    callback may reschedule or cancel its own name.
    """

    lp = "TimerRegistry:"

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._timers: dict[str, PendingTimer] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(self, name: str, delay_s: float, callback: TimerCallback) -> PendingTimer | None:
        """Schedule ``callback`` under ``name``, cancelling any pending timer with that name."""
        lp = f"{self.lp}schedule:"
        if self._closed:
            logger.debug("%s registry closed, not scheduling %s", lp, name)
            return None
        self.cancel(name)
        delay_s = max(0.0, delay_s)
        handle = self.loop.call_later(delay_s, self._fire, name, callback)
        timer = PendingTimer(name=name, delay=delay_s, due_at=time.monotonic() + delay_s, handle=handle)
        self._timers[name] = timer
        logger.debug("%s %s in %.3fs", lp, name, delay_s)
        return timer

    def cancel(self, name: str) -> bool:
        timer = self._timers.pop(name, None)
        if timer is None:
            return False
        timer.handle.cancel()
        logger.debug("%scancel: %s", self.lp, name)
        return True

    def cancel_all(self) -> list[str]:
        names = list(self._timers)
        for name in names:
            self.cancel(name)
        return names

    def is_pending(self, name: str) -> bool:
        return name in self._timers

    def get(self, name: str) -> PendingTimer | None:
        return self._timers.get(name)

    def pending_names(self) -> list[str]:
        return sorted(self._timers)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        """Run ``coro`` as a tracked background task; failures are logged."""
        task = self.loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _fire(self, name: str, callback: TimerCallback) -> None:
        lp = f"{self.lp}fire:"
        self._timers.pop(name, None)
        logger.debug("%s %s", lp, name)
        try:
            result = callback()
        except Exception:
            logger.exception("%s timer %s callback failed", lp, name)
            return
        if inspect.isawaitable(result):
            self.spawn(_await(result), name=f"timer:{name}")

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "%s background task %s failed: %r",
                self.lp,
                task.get_name(),
                exc,
                extra={"error_type": type(exc).__name__},
            )

    async def close(self) -> None:
        """Cancel every timer and every background task, then wait for the tasks to finish."""
        self._closed = True
        self.cancel_all()
        tasks = [t for t in self._tasks if not t.done() and t is not asyncio.current_task()]
        for task in tasks:
            _ = task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task


async def _await(awaitable: Awaitable[Any]) -> Any:
    return await awaitable
