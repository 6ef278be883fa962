"""Graceful, bounded process shutdown.

A signal or an unhandled loop exception asks the coordinator to stop the HTTP
server, shut the session controller down and close the webhook client. The
sequence runs once; if it does not finish within the timeout the process is
force-exited with code 1.
"""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Callable
from functools import partial
from typing import Any, Protocol

from wa_gateway.const import WA_SHUTDOWN_TIMEOUT
from wa_gateway.logging_abstraction import get_logger
from wa_gateway.session import SessionController
from wa_gateway.webhook import WebhookForwarder

__all__ = ["GracefulShutdown", "bind_signals"]

logger = get_logger(__name__)


class _Stoppable(Protocol):
    async def stop(self) -> None: ...


class GracefulShutdown:
    lp: str = "GracefulShutdown:"

    def __init__(
        self,
        controller: SessionController,
        server: _Stoppable | None = None,
        webhook: WebhookForwarder | None = None,
        timeout: float = WA_SHUTDOWN_TIMEOUT,
        force_exit: Callable[[int], Any] = os._exit,
    ) -> None:
        self.controller = controller
        self.server = server
        self.webhook = webhook
        self.timeout = timeout
        self._force_exit = force_exit
        self.done = asyncio.Event()
        self.exit_code: int = 0
        self.reason: str | None = None
        self.session_preserved: bool | None = None
        self._task: asyncio.Task[int] | None = None

    @property
    def in_progress(self) -> bool:
        return self.reason is not None

    async def run(self, reason: str, exit_code: int = 0) -> int:
        """Run the shutdown sequence once; later calls wait for the first one and share its exit code."""
        lp = f"{self.lp}run:"
        if self.reason is not None:
            logger.info("%s already in progress (%s), ignoring %s", lp, self.reason, reason)
            _ = await self.done.wait()
            return self.exit_code

        self.reason = reason
        self.exit_code = exit_code
        logger.info("%s starting graceful shutdown", lp, extra={"reason": reason, "exit_code": exit_code})
        try:
            await asyncio.wait_for(self._cleanup(), timeout=self.timeout)
        except TimeoutError:
            logger.error("%s did not finish within %.1fs, forcing exit", lp, self.timeout)
            self.exit_code = 1
            self._force_exit(1)
        except Exception:
            logger.exception("%s error during shutdown", lp)
            self.exit_code = 1
        else:
            logger.info(
                "%s completed",
                lp,
                extra={"exit_code": self.exit_code, "session_preserved": self.session_preserved},
            )
        finally:
            self.done.set()
        return self.exit_code

    async def _cleanup(self) -> None:
        if self.server is not None:
            await self.server.stop()
        self.session_preserved = await self.controller.shutdown()
        if self.webhook is not None:
            await self.webhook.close()

    def request(self, reason: str, exit_code: int = 0) -> asyncio.Task[int] | None:
        """Schedule ``run`` from synchronous code such as a signal handler."""
        if self._task is not None:
            logger.debug("%srequest: shutdown already requested, ignoring %s", self.lp, reason)
            return None
        self._task = asyncio.get_running_loop().create_task(self.run(reason, exit_code), name="gateway:shutdown")
        return self._task


def _signal_handler(shutdown: GracefulShutdown, signum: int) -> None:
    logger.info("Intercepted signal: %s (%s)", signal.Signals(signum).name, signum)
    _ = shutdown.request(f"signal {signal.Signals(signum).name}", 0)


def _exception_handler(shutdown: GracefulShutdown, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error(
        "Unhandled exception in event loop: %s",
        context.get("message", "unknown"),
        extra={"error_type": type(exc).__name__ if exc else None, "error": str(exc) if exc else None},
    )
    _ = shutdown.request("unhandled exception", 1)


def bind_signals(loop: asyncio.AbstractEventLoop, shutdown: GracefulShutdown) -> None:
    """SIGINT/SIGTERM shut down with exit code 0; an unhandled loop exception with exit code 1."""
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, partial(_signal_handler, shutdown, sig))
    loop.set_exception_handler(partial(_exception_handler, shutdown))
    logger.debug("Signal handlers configured for SIGINT & SIGTERM")
