"""
Unit tests for shutdown.py module.

Tests the one-shot bounded shutdown sequence and the signal/exception hooks.
"""

import asyncio
import signal
from unittest.mock import AsyncMock, MagicMock

import pytest

from wa_gateway.shutdown import GracefulShutdown, bind_signals


def _components(preserved=False):
    manager = MagicMock()
    manager.server.stop = AsyncMock()
    manager.controller.shutdown = AsyncMock(return_value=preserved)
    manager.webhook.close = AsyncMock()
    return manager


class TestGracefulShutdown:
    """Tests for GracefulShutdown.run"""

    @pytest.mark.asyncio
    async def test_sequence_order(self):
        """Test that the server stops first and the webhook client closes last"""
        parts = _components(preserved=True)
        shutdown = GracefulShutdown(parts.controller, parts.server, parts.webhook, timeout=1)

        exit_code = await shutdown.run("signal SIGTERM")

        assert exit_code == 0
        assert [c[0] for c in parts.mock_calls] == ["server.stop", "controller.shutdown", "webhook.close"]
        assert shutdown.session_preserved is True
        assert shutdown.done.is_set()
        assert shutdown.reason == "signal SIGTERM"

    @pytest.mark.asyncio
    async def test_runs_once(self):
        """Test that concurrent triggers share the first run and its exit code"""
        parts = _components()
        shutdown = GracefulShutdown(parts.controller, parts.server, parts.webhook, timeout=1)

        codes = await asyncio.gather(shutdown.run("signal SIGINT", 0), shutdown.run("unhandled exception", 1))

        assert codes == [0, 0]
        parts.controller.shutdown.assert_awaited_once()
        assert await shutdown.run("again", 1) == 0

    @pytest.mark.asyncio
    async def test_timeout_forces_exit(self):
        """Test that a hung cleanup force-exits with code 1"""
        parts = _components()

        async def _hang():
            await asyncio.sleep(10)

        parts.controller.shutdown = AsyncMock(side_effect=_hang)
        force_exit = MagicMock()
        shutdown = GracefulShutdown(parts.controller, parts.server, parts.webhook, timeout=0.05, force_exit=force_exit)

        assert await shutdown.run("signal SIGTERM") == 1

        force_exit.assert_called_once_with(1)
        parts.webhook.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cleanup_error_exits_one(self):
        """Test that a failing step is logged and the exit code becomes 1"""
        parts = _components()
        parts.server.stop.side_effect = RuntimeError("boom")
        force_exit = MagicMock()
        shutdown = GracefulShutdown(parts.controller, parts.server, parts.webhook, timeout=1, force_exit=force_exit)

        assert await shutdown.run("signal SIGTERM") == 1
        assert shutdown.done.is_set()
        force_exit.assert_not_called()

    @pytest.mark.asyncio
    async def test_without_server_or_webhook(self):
        """Test that optional components may be absent"""
        parts = _components()
        shutdown = GracefulShutdown(parts.controller, timeout=1)
        assert await shutdown.run("test") == 0

    @pytest.mark.asyncio
    async def test_request_creates_single_task(self):
        """Test that request schedules the sequence only once"""
        parts = _components()
        shutdown = GracefulShutdown(parts.controller, timeout=1)

        task = shutdown.request("signal SIGINT")
        assert shutdown.request("signal SIGTERM") is None
        assert await task == 0
        assert shutdown.reason == "signal SIGINT"

    @pytest.mark.asyncio
    async def test_real_controller_preserves_open_session(self, controller, session_factory, settle):
        """Test that an open registered session survives a graceful shutdown"""
        session_factory.registered = True
        controller.settings.session_dir.mkdir(parents=True)
        await controller.start()
        session_factory.last.emit("connection.update", {"connection": "open"})
        await settle(controller)
        shutdown = GracefulShutdown(controller, timeout=1)

        assert await shutdown.run("signal SIGTERM") == 0

        assert shutdown.session_preserved is True
        assert controller.settings.session_dir.exists()


class TestBindSignals:
    """Tests for bind_signals"""

    def test_handlers_installed(self):
        """Test that SIGINT and SIGTERM request a clean exit"""
        loop = MagicMock()
        shutdown = MagicMock()

        bind_signals(loop, shutdown)

        installed = {c.args[0]: c.args[1] for c in loop.add_signal_handler.call_args_list}
        assert set(installed) == {signal.SIGINT, signal.SIGTERM}
        installed[signal.SIGTERM]()
        shutdown.request.assert_called_once_with("signal SIGTERM", 0)

    def test_loop_exception_requests_exit_one(self):
        """Test that an unhandled loop exception requests exit code 1"""
        loop = MagicMock()
        shutdown = MagicMock()
        bind_signals(loop, shutdown)
        handler = loop.set_exception_handler.call_args.args[0]

        handler(loop, {"message": "Task exception was never retrieved", "exception": RuntimeError("x")})

        shutdown.request.assert_called_once_with("unhandled exception", 1)
