"""
Unit tests for timers.py module.

Tests named timer scheduling, replacement, cancellation and task tracking.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from wa_gateway.timers import TimerRegistry


class TestSchedule:
    """Tests for TimerRegistry.schedule"""

    @pytest.mark.asyncio
    async def test_callback_runs_after_delay(self):
        """Test that a timer fires its callback and is removed"""
        timers = TimerRegistry()
        callback = MagicMock(return_value=None)

        timer = timers.schedule("t", 0.01, callback)

        assert timer is not None
        assert timers.is_pending("t")
        await asyncio.sleep(0.05)
        callback.assert_called_once_with()
        assert not timers.is_pending("t")

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_pending_timer(self):
        """Test that only one timer per name can be pending"""
        timers = TimerRegistry()
        first = MagicMock(return_value=None)
        second = MagicMock(return_value=None)

        _ = timers.schedule("t", 0.01, first)
        _ = timers.schedule("t", 0.01, second)

        assert timers.pending_names() == ["t"]
        await asyncio.sleep(0.05)
        first.assert_not_called()
        second.assert_called_once()

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self):
        """Test that an awaitable returned by the callback runs as a task"""
        timers = TimerRegistry()
        coro_fn = AsyncMock()

        _ = timers.schedule("t", 0, coro_fn)
        await asyncio.sleep(0.02)

        coro_fn.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_callback_is_contained(self):
        """Test that a raising callback does not break the registry"""
        timers = TimerRegistry()
        _ = timers.schedule("bad", 0, MagicMock(side_effect=RuntimeError("boom")))
        _ = timers.schedule("bad_async", 0, AsyncMock(side_effect=RuntimeError("boom")))
        good = MagicMock(return_value=None)
        _ = timers.schedule("good", 0.01, good)

        await asyncio.sleep(0.05)

        good.assert_called_once()

    @pytest.mark.asyncio
    async def test_callback_may_reschedule_itself(self):
        """Test that a fired timer's name is free inside its callback"""
        timers = TimerRegistry()
        calls = []

        def _cb():
            calls.append(1)
            if len(calls) < 3:
                _ = timers.schedule("loop", 0, _cb)

        _ = timers.schedule("loop", 0, _cb)
        await asyncio.sleep(0.05)

        assert len(calls) == 3


class TestCancel:
    """Tests for cancellation and close"""

    @pytest.mark.asyncio
    async def test_cancel(self):
        """Test that a cancelled timer never fires"""
        timers = TimerRegistry()
        callback = MagicMock()
        _ = timers.schedule("t", 0.01, callback)

        assert timers.cancel("t") is True
        assert timers.cancel("t") is False
        await asyncio.sleep(0.03)
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        """Test that cancel_all returns the cancelled names"""
        timers = TimerRegistry()
        for name in ("b", "a"):
            _ = timers.schedule(name, 10, MagicMock())

        assert sorted(timers.cancel_all()) == ["a", "b"]
        assert timers.pending_names() == []

    @pytest.mark.asyncio
    async def test_close_cancels_tasks_and_blocks_new_timers(self):
        """Test that close stops running tasks and refuses new timers"""
        timers = TimerRegistry()
        started = asyncio.Event()

        async def _long():
            started.set()
            await asyncio.sleep(10)

        task = timers.spawn(_long(), name="long")
        await started.wait()

        await timers.close()

        assert task.cancelled()
        assert timers.schedule("t", 0, MagicMock()) is None

    @pytest.mark.asyncio
    async def test_remaining(self):
        """Test that a pending timer reports its remaining delay"""
        timers = TimerRegistry()
        timer = timers.schedule("t", 5, MagicMock())

        assert timer is not None
        assert 4.0 < timer.remaining() <= 5.0
        _ = timers.cancel("t")
