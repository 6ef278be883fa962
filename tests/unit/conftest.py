"""
Shared fixtures for unit tests.

This module provides a scriptable fake of the protocol library's session handle
plus gateway settings pointing at a temporary directory.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from wa_gateway.backoff import ReconnectBackoff
from wa_gateway.notifier import EventNotifier, GatewayEvent
from wa_gateway.session import SessionController
from wa_gateway.structs import GatewaySettings


class FakeCreds:
    def __init__(self, registered: bool = False, me: Any = None, noise_key: Any = None) -> None:
        self.registered = registered
        self.me = me
        self.noise_key = noise_key


class FakeAuthState:
    def __init__(self, creds: FakeCreds) -> None:
        self.creds = creds


class FakeSessionHandle:
    """Session handle whose events are pushed by the test through ``emit``."""

    def __init__(self, registered: bool = False, me: Any = None) -> None:
        self.auth_state = FakeAuthState(FakeCreds(registered=registered, me=me))
        self.listeners: list[Any] = []
        self.request_pairing_code = AsyncMock(return_value="ABCD-1234")
        self.send_message = AsyncMock(return_value="MSG1")
        self.save_creds = AsyncMock()
        self.close = AsyncMock()

    @property
    def user_id(self) -> str | None:
        me = self.auth_state.creds.me
        return me.get("id") if me else None

    def subscribe(self, listener: Any) -> Any:
        self.listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self.listeners:
                self.listeners.remove(listener)

        return _unsubscribe

    def emit(self, event_name: str, payload: Any) -> None:
        for listener in list(self.listeners):
            listener(event_name, payload)

    def register(self, number: str = "5511999990000") -> None:
        self.auth_state.creds.registered = True
        self.auth_state.creds.me = {"id": f"{number}:7@s.whatsapp.net"}
        self.auth_state.creds.noise_key = {"private": "x"}


class FakeSessionFactory:
    """Records every handle it creates.

    ``fail_next`` makes the next call raise; while ``gate`` is set, calls wait on it
    before building the handle.
    """

    def __init__(self) -> None:
        self.handles: list[FakeSessionHandle] = []
        self.calls: list[Path] = []
        self.fail_next: int = 0
        self.registered: bool = False
        self.gate: asyncio.Event | None = None

    async def __call__(self, session_dir: Path) -> FakeSessionHandle:
        self.calls.append(session_dir)
        if self.gate is not None:
            _ = await self.gate.wait()
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("transport unavailable")
        handle = FakeSessionHandle()
        if self.registered:
            handle.register()
        self.handles.append(handle)
        return handle

    @property
    def last(self) -> FakeSessionHandle:
        return self.handles[-1]


class EventRecorder:
    def __init__(self, notifier: EventNotifier) -> None:
        self.events: list[GatewayEvent] = []
        self.unsubscribe = notifier.subscribe(self.events.append)

    def names(self) -> list[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> list[Any]:
        return [e.data for e in self.events if e.name == name]


@pytest.fixture
def settings(tmp_path):
    """Settings with short delays so timer-driven paths finish quickly."""
    return GatewaySettings(
        session_dir=tmp_path / "auth",
        runtime_config_path=tmp_path / "dynamic-config.json",
        pair_phone=None,
        auto_pair_initial_delay=0.01,
        auto_pair_on_open_delay=0.01,
        auto_pair_after_reset_delay=0.01,
        manual_reset_restart_delay=0.01,
        early_close_restart_delay=0.01,
        auto_pair_retry_base=0.01,
    )


@pytest.fixture
def fast_backoff():
    return ReconnectBackoff(base_delay_ms=10, max_delay_ms=40, jitter_ms=0, restart_base_ms=5, restart_step_ms=5)


@pytest.fixture
def session_factory():
    return FakeSessionFactory()


@pytest.fixture
def notifier():
    return EventNotifier()


@pytest.fixture
def recorder(notifier):
    return EventRecorder(notifier)


@pytest_asyncio.fixture
async def controller(settings, session_factory, notifier, fast_backoff):
    ctrl = SessionController(settings, session_factory, notifier=notifier, backoff=fast_backoff)
    yield ctrl
    await ctrl.shutdown()


@pytest.fixture
def handle():
    return FakeSessionHandle()


@pytest.fixture
def settle():
    """Let queued events and due timers run."""

    async def _settle(controller: SessionController, delay: float = 0.0) -> None:
        if delay:
            await asyncio.sleep(delay)
        await controller.wait_idle()
        await asyncio.sleep(0)

    return _settle
