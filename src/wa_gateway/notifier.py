"""Fan-out of gateway events to real-time observers."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from wa_gateway.logging_abstraction import get_logger

__all__ = [
    "CONNECTION_STATE",
    "CONNECTION_UPDATE",
    "MESSAGE",
    "MESSAGE_IN",
    "MESSAGE_OUT",
    "MESSAGE_STATUS",
    "PAIRING_CODE",
    "PAIRING_EXPIRED",
    "QR_CODE",
    "QR_GENERATION_ERROR",
    "READY",
    "EventNotifier",
    "GatewayEvent",
]

logger = get_logger(__name__)

CONNECTION_STATE = "connection_state"
CONNECTION_UPDATE = "connection_update"
READY = "ready"
MESSAGE = "message"
QR_CODE = "qr_code"
QR_GENERATION_ERROR = "qr_generation_error"
PAIRING_CODE = "pairing_code"
PAIRING_EXPIRED = "pairing_expired"
MESSAGE_IN = "message_in"
MESSAGE_OUT = "message_out"
MESSAGE_STATUS = "message_status"


@dataclass(frozen=True, slots=True)
class GatewayEvent:
    name: str
    data: Any = None
    ts: float = field(default_factory=time.time)

    def as_frame(self) -> dict[str, Any]:
        return {"event": self.name, "data": self.data}


Observer = Callable[[GatewayEvent], None]


class EventNotifier:
    """Synchronous fan-out of gateway events.

    Observers are plain callables; a failing observer is logged and skipped.
    ``open_queue`` hands out a bounded asyncio queue for consumers such as a
    WebSocket connection; a full queue drops the oldest frame.
    """

    lp = "EventNotifier:"

    def __init__(self, queue_size: int = 256) -> None:
        self._observers: list[Observer] = []
        self._queues: set[asyncio.Queue[GatewayEvent]] = set()
        self._queue_size = queue_size

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def open_queue(self) -> asyncio.Queue[GatewayEvent]:
        queue: asyncio.Queue[GatewayEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._queues.add(queue)
        return queue

    def close_queue(self, queue: asyncio.Queue[GatewayEvent]) -> None:
        self._queues.discard(queue)

    @property
    def observer_count(self) -> int:
        return len(self._observers) + len(self._queues)

    def emit(self, name: str, data: Any = None) -> GatewayEvent:
        event = GatewayEvent(name=name, data=data)
        logger.debug("%semit: %s", self.lp, name)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                logger.exception("%semit: observer failed for %s", self.lp, name)
        for queue in list(self._queues):
            if queue.full():
                _ = queue.get_nowait()
            queue.put_nowait(event)
        return event
