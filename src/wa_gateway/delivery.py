"""Inbound de-duplication, outbound message metadata and monotonic delivery status."""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from wa_gateway.const import DEDUP_EVICT_BATCH, DEDUP_MAX_IDS, OUTBOUND_META_TTL_SECONDS
from wa_gateway.logging_abstraction import get_logger

__all__ = [
    "InboundDedup",
    "MessageDeliveryTracker",
    "MessageStatus",
    "OutboundMessageMeta",
    "StatusTransition",
    "status_name",
]

logger = get_logger(__name__)

Clock = Callable[[], float]


class MessageStatus(IntEnum):
    SENT = 1
    DELIVERED = 2
    READ = 3
    PLAYED = 4


_STATUS_NAMES: dict[int, str] = {
    MessageStatus.SENT: "Enviado",
    MessageStatus.DELIVERED: "Recebido",
    MessageStatus.READ: "Visualizado",
    MessageStatus.PLAYED: "Visualizado",
}


def status_name(status: int) -> str:
    """Name used by the external endpoint for a numeric delivery status."""
    return _STATUS_NAMES.get(status, f"Status_{status}")


@dataclass(slots=True)
class OutboundMessageMeta:
    recipient: str
    text: str | None
    created_at: float
    status: int = MessageStatus.SENT


@dataclass(frozen=True, slots=True)
class StatusTransition:
    message_id: str
    recipient: str
    previous: int
    status: int

    @property
    def name(self) -> str:
        return status_name(self.status)

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.message_id, "status": self.status, "statusName": self.name, "to": self.recipient}


class InboundDedup:
    """Bounded FIFO of seen message ids.

    When the set grows past ``max_ids`` the ``evict_batch`` oldest ids are dropped,
    in insertion order.
    """

    def __init__(self, max_ids: int = DEDUP_MAX_IDS, evict_batch: int = DEDUP_EVICT_BATCH) -> None:
        self.max_ids = max_ids
        self.evict_batch = evict_batch
        self._seen: OrderedDict[str, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._seen

    def check_and_add(self, message_id: str) -> bool:
        """Return True if ``message_id`` was already seen; otherwise remember it and return False."""
        if message_id in self._seen:
            return True
        self._seen[message_id] = None
        if len(self._seen) > self.max_ids:
            for _ in range(min(self.evict_batch, len(self._seen))):
                _ = self._seen.popitem(last=False)
        return False


class MessageDeliveryTracker:
    """Tracks messages sent by this process and folds status updates into them."""

    lp = "MessageDeliveryTracker:"

    def __init__(
        self,
        max_ids: int = DEDUP_MAX_IDS,
        evict_batch: int = DEDUP_EVICT_BATCH,
        outbound_ttl: float = OUTBOUND_META_TTL_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self.dedup = InboundDedup(max_ids, evict_batch)
        self.outbound: dict[str, OutboundMessageMeta] = {}
        self.outbound_ttl = outbound_ttl
        self._clock = clock

    def is_duplicate_inbound(self, message_id: str | None) -> bool:
        """First call for an id returns False; every later call returns True.

        Events without an id cannot be de-duplicated and are never reported as duplicates.
        """
        if not message_id:
            return False
        return self.dedup.check_and_add(message_id)

    def record_outbound(self, message_id: str, recipient: str, text: str | None = None) -> OutboundMessageMeta:
        now = self._clock()
        self._prune(now)
        meta = OutboundMessageMeta(recipient=recipient, text=text, created_at=now)
        self.outbound[message_id] = meta
        return meta

    def get(self, message_id: str) -> OutboundMessageMeta | None:
        return self.outbound.get(message_id)

    def apply_status_update(self, message_id: str | None, status: int | None) -> StatusTransition | None:
        """Advance a tracked message to ``status`` if that is strictly higher than the current one."""
        if not message_id or status is None:
            return None
        meta = self.outbound.get(message_id)
        if meta is None or status <= meta.status:
            return None
        transition = StatusTransition(message_id, meta.recipient, meta.status, status)
        meta.status = status
        logger.debug(
            "%sapply_status_update: %s %d -> %d",
            self.lp,
            message_id,
            transition.previous,
            status,
        )
        return transition

    def _prune(self, now: float) -> int:
        expired = [mid for mid, meta in self.outbound.items() if now - meta.created_at > self.outbound_ttl]
        for mid in expired:
            del self.outbound[mid]
        if expired:
            logger.debug("%sprune: evicted %d outbound entries", self.lp, len(expired))
        return len(expired)
