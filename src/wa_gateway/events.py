"""Typed decoding of raw session-handle events.

The protocol library emits ``(event_name, payload)`` pairs with loosely shaped
payloads. They are decoded once, here, into one model per event kind; the
controller only ever sees the typed models.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__ = [
    "ConnectionUpdate",
    "CredsUpdate",
    "DecodedEvent",
    "MessageKey",
    "MessageStatusUpdate",
    "MessagesUpdate",
    "MessagesUpsert",
    "WireMessage",
    "decode_event",
]


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MessageKey(_WireModel):
    remote_jid: str | None = Field(default=None, alias="remoteJid")
    from_me: bool = Field(default=False, alias="fromMe")
    id: str | None = None


class WireMessage(_WireModel):
    key: MessageKey
    message: dict[str, Any] | None = None
    message_timestamp: int | None = Field(default=None, alias="messageTimestamp")
    push_name: str | None = Field(default=None, alias="pushName")

    @field_validator("message_timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> int | None:
        # Some libraries hand over 64-bit timestamps as strings or objects
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None


class ConnectionUpdate(_WireModel):
    kind: Literal["connection.update"] = "connection.update"
    connection: str | None = None
    status_code: int | None = None
    error_message: str = ""
    qr: str | None = None
    is_new_login: bool | None = Field(default=None, alias="isNewLogin")

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ConnectionUpdate:
        status_code, message = _disconnect_details(payload.get("lastDisconnect"))
        return cls.model_validate(
            {
                "connection": payload.get("connection"),
                "status_code": status_code,
                "error_message": message,
                "qr": payload.get("qr"),
                "isNewLogin": payload.get("isNewLogin"),
            }
        )


class CredsUpdate(_WireModel):
    kind: Literal["creds.update"] = "creds.update"
    update: dict[str, Any] = Field(default_factory=dict)


class MessagesUpsert(_WireModel):
    kind: Literal["messages.upsert"] = "messages.upsert"
    upsert_type: str = Field(default="notify", alias="type")
    messages: list[WireMessage] = Field(default_factory=list)


class MessageStatusUpdate(_WireModel):
    key: MessageKey
    status: int | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> MessageStatusUpdate:
        update = payload.get("update") or {}
        status = update.get("status") if isinstance(update, Mapping) else None
        return cls.model_validate({"key": payload.get("key") or {}, "status": status})


class MessagesUpdate(_WireModel):
    kind: Literal["messages.update"] = "messages.update"
    updates: list[MessageStatusUpdate] = Field(default_factory=list)


DecodedEvent = ConnectionUpdate | CredsUpdate | MessagesUpsert | MessagesUpdate


def _disconnect_details(last_disconnect: Any) -> tuple[int | None, str]:
    """Extract ``(status_code, message)`` from a ``lastDisconnect`` value.

    Accepts ``{"error": {"output": {"statusCode": n}, "message": str}}``, a flat
    ``{"error": {"statusCode": n}}`` and exception objects carrying the same
    attributes.
    """
    if not last_disconnect:
        return None, ""
    error = last_disconnect.get("error") if isinstance(last_disconnect, Mapping) else last_disconnect
    if error is None:
        return None, ""

    if isinstance(error, Mapping):
        output = error.get("output")
        code = output.get("statusCode") if isinstance(output, Mapping) else error.get("statusCode")
        message = error.get("message") or ""
    else:
        output = getattr(error, "output", None)
        code = getattr(output, "status_code", None) if output is not None else getattr(error, "status_code", None)
        message = str(getattr(error, "message", None) or error)

    try:
        status_code = int(code) if code is not None else None
    except (TypeError, ValueError):
        status_code = None
    return status_code, str(message)


def decode_event(name: str, payload: Any) -> DecodedEvent | None:
    """Decode one raw event; returns None for event kinds the gateway does not handle.

    Raises:
        pydantic.ValidationError: when a handled event has a malformed payload.

    """
    if name == "connection.update":
        return ConnectionUpdate.from_payload(payload or {})
    if name == "creds.update":
        return CredsUpdate(update=dict(payload or {}))
    if name == "messages.upsert":
        return MessagesUpsert.model_validate(payload or {})
    if name == "messages.update":
        return MessagesUpdate(updates=[MessageStatusUpdate.from_payload(item) for item in payload or []])
    return None
