"""Structured logging for the session gateway.

Every module gets its logger from ``get_logger(__name__)``. Context is passed as
``extra={...}`` and rendered either as a JSON ``context`` object or as trailing
``k=v`` pairs, always tagged with the active correlation id. Two helpers gate
the noisiest output: connection-phase lines and per-message lines.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping, MutableMapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from typing_extensions import override

__all__ = [
    "NOISY_CONNECTION_PHASES",
    "GatewayLogger",
    "HumanReadableFormatter",
    "JSONFormatter",
    "get_logger",
    "log_connection_phase",
    "log_message_line",
]

NOISY_CONNECTION_PHASES: frozenset[str] = frozenset({"connecting", "syncing", "resuming", "qr"})


def _context_of(record: logging.LogRecord) -> dict[str, object]:
    extra_data = getattr(record, "extra_data", None)
    if isinstance(extra_data, Mapping):
        return dict(extra_data)
    return {}


def _current_correlation_id() -> str | None:
    from wa_gateway.correlation import get_correlation_id

    return get_correlation_id()


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
            "correlation_id": _current_correlation_id(),
        }
        if context := _context_of(record):
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``timestamp level [module:line] [correlation] > message | k=v``"""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] %(correlation_tag)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        correlation_id = _current_correlation_id()
        record.correlation_tag = f"[{correlation_id[:12]}]" if correlation_id else "[------------]"
        line = super().format(record)
        context = _context_of(record)
        if not context:
            return line
        return " | ".join([line, *(f"{key}={value}" for key, value in context.items())])


def _stream_or_file(target: str) -> logging.Handler:
    if target == "stdout":
        return logging.StreamHandler(sys.stdout)
    if target == "stderr":
        return logging.StreamHandler(sys.stderr)
    path = Path(target)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path, mode="a")
    except OSError as e:
        print(f"Warning: cannot open log file {target}: {e}; logging to stdout", file=sys.stderr)
        return logging.StreamHandler(sys.stdout)


def _attach_handlers(
    logger: logging.Logger,
    log_format: str,
    json_file: str | Path | None,
    human_output: str | None,
) -> None:
    """Attach the JSON file handler and/or the human handler selected by ``log_format``."""
    handlers: list[logging.Handler] = []
    if log_format in ("json", "both") and json_file:
        json_handler = _stream_or_file(str(json_file))
        json_handler.setFormatter(JSONFormatter())
        handlers.append(json_handler)
    if log_format in ("human", "both"):
        human_handler = _stream_or_file(human_output or "stdout")
        human_handler.setFormatter(HumanReadableFormatter())
        handlers.append(human_handler)
    for handler in handlers:
        handler.setLevel(logger.level)
        logger.addHandler(handler)


class GatewayLogger(logging.LoggerAdapter):
    """Adapter that moves ``extra={...}`` into ``record.extra_data`` for the formatters."""

    @override
    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = kwargs.pop("extra", None)
        if extra:
            kwargs["extra"] = {"extra_data": dict(extra)}
        return msg, kwargs

    def set_level(self, level: int) -> None:
        """Set the level of the logger and of every handler attached to it."""
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)

    def add_handler(self, handler: logging.Handler) -> None:
        self.logger.addHandler(handler)

    def remove_handler(self, handler: logging.Handler) -> None:
        self.logger.removeHandler(handler)

    @property
    def handlers(self) -> list[logging.Handler]:
        return self.logger.handlers


def get_logger(
    name: str,
    log_format: str | None = None,
    json_file: str | Path | None = None,
    human_output: str | None = None,
) -> GatewayLogger:
    """Return the gateway logger for ``name``.

    Handlers are attached the first time a name is requested; the arguments
    override ``WA_LOG_FORMAT``, ``WA_LOG_JSON_FILE`` and ``WA_LOG_HUMAN_OUTPUT``.
    """
    from wa_gateway.const import WA_DEBUG, WA_LOG_FORMAT, WA_LOG_HUMAN_OUTPUT, WA_LOG_JSON_FILE

    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.setLevel(logging.DEBUG if WA_DEBUG else logging.INFO)
        _attach_handlers(
            logger,
            log_format or WA_LOG_FORMAT,
            json_file or WA_LOG_JSON_FILE,
            human_output or WA_LOG_HUMAN_OUTPUT,
        )
    return GatewayLogger(logger, {})


def log_connection_phase(
    logger: GatewayLogger,
    phase: str,
    verbose: bool | None = None,
    **context: object,
) -> bool:
    """Log a connection phase, dropping noisy phases unless verbose logging is on.

    Returns True when the line was written.
    """
    if verbose is None:
        from wa_gateway.const import WA_LOG_CONN_VERBOSE

        verbose = WA_LOG_CONN_VERBOSE

    if phase in NOISY_CONNECTION_PHASES and not verbose:
        return False
    logger.info("connection: %s", phase, extra=context or None)
    return True


def log_message_line(
    logger: GatewayLogger,
    direction: str,
    jid: str,
    text: str | None,
    enabled: bool | None = None,
) -> bool:
    """Write a one-line, sanitised message log ("IN"/"OUT") when message logging is on."""
    if enabled is None:
        from wa_gateway.const import WA_LOG_MESSAGES

        enabled = WA_LOG_MESSAGES
    if not enabled:
        return False

    from wa_gateway.utils import jid_to_number, sanitize_text

    logger.info("msg %s %s: %s", direction, jid_to_number(jid) or jid, sanitize_text(text) or "<no text>")
    return True
