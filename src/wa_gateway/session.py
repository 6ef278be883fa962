"""Session lifecycle controller.

Owns the single session handle and runs the connect/reconnect state machine:

- ``start`` is single-flight and always retires the previous handle (listeners
  detached, transport closed) before the factory creates a new one.
- Handle events are decoded at the listener, queued, and processed one at a time
  by a single consumer task. Events from a retired handle are dropped.
- Every delayed action lives in the controller's ``TimerRegistry`` under a fixed
  name, so there is never more than one pending reconnect, refresh, auto-pair or
  restart.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import shutil
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from wa_gateway.backoff import ReconnectBackoff
from wa_gateway.const import (
    CREDS_FILE_NAME,
    RECONNECT_TIMER,
    RESTART_TIMER,
)
from wa_gateway.correlation import correlation_context, event_correlation_id
from wa_gateway.delivery import MessageDeliveryTracker, MessageStatus, StatusTransition, status_name
from wa_gateway.disconnect import DisconnectClass, DisconnectDiagnosis, classify, is_pairing_expired
from wa_gateway.events import (
    ConnectionUpdate,
    CredsUpdate,
    DecodedEvent,
    MessagesUpdate,
    MessagesUpsert,
    WireMessage,
    decode_event,
)
from wa_gateway.exceptions import SessionNotReadyError
from wa_gateway.logging_abstraction import get_logger, log_connection_phase, log_message_line
from wa_gateway.notifier import (
    CONNECTION_STATE,
    CONNECTION_UPDATE,
    MESSAGE,
    MESSAGE_IN,
    MESSAGE_OUT,
    MESSAGE_STATUS,
    PAIRING_EXPIRED,
    QR_CODE,
    QR_GENERATION_ERROR,
    READY,
    EventNotifier,
)
from wa_gateway.pairing import PairingCoordinator, PairingPhase, PairingResult
from wa_gateway.runtime_config import RuntimeConfigStore
from wa_gateway.structs import (
    ConnectionState,
    EventListener,
    GatewaySettings,
    LifecyclePhase,
    SessionFactory,
    SessionHandle,
    SessionState,
)
from wa_gateway.timers import TimerRegistry
from wa_gateway.utils import (
    extract_text_content,
    format_number_to_jid,
    is_direct_jid,
    jid_to_number,
    normalize_phone,
    now_ms,
    render_qr_data_url,
    should_ignore_jid,
)
from wa_gateway.webhook import WebhookForwarder

__all__ = ["SessionController"]

logger = get_logger(__name__)


def _me_id(me: Any) -> str | None:
    if not me:
        return None
    if isinstance(me, Mapping):
        value = me.get("id")
    else:
        value = getattr(me, "id", None)
    return str(value) if value else None


class SessionController:
    """Keeps one account session connected, paired and tracked."""

    lp: str = "SessionController:"

    def __init__(
        self,
        settings: GatewaySettings,
        session_factory: SessionFactory,
        notifier: EventNotifier | None = None,
        runtime_config: RuntimeConfigStore | None = None,
        webhook: WebhookForwarder | None = None,
        backoff: ReconnectBackoff | None = None,
        timers: TimerRegistry | None = None,
    ) -> None:
        self.settings = settings
        self._factory = session_factory
        self.notifier = notifier or EventNotifier()
        self.runtime_config = runtime_config
        self.webhook = webhook
        self.backoff = backoff or ReconnectBackoff()
        self.timers = timers or TimerRegistry()
        self.tracker = MessageDeliveryTracker(
            settings.dedup_max_ids,
            settings.dedup_evict_batch,
            settings.outbound_meta_ttl,
        )
        self.pairing = PairingCoordinator(
            settings,
            self.timers,
            self.notifier,
            self.pair_phone,
            self._auto_pair_due,
        )

        self.state = SessionState()
        self.phase: LifecyclePhase = LifecyclePhase.IDLE
        self._handle: SessionHandle | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._generation: int = 0
        self._queue: asyncio.Queue[tuple[int, DecodedEvent]] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._emit_qr: bool = False
        self._closed: bool = False

    # ------------------------------------------------------------------ helpers

    @property
    def handle(self) -> SessionHandle | None:
        return self._handle

    @property
    def generation(self) -> int:
        return self._generation

    def pair_phone(self) -> str | None:
        if self.runtime_config is not None:
            phone = self.runtime_config.get_pair_phone()
            if phone:
                return phone
        return self.settings.pair_phone

    def _is_registered(self) -> bool:
        handle = self._handle
        return handle is not None and bool(handle.auth_state.creds.registered)

    def _refresh_creds_flags(self) -> None:
        handle = self._handle
        if handle is None:
            self.state.registered = False
            self.state.has_credentials = False
            return
        creds = handle.auth_state.creds
        self.state.registered = bool(creds.registered)
        self.state.has_credentials = bool(creds.noise_key or creds.me)

    def _account_number(self) -> str | None:
        handle = self._handle
        if handle is None:
            return None
        return jid_to_number(handle.user_id or _me_id(handle.auth_state.creds.me))

    def _emit_connection_update(self, connected: bool, connecting: bool, user: str | None, registered: bool) -> None:
        _ = self.notifier.emit(
            CONNECTION_UPDATE,
            {"connected": connected, "connecting": connecting, "user": user, "registered": registered},
        )

    def _require_handle(self, operation: str) -> SessionHandle:
        if self._handle is None:
            raise SessionNotReadyError(operation, str(self.state.connection))
        return self._handle

    # ---------------------------------------------------------------- event loop

    def _ensure_consumer(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.get_running_loop().create_task(self._consume(), name="session:events")

    def _make_listener(self, generation: int) -> EventListener:
        def _listener(event_name: str, payload: Any) -> None:
            if generation != self._generation or self._queue is None:
                return
            try:
                event = decode_event(event_name, payload)
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(
                    "%s dropping malformed %s event: %s",
                    self.lp,
                    event_name,
                    e,
                    extra={"generation": generation},
                )
                return
            if event is not None:
                self._queue.put_nowait((generation, event))

        return _listener

    async def _consume(self) -> None:
        lp = f"{self.lp}consume:"
        queue = self._queue
        if queue is None:
            return
        while True:
            generation, event = await queue.get()
            try:
                if generation != self._generation:
                    logger.debug("%s dropping %s from retired handle %d", lp, event.kind, generation)
                    continue
                with correlation_context(event_correlation_id(generation)):
                    await self._dispatch(event)
            except Exception:
                logger.exception("%s handler for %s failed", lp, event.kind)
            finally:
                queue.task_done()

    async def _dispatch(self, event: DecodedEvent) -> None:
        if isinstance(event, ConnectionUpdate):
            await self._on_connection_update(event)
        elif isinstance(event, CredsUpdate):
            await self._on_creds_update()
        elif isinstance(event, MessagesUpsert):
            self._on_messages_upsert(event)
        elif isinstance(event, MessagesUpdate):
            self._on_messages_update(event)

    async def wait_idle(self) -> None:
        """Wait until every queued handle event has been processed."""
        if self._queue is not None:
            await self._queue.join()

    # ------------------------------------------------------------------- start

    async def start(self, force_restart: bool = False) -> None:
        """Create a fresh session handle unless a start is already in flight."""
        lp = f"{self.lp}start:"
        if self._closed:
            logger.debug("%s controller shut down, ignoring", lp)
            return
        if self.phase is LifecyclePhase.STARTING or (self.phase is LifecyclePhase.CONNECTING and not force_restart):
            logger.debug("%s ignored, start already in progress (%s)", lp, self.phase)
            return
        if self.settings.admin_mode and self.state.should_stop_reconnecting and not force_restart:
            logger.info("%s reconnection paused in admin mode, waiting for manual pairing", lp)
            return

        self.phase = LifecyclePhase.STARTING
        self._ensure_consumer()
        self.state.last_started_at = time.monotonic()
        try:
            await self._maybe_purge_stale_session()
            _ = self.timers.cancel(RECONNECT_TIMER)
            await self._retire_handle("restart_pre_start")

            # Retiring the session while the factory is pending bumps the generation;
            # a handle built for an older generation must never go live.
            while True:
                generation = self._generation
                try:
                    handle = await self._factory(self.settings.session_dir)
                except Exception as e:
                    if self._closed:
                        return
                    logger.exception("%s failed to create session handle", lp)
                    self.state.connection = ConnectionState.CLOSED
                    self.phase = LifecyclePhase.IDLE
                    self._schedule_reconnect(None, reason=str(e) or type(e).__name__)
                    return
                if not self._closed and generation == self._generation:
                    break
                await self._discard_handle(handle, "superseded_during_start")
                if self._closed:
                    logger.info("%s controller shut down while creating the handle, discarded it", lp)
                    return
                logger.info("%s session retired while creating the handle, creating a fresh one", lp)

            self._handle = handle
            self._unsubscribe = handle.subscribe(self._make_listener(generation))
            self.state.connection = ConnectionState.CONNECTING
            self.phase = LifecyclePhase.CONNECTING
            self._refresh_creds_flags()
            _ = log_connection_phase(
                logger,
                "connecting",
                verbose=self.settings.log_conn_verbose,
                generation=generation,
            )
            _ = self.notifier.emit(CONNECTION_STATE, {"state": str(ConnectionState.CONNECTING)})

            if not self.state.registered and self.pair_phone():
                logger.debug("%s scheduling initial auto-pair (unregistered session)", lp)
                _ = self.pairing.schedule_auto_pair(self.settings.auto_pair_initial_delay)
        finally:
            if self.phase is LifecyclePhase.STARTING:
                self.phase = LifecyclePhase.IDLE

    async def _retire_handle(self, reason: str) -> None:
        """Detach the current handle's listener and close its transport."""
        handle = self._handle
        unsubscribe = self._unsubscribe
        self._handle = None
        self._unsubscribe = None
        # Anything still queued from the old handle is now stale
        self._generation += 1
        if self.phase in (LifecyclePhase.CONNECTING, LifecyclePhase.OPEN):
            self.phase = LifecyclePhase.IDLE
        if handle is None:
            return
        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception:
                logger.exception("%sretire: failed to detach listener", self.lp)
        await self._discard_handle(handle, reason)

    async def _discard_handle(self, handle: SessionHandle, reason: str) -> None:
        try:
            await handle.close()
        except Exception as e:
            logger.warning("%sretire: error closing handle: %s", self.lp, e, extra={"reason": reason})
        logger.debug("%sretire: handle closed", self.lp, extra={"reason": reason})

    async def _maybe_purge_stale_session(self) -> None:
        """Remove an abandoned, never-registered session directory before starting.

        Skipped while the in-memory handle holds credentials, and for recent
        files so a session created moments ago is not raced.
        """
        lp = f"{self.lp}purge:"
        handle = self._handle
        if handle is not None:
            creds = handle.auth_state.creds
            has_credentials = bool(creds.noise_key or creds.me)
            if creds.registered or has_credentials or self.state.connection is ConnectionState.OPEN:
                logger.info(
                    "%s skip: handle has a valid session",
                    lp,
                    extra={"registered": bool(creds.registered), "has_credentials": has_credentials},
                )
                return

        session_dir = self.settings.session_dir
        try:
            if self.settings.admin_mode:
                stat = session_dir.stat()
                age = time.time() - stat.st_mtime
                if age < self.settings.admin_orphan_min_age:
                    logger.info("%s skip: admin mode keeps orphan files", lp, extra={"age_s": int(age)})
                    return
                await self._delete_session_dir()
                logger.info("%s removed very old orphan session (admin mode)", lp, extra={"age_s": int(age)})
                return

            creds_file = session_dir / CREDS_FILE_NAME
            stat = creds_file.stat()
            raw = creds_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error("%s cannot inspect session directory: %s", lp, e)
            return

        age = time.time() - stat.st_mtime
        if age < self.settings.stale_session_min_age:
            logger.info("%s skip: recent session files", lp, extra={"age_s": int(age)})
            return
        try:
            parsed = json.loads(raw)
        except ValueError:
            await self._delete_session_dir()
            logger.info("%s removed session with invalid creds file", lp)
            return

        registered = isinstance(parsed, dict) and bool(parsed.get("registered"))
        has_valid = isinstance(parsed, dict) and bool(parsed.get("noiseKey") or parsed.get("me"))
        if not registered and not has_valid:
            await self._delete_session_dir()
            logger.info("%s removed session without valid data", lp, extra={"age_s": int(age)})
        else:
            logger.info(
                "%s skip: session has valid data",
                lp,
                extra={"registered": registered, "has_valid_creds": has_valid, "age_s": int(age)},
            )

    async def _delete_session_dir(self) -> None:
        session_dir = self.settings.session_dir
        try:
            await asyncio.to_thread(shutil.rmtree, session_dir)
        except FileNotFoundError:
            return
        except OSError:
            logger.exception("%s failed to remove session directory %s", self.lp, session_dir)
            return
        logger.info("%s session directory removed", self.lp, extra={"path": str(session_dir)})

    # ------------------------------------------------------- connection events

    async def _on_connection_update(self, event: ConnectionUpdate) -> None:
        connection = event.connection
        if connection:
            _ = self.notifier.emit(CONNECTION_STATE, {"state": connection})

        if connection and connection not in ("open", "close"):
            _ = log_connection_phase(logger, connection, verbose=self.settings.log_conn_verbose)
            if connection == "connecting":
                self.state.connection = ConnectionState.CONNECTING
            self._emit_connection_update(False, connection == "connecting", None, self._is_registered())

        if event.qr:
            self._on_qr(event.qr)

        if connection == "open":
            await self._on_open()
        elif connection == "close":
            await self._on_close(event)

    def _on_qr(self, qr: str) -> None:
        lp = f"{self.lp}qr:"
        _ = log_connection_phase(logger, "qr", verbose=self.settings.log_conn_verbose)
        if not self._emit_qr:
            return
        self._emit_qr = False
        try:
            data_url = render_qr_data_url(qr)
        except Exception:
            logger.exception("%s failed to render QR code", lp)
            _ = self.notifier.emit(QR_GENERATION_ERROR, {"error": "Failed to generate QR code"})
            return
        _ = self.notifier.emit(QR_CODE, data_url)
        logger.info("%s QR code generated", lp)

    async def _on_open(self) -> None:
        lp = f"{self.lp}open:"
        _ = self.timers.cancel(RECONNECT_TIMER)
        self.state.reconnect_attempts = 0
        self.state.connection = ConnectionState.OPEN
        self.phase = LifecyclePhase.OPEN
        self._refresh_creds_flags()
        number = self._account_number()

        _ = log_connection_phase(logger, "open", verbose=self.settings.log_conn_verbose)
        logger.info("%s session connected as %s", lp, number or "unknown", extra={"registered": self.state.registered})
        _ = self.notifier.emit(READY, "Session connected")
        _ = self.notifier.emit(MESSAGE, "Session ready.")
        self._emit_connection_update(True, False, number, self.state.registered)

        handle = self._handle
        if handle is None:
            return
        if self.state.registered:
            self.pairing.mark_consumed()
            try:
                await handle.save_creds()
            except Exception:
                logger.exception("%s failed to save credentials after connect", lp)
        else:
            self.pairing.reset_auto_pair_attempts()
            _ = self.pairing.schedule_auto_pair(self.settings.auto_pair_on_open_delay)

    async def _on_close(self, event: ConnectionUpdate) -> None:
        lp = f"{self.lp}close:"
        diagnosis = classify(event.status_code, event.error_message)
        self.phase = LifecyclePhase.CLOSING
        self.state.connection = ConnectionState.CLOSED
        registered = self._is_registered()

        logger.warning("%s connection closed: %s", lp, diagnosis.title, extra=diagnosis.as_dict())
        _ = log_connection_phase(
            logger,
            "close",
            verbose=self.settings.log_conn_verbose,
            code=diagnosis.code,
            key=diagnosis.key,
            suggestion=diagnosis.suggestion,
        )

        pairing_expired = is_pairing_expired(event.error_message)
        if pairing_expired:
            logger.warning("%s pairing code expired, request a new one", lp)
            self.pairing.mark_expired()
            _ = self.notifier.emit(PAIRING_EXPIRED, {"message": "Pairing code expired. Request a new code."})

        self._emit_connection_update(False, False, None, registered)

        try:
            if diagnosis.should_reconnect:
                self._schedule_reconnect(diagnosis, pairing_expired=pairing_expired)
            else:
                await self._on_fatal_close(diagnosis, registered)
        finally:
            if self.phase is LifecyclePhase.CLOSING:
                self.phase = LifecyclePhase.IDLE

    def _schedule_reconnect(
        self,
        diagnosis: DisconnectDiagnosis | None,
        reason: str | None = None,
        pairing_expired: bool = False,
    ) -> None:
        lp = f"{self.lp}schedule_reconnect:"
        attempt = self.state.reconnect_attempts
        if diagnosis is not None and diagnosis.disconnect_class is DisconnectClass.RESTART_REQUIRED:
            delay_ms = self.backoff.restart_required_delay_ms(attempt + 1)
        else:
            delay_ms = self.backoff.get_delay_ms(attempt)
        self.state.reconnect_attempts = attempt + 1

        _ = self.timers.schedule(RECONNECT_TIMER, delay_ms / 1000, self._reconnect_due)
        motive = reason or (diagnosis.raw_message if diagnosis else "") or "unknown"
        logger.warning(
            "%s connection lost (%s), reconnecting in %.1fs",
            lp,
            motive,
            delay_ms / 1000,
            extra={
                "attempt": self.state.reconnect_attempts,
                "delay_ms": delay_ms,
                "code": diagnosis.code if diagnosis else None,
            },
        )
        prefix = "Pairing expired. Creating new session" if pairing_expired else "Reconnecting"
        _ = self.notifier.emit(
            MESSAGE,
            f"{prefix} in {delay_ms / 1000:.1f}s (attempt {self.state.reconnect_attempts})",
        )

    def _reconnect_due(self) -> Awaitable[None]:
        return self.start(force_restart=False)

    async def _on_fatal_close(self, diagnosis: DisconnectDiagnosis, was_registered: bool) -> None:
        lp = f"{self.lp}fatal_close:"
        logger.error(
            "%s session ended (%s)",
            lp,
            diagnosis.key,
            extra={"was_registered": was_registered, "code": diagnosis.code, "raw": diagnosis.raw_message},
        )
        self._emit_connection_update(False, False, None, False)

        if self.settings.admin_mode:
            self.state.should_stop_reconnecting = True
            self.state.reconnect_attempts = 0
            _ = self.timers.cancel(RECONNECT_TIMER)
            await self._retire_handle("logged_out_admin_mode")
            await self._delete_session_dir()
            self.pairing.reset()
            self._refresh_creds_flags()
            logger.info("%s admin mode: session cleared, waiting for manual pairing", lp)
            _ = self.notifier.emit(MESSAGE, "Session ended. Ready for a new pairing.")
            return

        early = self.state.started_recently(self.settings.early_close_window)
        if early:
            self.pairing.reset()
        if was_registered:
            notice = "Session ended (logged out). Cleaning up and restarting."
        elif early:
            notice = "Session invalid right after start. Cleaning up and restarting..."
        else:
            notice = "Unregistered session disconnected. Restarting..."
        _ = self.notifier.emit(MESSAGE, notice)

        if self.state.restart_scheduled:
            logger.debug("%s restart already scheduled", lp)
            return
        self.state.restart_scheduled = True
        await self._retire_handle("logged_out_or_critical")
        await self._delete_session_dir()
        self.pairing.reset()
        self._refresh_creds_flags()
        delay = self.settings.early_close_restart_delay if early else 0.0
        _ = self.timers.schedule(RESTART_TIMER, delay, self._fresh_restart)

    async def _fresh_restart(self) -> None:
        try:
            await self.start(force_restart=False)
        finally:
            self.state.restart_scheduled = False

    # -------------------------------------------------------- creds & messages

    async def _on_creds_update(self) -> None:
        lp = f"{self.lp}creds_update:"
        handle = self._handle
        if handle is None:
            return
        try:
            await handle.save_creds()
        except Exception:
            logger.exception("%s failed to save credentials", lp)
        self._refresh_creds_flags()
        if not self.state.registered:
            return
        if self.pairing.phase is not PairingPhase.CONSUMED:
            self.pairing.mark_consumed()
        self._emit_connection_update(
            self.state.connection is ConnectionState.OPEN,
            self.state.connection is ConnectionState.CONNECTING,
            self._account_number(),
            True,
        )

    def _on_messages_upsert(self, event: MessagesUpsert) -> None:
        if event.upsert_type != "notify":
            return
        for message in event.messages:
            try:
                self._handle_upserted_message(message)
            except Exception:
                logger.exception("%s failed to handle message %s", self.lp, message.key.id)

    def _handle_upserted_message(self, message: WireMessage) -> None:
        jid = message.key.remote_jid
        message_id = message.key.id
        if not jid or should_ignore_jid(jid):
            return
        if self.tracker.is_duplicate_inbound(message_id):
            return
        if message.key.from_me and message_id:
            transition = self.tracker.apply_status_update(message_id, MessageStatus.DELIVERED)
            if transition is not None:
                self._report_transition(transition)
        text = extract_text_content(message.message)
        if not text:
            return

        if message.key.from_me:
            _ = log_message_line(logger, "OUT", jid, text, enabled=self.settings.log_messages)
            _ = self.notifier.emit(
                MESSAGE_OUT,
                {"direction": "out", "to": jid, "text": text, "id": message_id, "ts": message.message_timestamp},
            )
            return

        _ = log_message_line(logger, "IN", jid, text, enabled=self.settings.log_messages)
        _ = self.notifier.emit(
            MESSAGE_IN,
            {"direction": "in", "from": jid, "text": text, "id": message_id, "timestamp": message.message_timestamp},
        )
        if self.webhook is not None and message_id:
            _ = self.webhook.send_message(text, jid, message_id)

    def _on_messages_update(self, event: MessagesUpdate) -> None:
        for update in event.updates:
            try:
                if not update.key.from_me or not update.key.id:
                    continue
                transition = self.tracker.apply_status_update(update.key.id, update.status)
                if transition is not None:
                    self._report_transition(transition)
            except Exception:
                logger.exception("%s failed to apply status update for %s", self.lp, update.key.id)

    def _report_transition(self, transition: StatusTransition) -> None:
        if self.webhook is not None:
            _ = self.webhook.send_status(transition.name, transition.recipient, transition.message_id)
        _ = self.notifier.emit(MESSAGE_STATUS, transition.as_dict())

    # --------------------------------------------------------------- sending

    async def send_content(self, number: str, content: dict[str, Any]) -> str | None:
        """Send ``content`` to ``number`` and start tracking its delivery status.

        Raises:
            SessionNotReadyError: no session handle exists.
            InvalidPhoneError: ``number`` is not a valid phone number.

        """
        handle = self._require_handle("send")
        jid = format_number_to_jid(normalize_phone(number))
        message_id = await handle.send_message(jid, content)
        text = extract_text_content(content) or content.get("caption")

        if message_id and is_direct_jid(jid):
            _ = self.tracker.record_outbound(message_id, jid, text)
            if self.webhook is not None:
                _ = self.webhook.send_status(status_name(MessageStatus.SENT), jid, message_id)
        _ = log_message_line(logger, "OUT", jid, text, enabled=self.settings.log_messages)
        _ = self.notifier.emit(
            MESSAGE_OUT,
            {"direction": "out", "to": jid, "text": text, "id": message_id, "ts": now_ms()},
        )
        return message_id

    async def send_text(self, number: str, text: str) -> str | None:
        return await self.send_content(number, {"text": text})

    # ------------------------------------------------------------------ pairing

    async def request_pairing_code(self, phone: str | None = None, force: bool = False) -> PairingResult:
        return await self.pairing.request_code(self._handle, phone, force)

    async def request_pairing_code_admin(self, phone: str | None) -> PairingResult:
        """Operator pairing request: lifts the admin pause and starts a session if none exists."""
        self.resume_reconnections()
        if self._handle is None:
            logger.info("%srequest_pairing_code_admin: no session handle, restarting", self.lp)
            await self.start(force_restart=True)
            return PairingResult(
                ok=False,
                error="Session is being restarted. Try again in a few seconds.",
                reason="no_session",
            )
        return await self.pairing.request_code_admin(self._handle, phone)

    def get_pairing_status(self) -> dict[str, Any] | None:
        return self.pairing.get_status()

    def get_pairing_info(self) -> dict[str, Any]:
        return self.pairing.get_info()

    def resume_reconnections(self) -> None:
        self.state.should_stop_reconnecting = False

    # ---------------------------------------------------------------------- QR

    def request_qr(self) -> bool:
        """Emit the next QR string the handle produces; refused once registered."""
        if self._is_registered():
            logger.info("%srequest_qr: session already registered", self.lp)
            return False
        self._emit_qr = True
        logger.info("%srequest_qr: QR will be emitted on next generation", self.lp)
        return True

    async def force_qr(self) -> bool:
        """Retire the current handle and start fresh so a new QR is produced right away."""
        lp = f"{self.lp}force_qr:"
        self.state.should_stop_reconnecting = False
        if self._is_registered():
            _ = self.notifier.emit(QR_GENERATION_ERROR, {"error": "Session already registered"})
            return False
        self._emit_qr = True
        await self._retire_handle("immediate_qr_request")
        self.state.reconnect_attempts = 0
        self.state.connection = ConnectionState.IDLE
        try:
            await self.start(force_restart=True)
        except Exception:
            logger.exception("%s failed to start session for QR", lp)
            _ = self.notifier.emit(QR_GENERATION_ERROR, {"error": "Failed to generate QR code"})
            return False
        return True

    # ---------------------------------------------------------------- reset

    async def reset_session(self) -> dict[str, Any]:
        """Operator reset: drop the session and its files, then start fresh after a short delay."""
        lp = f"{self.lp}reset_session:"
        logger.info("%s manual session reset", lp)
        self.state.should_stop_reconnecting = False
        _ = self.timers.cancel(RECONNECT_TIMER)
        _ = self.timers.cancel(RESTART_TIMER)
        await self._retire_handle("manual_reset")
        await self._delete_session_dir()
        self.pairing.reset()

        self.state.restart_scheduled = True
        self.state.reconnect_attempts = 0
        self.state.connection = ConnectionState.IDLE
        self._refresh_creds_flags()
        self._emit_connection_update(False, False, None, False)
        _ = self.timers.schedule(RESTART_TIMER, self.settings.manual_reset_restart_delay, self._restart_after_reset)
        return {"ok": True, "message": "Session reset; restarting."}

    async def _restart_after_reset(self) -> None:
        try:
            await self.start(force_restart=False)
            if self._handle is not None and not self._is_registered() and self.pair_phone():
                _ = self.pairing.schedule_auto_pair(self.settings.auto_pair_after_reset_delay)
        finally:
            self.state.restart_scheduled = False

    # ---------------------------------------------------------------- status

    def get_connection_status(self) -> dict[str, Any]:
        self._refresh_creds_flags()
        handle = self._handle
        user_id = None
        if handle is not None:
            user_id = _me_id(handle.auth_state.creds.me) or handle.user_id
        status = self.state.as_dict()
        status.update(
            {
                "ok": True,
                "userId": user_id,
                "autoPairAttempts": self.pairing.auto_pair_attempts,
                "socketActive": handle is not None,
                "phase": str(self.phase),
                "pendingTimers": self.timers.pending_names(),
            }
        )
        return status

    # -------------------------------------------------------------- shutdown

    async def _auto_pair_due(self, force: bool) -> bool:
        return await self.pairing.auto_pair(self._handle, force)

    async def shutdown(self) -> bool:
        """Cancel timers and close the handle.

        The session directory is kept only when the session is open and
        registered. Returns True when it was kept.
        """
        lp = f"{self.lp}shutdown:"
        self._closed = True
        cancelled = self.timers.cancel_all()
        preserve = self.state.connection is ConnectionState.OPEN and self._is_registered()

        await self._retire_handle("graceful_shutdown_preserve_session" if preserve else "graceful_shutdown")
        if preserve:
            logger.info("%s session preserved for next start", lp)
        else:
            await self._delete_session_dir()
        self.state.connection = ConnectionState.CLOSED

        await self.timers.close()
        consumer = self._consumer
        self._consumer = None
        if consumer is not None and not consumer.done():
            _ = consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
        logger.info("%s completed", lp, extra={"cancelled_timers": cancelled, "preserved": preserve})
        return preserve
