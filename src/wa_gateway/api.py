"""FastAPI surface for operating the gateway: session control, sending, admin config and a live event stream."""

from __future__ import annotations

import asyncio
import contextlib
import re
import uuid
from typing import Annotated, Any
from urllib.parse import urlsplit

import aiohttp
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from wa_gateway.const import WA_PORT, WA_SRV_HOST, WA_VERSION
from wa_gateway.exceptions import InvalidPhoneError, SessionNotReadyError
from wa_gateway.logging_abstraction import get_logger
from wa_gateway.pairing import PairingResult
from wa_gateway.runtime_config import RuntimeConfigStore
from wa_gateway.session import SessionController

__all__ = ["ApiServer", "build_media_content", "create_app", "download_media"]

logger = get_logger(__name__)

MEDIA_DOWNLOAD_TIMEOUT_SECONDS = 30.0

# Status codes for pairing results that did not produce a code
_PAIRING_FAILURE_STATUS: dict[str | None, int] = {
    "registered": 400,
    "invalid_phone": 400,
    "rate_limited": 429,
    "no_session": 503,
}


class SendTextRequest(BaseModel):
    number: str | None = None
    message: str | None = None


class SendMediaRequest(BaseModel):
    number: str | None = None
    file: str | None = None
    caption: str | None = None


class AdminPairRequest(BaseModel):
    phone: str | None = None


class AdminConfigUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pair_phone: str | None = Field(default=None, alias="PAIR_PHONE")
    external_endpoint: str | None = Field(default=None, alias="EXTERNAL_ENDPOINT")


def _masked_http_exception(
    operation: str,
    exc: Exception,
    user_message: str,
    status_code: int = 500,
) -> HTTPException:
    """Create a sanitized HTTPException while logging full details server-side."""
    error_id = uuid.uuid4().hex[:8]
    logger.exception("%s error_id=%s unexpected error: %s", operation, error_id, exc)
    return HTTPException(
        status_code=status_code,
        detail={
            "error_id": error_id,
            "message": user_message,
        },
    )


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


def _pairing_response(result: PairingResult) -> JSONResponse:
    if result.ok:
        return JSONResponse(content=result.as_dict())
    return JSONResponse(status_code=_PAIRING_FAILURE_STATUS.get(result.reason, 500), content=result.as_dict())


def _is_valid_url(url: str) -> bool:
    parts = urlsplit(url)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


async def download_media(url: str, timeout: float = MEDIA_DOWNLOAD_TIMEOUT_SECONDS) -> tuple[bytes, str]:
    """Fetch ``url`` and return its body and MIME type."""
    client_timeout = aiohttp.ClientTimeout(total=timeout)
    async with aiohttp.ClientSession(timeout=client_timeout) as session, session.get(url) as response:
        response.raise_for_status()
        mime_type = response.headers.get("Content-Type") or "application/octet-stream"
        return await response.read(), mime_type


def build_media_content(data: bytes, mime_type: str, caption: str | None = None) -> dict[str, Any]:
    """Pick image, video or document by MIME type."""
    if re.match(r"^image/", mime_type):
        content: dict[str, Any] = {"image": data}
    elif re.match(r"^video/", mime_type):
        content = {"video": data}
    else:
        content = {"document": data, "mimetype": mime_type}
    if caption:
        content["caption"] = caption
    return content


def get_controller(request: Request) -> SessionController:
    return request.app.state.controller


def get_runtime_config(request: Request) -> RuntimeConfigStore:
    return request.app.state.runtime_config


ControllerDep = Annotated[SessionController, Depends(get_controller)]
RuntimeConfigDep = Annotated[RuntimeConfigStore, Depends(get_runtime_config)]

router = APIRouter()


@router.get("/api/healthcheck")
async def health_check() -> dict[str, Any]:
    """Health check endpoint to verify if the server is running."""
    return {"status": "ok", "message": "Gateway is running", "version": WA_VERSION}


@router.get("/session/status")
async def session_status(controller: ControllerDep) -> dict[str, Any]:
    status = controller.get_connection_status()
    status["lastPairing"] = controller.get_pairing_status()
    return status


@router.get("/session/pair")
async def session_pair(controller: ControllerDep, phone: str | None = None, force: str | None = None) -> JSONResponse:
    """Return a pairing code, reusing a cached one unless ``force`` is set."""
    forced = bool(force and re.match(r"^(1|true|yes)$", force, re.IGNORECASE))
    result = await controller.request_pairing_code(phone or None, forced)
    return _pairing_response(result)


@router.post("/session/reset")
async def session_reset(controller: ControllerDep) -> dict[str, Any]:
    try:
        return await controller.reset_session()
    except Exception as e:
        raise _masked_http_exception(
            "Session reset failed",
            e,
            "Failed to reset the session. Check server logs with the error ID.",
        ) from e


@router.post("/session/send-text", response_model=None)
async def send_text(body: SendTextRequest, controller: ControllerDep) -> dict[str, Any] | JSONResponse:
    if not body.number or not body.message:
        return _error(400, "number and message are required")
    try:
        message_id = await controller.send_text(body.number, body.message)
    except SessionNotReadyError as e:
        return _error(503, str(e))
    except InvalidPhoneError as e:
        return _error(400, str(e))
    except Exception as e:
        raise _masked_http_exception(
            "Send text failed",
            e,
            "Failed to send the message. Check server logs with the error ID.",
        ) from e
    return {"ok": True, "id": message_id}


@router.post("/session/send-media", response_model=None)
async def send_media(body: SendMediaRequest, controller: ControllerDep) -> dict[str, Any] | JSONResponse:
    lp = "api:send_media:"
    if not body.number or not body.file:
        return _error(400, "number and file are required")
    if controller.handle is None:
        return _error(503, "Session not ready")
    try:
        data, mime_type = await download_media(body.file)
    except (aiohttp.ClientError, TimeoutError) as e:
        logger.warning("%s failed to download media: %s", lp, e, extra={"url": body.file})
        return _error(400, f"Could not download file: {e}")
    try:
        message_id = await controller.send_content(body.number, build_media_content(data, mime_type, body.caption))
    except SessionNotReadyError as e:
        return _error(503, str(e))
    except InvalidPhoneError as e:
        return _error(400, str(e))
    except Exception as e:
        raise _masked_http_exception(
            "Send media failed",
            e,
            "Failed to send the media message. Check server logs with the error ID.",
        ) from e
    return {"ok": True, "id": message_id}


@router.post("/session/qr", response_model=None)
async def session_qr(controller: ControllerDep) -> dict[str, Any] | JSONResponse:
    if controller.get_connection_status()["registered"]:
        return _error(400, "Session already registered. Reset the session to get a new QR code.")
    if not await controller.force_qr():
        return _error(400, "Cannot generate a QR code right now")
    return {"ok": True, "message": "QR code is being generated. Wait a few seconds..."}


@router.get("/admin/config")
async def admin_config(runtime_config: RuntimeConfigDep) -> dict[str, Any]:
    return {
        "ok": True,
        "config": {
            "PAIR_PHONE": runtime_config.get_pair_phone() or "",
            "EXTERNAL_ENDPOINT": runtime_config.get_external_endpoint() or "",
        },
    }


@router.post("/admin/config", response_model=None)
async def admin_config_update(
    body: AdminConfigUpdate,
    runtime_config: RuntimeConfigDep,
) -> dict[str, Any] | JSONResponse:
    lp = "api:admin_config_update:"
    if body.pair_phone and not body.pair_phone.isdigit():
        return _error(400, "Phone must contain digits only")
    if body.external_endpoint and not _is_valid_url(body.external_endpoint):
        return _error(400, "Endpoint must be a valid URL")
    try:
        _ = runtime_config.update(pair_phone=body.pair_phone, external_endpoint=body.external_endpoint)
    except OSError as e:
        raise _masked_http_exception(
            "Runtime config update failed",
            e,
            "Failed to save the configuration. Check server logs with the error ID.",
        ) from e
    logger.info("%s runtime config updated", lp, extra=body.model_dump(exclude_none=True))
    return {"ok": True, "config": runtime_config.as_dict()}


@router.post("/admin/pair")
async def admin_pair(body: AdminPairRequest, controller: ControllerDep) -> JSONResponse:
    phone = body.phone or controller.pair_phone()
    if not phone:
        return _error(400, "Pairing phone not configured")
    result = await controller.request_pairing_code_admin(phone)
    return _pairing_response(result)


@router.get("/admin/pairing-info")
async def admin_pairing_info(controller: ControllerDep) -> dict[str, Any]:
    return {"ok": True, "info": controller.get_pairing_info()}


@router.websocket("/ws")
async def events_stream(websocket: WebSocket) -> None:
    """Stream every gateway event as an ``{event, data}`` frame."""
    lp = "api:ws:"
    controller: SessionController = websocket.app.state.controller
    await websocket.accept()
    queue = controller.notifier.open_queue()
    logger.debug("%s observer connected", lp)

    async def _pump() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event.as_frame())

    await websocket.send_json({"event": "status", "data": controller.get_connection_status()})
    pump = asyncio.get_running_loop().create_task(_pump(), name="ws:pump")
    try:
        while True:
            _ = await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("%s observer disconnected", lp)
    finally:
        controller.notifier.close_queue(queue)
        _ = pump.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
            await pump


def create_app(controller: SessionController, runtime_config: RuntimeConfigStore) -> FastAPI:
    app = FastAPI(title="wa-gateway", version=WA_VERSION)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.controller = controller
    app.state.runtime_config = runtime_config
    app.include_router(router)
    return app


class ApiServer:
    """Runs the FastAPI app on uvicorn inside the gateway's event loop."""

    lp = "ApiServer:"
    running: bool = False
    start_task: asyncio.Task[None] | None = None

    def __init__(self, app: FastAPI, host: str = WA_SRV_HOST, port: int = WA_PORT) -> None:
        self.app = app
        self.host = host
        self.port = port
        self.uvi_server = uvicorn.Server(
            config=uvicorn.Config(
                app,
                host=host,
                port=port,
                log_config={
                    "version": 1,
                    "disable_existing_loggers": False,
                },
                log_level="info",
            )
        )

    async def start(self) -> None:
        """Start the HTTP server."""
        lp = f"{self.lp}start:"
        logger.info("%s Starting HTTP server on %s:%s", lp, self.host, self.port)
        self.running = True
        try:
            await self.uvi_server.serve()
        except asyncio.CancelledError:
            logger.info("%s HTTP server stopped", lp)
            raise
        except Exception:
            logger.exception("%s Error running HTTP server", lp)
        else:
            logger.info("%s HTTP server lifecycle completed", lp)
        finally:
            self.running = False

    async def stop(self) -> None:
        """Ask uvicorn to exit and wait for it to close its sockets."""
        lp = f"{self.lp}stop:"
        logger.info("%s Stopping HTTP server...", lp)
        self.uvi_server.should_exit = True
        task = self.start_task
        if task is None or task.done() or task is asyncio.current_task():
            self.running = False
            return
        _ = await asyncio.wait({task})
        self.running = False
        logger.info("%s HTTP server stopped", lp)
