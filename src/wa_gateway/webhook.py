"""Best-effort forwarding of message and status events to an external HTTP endpoint.

Posts are fire-and-forget: a failed post is logged at warning and dropped, there
is no retry queue.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import aiohttp

from wa_gateway.const import WA_PORT, WEBHOOK_CONTENT_TYPE, WEBHOOK_TIMEOUT_SECONDS
from wa_gateway.logging_abstraction import get_logger
from wa_gateway.utils import jid_to_number

__all__ = ["WebhookForwarder", "build_message_payload", "build_status_payload"]

logger = get_logger(__name__)

EndpointProvider = Callable[[], str | None]


def build_message_payload(text: str, jid: str, message_id: str, port: int = WA_PORT) -> dict[str, Any]:
    return {
        "resposta": text,
        "nrCelular": jid_to_number(jid),
        "tipo": "mensagem",
        "idlog": message_id,
        "referencia_status": "Recebido",
        "nrPorta": port,
        "idDominio": 0,
    }


def build_status_payload(status_name: str, jid: str, message_id: str, port: int = WA_PORT) -> dict[str, Any]:
    return {
        "resposta": status_name,
        "nrCelular": jid_to_number(jid),
        "tipo": "status",
        "idlog": message_id,
        "referencia_status": status_name,
        "nrPorta": port,
        "idDominio": 0,
    }


class WebhookForwarder:
    """Posts gateway events to the configured endpoint with a shared aiohttp session."""

    lp: str = "WebhookForwarder:"

    def __init__(
        self,
        endpoint_provider: EndpointProvider,
        port: int = WA_PORT,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._endpoint_provider = endpoint_provider
        self.port = port
        self.timeout = timeout
        self.http_session: aiohttp.ClientSession | None = http_session
        self._tasks: set[asyncio.Task[bool]] = set()

    @property
    def endpoint(self) -> str | None:
        return self._endpoint_provider()

    async def _check_session(self) -> None:
        if not self.http_session or self.http_session.closed:
            logger.debug("%s_check_session: Creating new aiohttp ClientSession", self.lp)
            self.http_session = aiohttp.ClientSession()

    async def post(self, payload: dict[str, Any]) -> bool:
        """Post one payload; returns False (after logging) on any delivery failure."""
        lp = f"{self.lp}post:"
        endpoint = self.endpoint
        if not endpoint:
            logger.debug("%s no endpoint configured, dropping %s", lp, payload.get("tipo"))
            return False

        await self._check_session()
        sesh = self.http_session
        if sesh is None:
            return False
        try:
            resp = await sesh.post(
                endpoint,
                data=json.dumps(payload),
                headers={"Content-Type": WEBHOOK_CONTENT_TYPE},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
            try:
                resp.raise_for_status()
            finally:
                resp.release()
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning(
                "%s failed to post to external endpoint: %s",
                lp,
                e,
                extra={"endpoint": endpoint, "tipo": payload.get("tipo"), "idlog": payload.get("idlog")},
            )
            return False
        logger.debug("%s delivered %s for %s", lp, payload.get("tipo"), payload.get("idlog"))
        return True

    def forward(self, payload: dict[str, Any]) -> asyncio.Task[bool] | None:
        """Schedule ``post`` in the background; returns None when no endpoint is set."""
        if not self.endpoint:
            return None
        task = asyncio.get_running_loop().create_task(self.post(payload), name="webhook:post")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def send_message(self, text: str, jid: str, message_id: str) -> asyncio.Task[bool] | None:
        return self.forward(build_message_payload(text, jid, message_id, self.port))

    def send_status(self, status_name: str, jid: str, message_id: str) -> asyncio.Task[bool] | None:
        return self.forward(build_status_payload(status_name, jid, message_id, self.port))

    async def drain(self) -> None:
        """Wait for in-flight posts (used by tests and shutdown)."""
        if self._tasks:
            _ = await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        lp = f"{self.lp}close:"
        for task in list(self._tasks):
            _ = task.cancel()
        await self.drain()
        if self.http_session and not self.http_session.closed:
            logger.debug("%s Closing aiohttp ClientSession", lp)
            await self.http_session.close()
        self.http_session = None
