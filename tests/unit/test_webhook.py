"""
Unit tests for webhook.py module.

Tests payload shapes and best-effort posting to the external endpoint.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from wa_gateway.webhook import WebhookForwarder, build_message_payload, build_status_payload

ENDPOINT = "http://hook.example/in"


def _mock_session(post_side_effect=None):
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.release = MagicMock()
    session = MagicMock()
    session.closed = False
    session.post = AsyncMock(return_value=response, side_effect=post_side_effect)
    session.close = AsyncMock()
    return session, response


class TestPayloads:
    """Tests for payload builders"""

    def test_message_payload(self):
        """Test the inbound message payload"""
        payload = build_message_payload("oi", "5511999990000:3@s.whatsapp.net", "ID1", port=8000)
        assert payload == {
            "resposta": "oi",
            "nrCelular": "5511999990000",
            "tipo": "mensagem",
            "idlog": "ID1",
            "referencia_status": "Recebido",
            "nrPorta": 8000,
            "idDominio": 0,
        }

    def test_status_payload(self):
        """Test the delivery status payload"""
        payload = build_status_payload("Visualizado", "5511999990000@s.whatsapp.net", "ID2", port=9000)
        assert payload["tipo"] == "status"
        assert payload["resposta"] == "Visualizado"
        assert payload["referencia_status"] == "Visualizado"
        assert payload["nrPorta"] == 9000


class TestWebhookForwarder:
    """Tests for WebhookForwarder"""

    @pytest.mark.asyncio
    async def test_post_success(self):
        """Test a successful post sends JSON with the API content type"""
        session, response = _mock_session()
        forwarder = WebhookForwarder(lambda: ENDPOINT, http_session=session)

        assert await forwarder.post({"tipo": "status", "idlog": "X"}) is True

        args, kwargs = session.post.call_args
        assert args == (ENDPOINT,)
        assert json.loads(kwargs["data"]) == {"tipo": "status", "idlog": "X"}
        assert kwargs["headers"] == {"Content-Type": "application/vnd.api+json"}
        response.release.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_endpoint(self):
        """Test that nothing is posted without an endpoint"""
        session, _ = _mock_session()
        forwarder = WebhookForwarder(lambda: None, http_session=session)

        assert await forwarder.post({"tipo": "status"}) is False
        assert forwarder.forward({"tipo": "status"}) is None
        session.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_client_error_returns_false(self):
        """Test that a connection failure is logged and dropped"""
        session, _ = _mock_session(post_side_effect=aiohttp.ClientConnectionError("refused"))
        forwarder = WebhookForwarder(lambda: ENDPOINT, http_session=session)

        assert await forwarder.post({"tipo": "mensagem"}) is False

    @pytest.mark.asyncio
    async def test_http_error_returns_false(self):
        """Test that a non-2xx response counts as a failure"""
        session, response = _mock_session()
        response.raise_for_status.side_effect = aiohttp.ClientResponseError(MagicMock(), (), status=500)
        forwarder = WebhookForwarder(lambda: ENDPOINT, http_session=session)

        assert await forwarder.post({"tipo": "mensagem"}) is False
        response.release.assert_called_once()

    @pytest.mark.asyncio
    async def test_send_message_in_background(self):
        """Test that send_message posts from a background task"""
        session, _ = _mock_session()
        forwarder = WebhookForwarder(lambda: ENDPOINT, port=8123, http_session=session)

        task = forwarder.send_message("oi", "5511999990000@s.whatsapp.net", "ID1")
        assert task is not None
        await forwarder.drain()

        assert task.result() is True
        sent = json.loads(session.post.call_args.kwargs["data"])
        assert sent["nrPorta"] == 8123
        assert sent["tipo"] == "mensagem"

    @pytest.mark.asyncio
    async def test_endpoint_read_on_every_post(self):
        """Test that an endpoint change takes effect without a restart"""
        endpoint = {"url": ENDPOINT}
        session, _ = _mock_session()
        forwarder = WebhookForwarder(lambda: endpoint["url"], http_session=session)

        _ = await forwarder.post({"tipo": "status"})
        endpoint["url"] = "http://other.example/in"
        _ = await forwarder.post({"tipo": "status"})

        assert session.post.call_args.args == ("http://other.example/in",)

    @pytest.mark.asyncio
    async def test_close(self):
        """Test that close shuts the shared session"""
        session, _ = _mock_session()
        forwarder = WebhookForwarder(lambda: ENDPOINT, http_session=session)

        await forwarder.close()

        session.close.assert_awaited_once()
        assert forwarder.http_session is None
