"""
Unit tests for events.py module.

Tests decoding of raw library events into typed models.
"""

import pytest
from pydantic import ValidationError

from wa_gateway.events import ConnectionUpdate, CredsUpdate, MessagesUpdate, MessagesUpsert, decode_event


class _Output:
    status_code = 515


class _BoomError(Exception):
    def __init__(self):
        super().__init__("stream errored")
        self.output = _Output()
        self.message = "stream errored (restart required)"


class TestConnectionUpdate:
    """Tests for connection.update decoding"""

    def test_nested_status_code(self):
        """Test lastDisconnect.error.output.statusCode is extracted"""
        event = decode_event(
            "connection.update",
            {
                "connection": "close",
                "lastDisconnect": {"error": {"output": {"statusCode": 401}, "message": "logged out"}},
            },
        )
        assert isinstance(event, ConnectionUpdate)
        assert event.connection == "close"
        assert event.status_code == 401
        assert event.error_message == "logged out"

    def test_flat_status_code_as_string(self):
        """Test a flat statusCode given as a string"""
        event = decode_event(
            "connection.update",
            {"connection": "close", "lastDisconnect": {"error": {"statusCode": "408"}}},
        )
        assert event.status_code == 408

    def test_exception_object(self):
        """Test an exception carrying output.status_code"""
        event = decode_event("connection.update", {"connection": "close", "lastDisconnect": {"error": _BoomError()}})
        assert event.status_code == 515
        assert event.error_message == "stream errored (restart required)"

    def test_qr_and_new_login(self):
        """Test qr and isNewLogin fields"""
        event = decode_event("connection.update", {"qr": "2@xyz", "isNewLogin": True})
        assert event.connection is None
        assert event.qr == "2@xyz"
        assert event.is_new_login is True
        assert event.status_code is None


class TestMessageEvents:
    """Tests for message event decoding"""

    def test_upsert(self):
        """Test messages.upsert with aliases and timestamp coercion"""
        event = decode_event(
            "messages.upsert",
            {
                "type": "notify",
                "messages": [
                    {
                        "key": {"remoteJid": "5511@s.whatsapp.net", "fromMe": False, "id": "A"},
                        "message": {"conversation": "hi"},
                        "messageTimestamp": "1700000000",
                        "pushName": "Ana",
                        "unknownField": 1,
                    }
                ],
            },
        )
        assert isinstance(event, MessagesUpsert)
        assert event.upsert_type == "notify"
        message = event.messages[0]
        assert message.key.remote_jid == "5511@s.whatsapp.net"
        assert message.key.from_me is False
        assert message.message_timestamp == 1700000000
        assert message.push_name == "Ana"

    def test_bad_timestamp_becomes_none(self):
        """Test that an unparseable timestamp is dropped"""
        event = decode_event(
            "messages.upsert",
            {"messages": [{"key": {"id": "A"}, "messageTimestamp": {"low": 1}}]},
        )
        assert event.messages[0].message_timestamp is None

    def test_update(self):
        """Test messages.update extracts the status"""
        event = decode_event(
            "messages.update",
            [{"key": {"remoteJid": "5511@s.whatsapp.net", "fromMe": True, "id": "A"}, "update": {"status": 3}}],
        )
        assert isinstance(event, MessagesUpdate)
        assert event.updates[0].status == 3
        assert event.updates[0].key.id == "A"

    def test_update_without_status(self):
        """Test an update that carries no status"""
        event = decode_event("messages.update", [{"key": {"id": "A"}, "update": {"starred": True}}])
        assert event.updates[0].status is None

    def test_malformed_key_raises(self):
        """Test that a malformed payload raises a validation error"""
        with pytest.raises(ValidationError):
            _ = decode_event("messages.update", [{"key": "nope"}])


class TestOtherEvents:
    """Tests for creds and unknown events"""

    def test_creds_update(self):
        """Test creds.update keeps the raw update"""
        event = decode_event("creds.update", {"registered": True})
        assert isinstance(event, CredsUpdate)
        assert event.update == {"registered": True}

    def test_unknown_event(self):
        """Test that unhandled event kinds decode to None"""
        assert decode_event("presence.update", {"id": "x"}) is None
