"""
Unit tests for disconnect.py module.
"""

import pytest

from wa_gateway.disconnect import DisconnectClass, classify, is_pairing_expired


class TestClassify:
    """Tests for classify"""

    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            (401, DisconnectClass.FATAL),
            (403, DisconnectClass.FATAL),
            (411, DisconnectClass.FATAL),
            (500, DisconnectClass.FATAL),
            (408, DisconnectClass.RETRYABLE),
            (428, DisconnectClass.RETRYABLE),
            (440, DisconnectClass.RETRYABLE),
            (503, DisconnectClass.RETRYABLE),
            (515, DisconnectClass.RESTART_REQUIRED),
        ],
    )
    def test_table_codes(self, code, expected):
        """Test that every documented code maps to its class"""
        diagnosis = classify(code)
        assert diagnosis.disconnect_class is expected
        assert diagnosis.code == code
        assert diagnosis.is_fatal is (expected is DisconnectClass.FATAL)

    @pytest.mark.parametrize("code", [400, 404, 499, 999, 1])
    def test_unmapped_code_is_unknown(self, code):
        """Test that codes outside the table are unknown but retryable"""
        diagnosis = classify(code, "boom")
        assert diagnosis.disconnect_class is DisconnectClass.UNKNOWN
        assert diagnosis.key == "unmapped"
        assert diagnosis.should_reconnect is True
        assert diagnosis.raw_message == "boom"

    @pytest.mark.parametrize("code", [None, 0])
    def test_missing_code_is_unknown(self, code):
        """Test that a close without a code is unknown"""
        diagnosis = classify(code)
        assert diagnosis.disconnect_class is DisconnectClass.UNKNOWN
        assert diagnosis.key == "unknown"

    def test_logged_out_details(self):
        """Test the diagnosis fields for a logout"""
        diagnosis = classify(401)
        assert diagnosis.key == "loggedOut"
        assert diagnosis.should_reconnect is False
        data = diagnosis.as_dict()
        assert data["class"] == "fatal"
        assert data["code"] == 401


class TestPairingExpired:
    """Tests for is_pairing_expired"""

    def test_matches_qr_exhaustion(self):
        """Test the QR exhaustion message is recognised"""
        assert is_pairing_expired("Connection Failure: QR refs attempts ended")

    @pytest.mark.parametrize("message", [None, "", "Connection Closed"])
    def test_other_messages(self, message):
        """Test that other messages do not match"""
        assert not is_pairing_expired(message)
