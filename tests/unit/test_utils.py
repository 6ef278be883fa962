"""
Unit tests for utils.py module.

Tests phone normalisation, JID helpers, text extraction and QR rendering.
"""

import base64

import pytest

from wa_gateway.exceptions import InvalidPhoneError
from wa_gateway.utils import (
    extract_text_content,
    format_number_to_jid,
    jid_to_number,
    normalize_phone,
    render_qr_data_url,
    sanitize_text,
    should_ignore_jid,
)


class TestNormalizePhone:
    """Tests for normalize_phone"""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("+55 (11) 99999-0000", "5511999990000"),
            ("12345678", "12345678"),
            ("123456789012345", "123456789012345"),
        ],
    )
    def test_valid(self, raw, expected):
        """Test that punctuation is stripped from valid numbers"""
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "1234567", "1234567890123456", "abc"])
    def test_invalid(self, raw):
        """Test that numbers outside 8-15 digits are rejected"""
        with pytest.raises(InvalidPhoneError) as exc_info:
            _ = normalize_phone(raw)
        assert exc_info.value.phone == raw


class TestJidHelpers:
    """Tests for JID helpers"""

    def test_format_number_to_jid(self):
        """Test number and JID inputs both produce a user JID"""
        assert format_number_to_jid("+55 11 99999-0000") == "5511999990000@s.whatsapp.net"
        assert format_number_to_jid("5511999990000@s.whatsapp.net") == "5511999990000@s.whatsapp.net"

    def test_jid_to_number(self):
        """Test that server and device suffixes are stripped"""
        assert jid_to_number("5511999990000:7@s.whatsapp.net") == "5511999990000"
        assert jid_to_number("5511999990000@s.whatsapp.net") == "5511999990000"
        assert jid_to_number(None) is None

    @pytest.mark.parametrize(
        ("jid", "ignored"),
        [
            ("5511999990000@s.whatsapp.net", False),
            ("120363@g.us", True),
            ("status@broadcast", True),
            ("120363@newsletter", True),
            ("5511999990000@lid", True),
            (None, True),
            ("", True),
        ],
    )
    def test_should_ignore_jid(self, jid, ignored):
        """Test that only one-to-one chats are accepted"""
        assert should_ignore_jid(jid) is ignored


class TestText:
    """Tests for text extraction and sanitising"""

    @pytest.mark.parametrize(
        ("content", "expected"),
        [
            ({"text": "a"}, "a"),
            ({"conversation": "b"}, "b"),
            ({"extendedTextMessage": {"text": "c"}}, "c"),
            ({"conversation": "b", "extendedTextMessage": {"text": "c"}}, "b"),
            ({"imageMessage": {"url": "x"}}, None),
            ({"extendedTextMessage": {"text": ""}}, None),
            (None, None),
        ],
    )
    def test_extract_text_content(self, content, expected):
        """Test the lookup order of text fields"""
        assert extract_text_content(content) == expected

    def test_sanitize_collapses_whitespace(self):
        """Test that multi-line text becomes one line"""
        assert sanitize_text("  hello\n\n  world\t!  ") == "hello world !"
        assert sanitize_text(None) == ""

    def test_sanitize_truncates(self):
        """Test that long text is capped with an ellipsis"""
        result = sanitize_text("x" * 500, limit=10)
        assert result == "x" * 10 + "…"


class TestRenderQr:
    """Tests for render_qr_data_url"""

    def test_png_data_url(self):
        """Test that the QR payload renders as a base64 PNG"""
        url = render_qr_data_url("2@abcdef,ghijk,lmnop")
        prefix = "data:image/png;base64,"
        assert url.startswith(prefix)
        assert base64.b64decode(url[len(prefix) :])[:8] == b"\x89PNG\r\n\x1a\n"
