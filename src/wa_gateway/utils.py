from __future__ import annotations

import base64
import io
import re
import time
from collections.abc import Mapping
from typing import Any

import qrcode
import qrcode.constants

from wa_gateway.exceptions import InvalidPhoneError

USER_JID_SUFFIX = "@s.whatsapp.net"
MAX_LOGGED_TEXT = 400
PHONE_MIN_DIGITS = 8
PHONE_MAX_DIGITS = 15

_NON_DIGITS = re.compile(r"\D")
_WHITESPACE = re.compile(r"\s+")
_NEWSLETTER = re.compile(r"newsletter|channel", re.IGNORECASE)


def normalize_phone(raw: str | None) -> str:
    """Strip a phone number down to its digits.

    Raises:
        InvalidPhoneError: if the result is not 8-15 digits long.

    """
    digits = _NON_DIGITS.sub("", raw or "")
    if not PHONE_MIN_DIGITS <= len(digits) <= PHONE_MAX_DIGITS:
        raise InvalidPhoneError(raw)
    return digits


def format_number_to_jid(raw: str) -> str:
    """Turn a phone number (any punctuation) into a user JID."""
    if raw.endswith(USER_JID_SUFFIX):
        raw = raw[: -len(USER_JID_SUFFIX)]
    return f"{_NON_DIGITS.sub('', raw)}{USER_JID_SUFFIX}"


def jid_to_number(jid: str | None) -> str | None:
    """Return the user part of a JID without device suffix, e.g. ``5511999:3@s.whatsapp.net`` -> ``5511999``."""
    if not jid:
        return None
    return jid.split("@", 1)[0].split(":", 1)[0]


def is_direct_jid(jid: str | None) -> bool:
    return jid is not None and jid.endswith(USER_JID_SUFFIX)


def is_group_jid(jid: str | None) -> bool:
    return jid is not None and jid.endswith("@g.us")


def is_broadcast_jid(jid: str | None) -> bool:
    return jid is not None and jid.endswith("@broadcast")


def is_newsletter_jid(jid: str | None) -> bool:
    return jid is not None and _NEWSLETTER.search(jid) is not None


def should_ignore_jid(jid: str | None) -> bool:
    """True for anything that is not a one-to-one chat."""
    if not jid:
        return True
    return is_group_jid(jid) or is_broadcast_jid(jid) or is_newsletter_jid(jid) or not is_direct_jid(jid)


def extract_text_content(content: Mapping[str, Any] | None) -> str | None:
    """Pull plain text out of a message content mapping.

    Looks at ``text``, ``conversation`` and ``extendedTextMessage.text`` in that order.
    """
    if not content:
        return None
    text = content.get("text")
    if isinstance(text, str):
        return text
    conversation = content.get("conversation")
    if isinstance(conversation, str):
        return conversation
    extended = content.get("extendedTextMessage")
    if isinstance(extended, Mapping):
        ext_text = extended.get("text")
        if isinstance(ext_text, str) and ext_text:
            return ext_text
    return None


def sanitize_text(text: str | None, limit: int = MAX_LOGGED_TEXT) -> str:
    """Collapse whitespace to a single line and cap the length for logging."""
    if not text:
        return ""
    one_line = _WHITESPACE.sub(" ", text).strip()
    if len(one_line) > limit:
        return f"{one_line[:limit]}…"
    return one_line


def now_ms() -> int:
    return int(time.time() * 1000)


def render_qr_data_url(data: str) -> str:
    """Render ``data`` as a PNG QR image and return it as a ``data:`` URL."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")
