"""Encoding for the sensitive prospect and member fields (dni, address, notes).

This is an obfuscation placeholder, not encryption: anyone with database access
can reverse it. It exists so that every read and write of those fields goes
through one wrapper, which is where a real cipher would be plugged in.
"""

from __future__ import annotations

import base64
import binascii
import logging

from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator


logger = logging.getLogger("clubcrm.crm.sensitive")

ENCODED_PREFIX = "encrypted_"
DECODE_FAILED_MARKER = "[decoding failed]"


def encode_sensitive(plain: str | None) -> str:
    if not plain:
        return ""
    return ENCODED_PREFIX + base64.b64encode(plain.encode("utf-8")).decode("ascii")


def decode_sensitive(encoded: str | None) -> str:
    """Reverse :func:`encode_sensitive`. Never raises.

    Values without the prefix are legacy plain text and are returned unchanged.
    A prefixed value with a corrupt payload yields :data:`DECODE_FAILED_MARKER`.
    """
    if not encoded:
        return ""
    if not encoded.startswith(ENCODED_PREFIX):
        return encoded
    payload = encoded[len(ENCODED_PREFIX):]
    try:
        return base64.b64decode(payload, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        logger.warning("sensitive.decode_failed", extra={"error": f"payload length {len(payload)}"})
        return DECODE_FAILED_MARKER


class SensitiveText(TypeDecorator[str]):
    """Text column that is encoded on bind and decoded on load."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: str | None, dialect) -> str | None:  # type: ignore[no-untyped-def]
        if value is None:
            return None
        return encode_sensitive(value)

    def process_result_value(self, value: str | None, dialect) -> str | None:  # type: ignore[no-untyped-def]
        if value is None:
            return None
        return decode_sensitive(value)
