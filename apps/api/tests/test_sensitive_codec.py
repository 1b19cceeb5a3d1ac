from __future__ import annotations

import base64

from clubcrm.crm.sensitive import DECODE_FAILED_MARKER, ENCODED_PREFIX, decode_sensitive, encode_sensitive


def test_encode_marks_and_hides_plain_text() -> None:
    encoded = encode_sensitive("DNI 30.111.222")
    assert encoded.startswith(ENCODED_PREFIX)
    assert "30.111.222" not in encoded
    assert decode_sensitive(encoded) == "DNI 30.111.222"


def test_unicode_survives_round_trip() -> None:
    assert decode_sensitive(encode_sensitive("Av. Córdoba 1234, 3º B")) == "Av. Córdoba 1234, 3º B"


def test_empty_values_stay_empty() -> None:
    assert encode_sensitive("") == ""
    assert encode_sensitive(None) == ""
    assert decode_sensitive("") == ""
    assert decode_sensitive(None) == ""


def test_legacy_plain_text_is_returned_unchanged() -> None:
    assert decode_sensitive("Calle 12 nro 45") == "Calle 12 nro 45"


def test_corrupt_payload_yields_marker() -> None:
    assert decode_sensitive(ENCODED_PREFIX + "%%%not-base64%%%") == DECODE_FAILED_MARKER
    invalid_utf8 = base64.b64encode(b"\xff\xfe\xfa").decode("ascii")
    assert decode_sensitive(ENCODED_PREFIX + invalid_utf8) == DECODE_FAILED_MARKER
