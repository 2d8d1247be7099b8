from __future__ import annotations

import base64

import pytest

from src.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor, encode_next_cursor


def test_cursor_roundtrip() -> None:
    c = Cursor(created_at=123.456, item_id="run_abc")
    decoded = decode_cursor(encode_cursor(c))
    assert decoded.created_at == pytest.approx(c.created_at)
    assert decoded.item_id == c.item_id
    assert decoded.as_tuple() == (pytest.approx(123.456), "run_abc")


@pytest.mark.parametrize(
    "value",
    [
        "",
        "not-a-valid-cursor",
        base64.urlsafe_b64encode(b'{"created_at": "NaN", "id": "run_x"}').decode("ascii"),
        base64.urlsafe_b64encode(b'{"created_at": 1.0, "id": ""}').decode("ascii"),
    ],
)
def test_cursor_invalid(value: str) -> None:
    with pytest.raises(CursorError):
        decode_cursor(value)


def test_encode_next_cursor() -> None:
    assert encode_next_cursor(None) is None
    token = encode_next_cursor((10.5, "run_1"))
    assert token is not None
    assert decode_cursor(token) == Cursor(created_at=10.5, item_id="run_1")
