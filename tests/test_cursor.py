from __future__ import annotations

import pytest

from planloop.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor


def test_cursor_roundtrip() -> None:
    c = Cursor(created_at=123.456, seq=42)
    decoded = decode_cursor(encode_cursor(c))
    assert decoded.created_at == pytest.approx(c.created_at)
    assert decoded.seq == 42


@pytest.mark.parametrize("value", ["", "not-a-valid-cursor"])
def test_cursor_invalid(value: str) -> None:
    with pytest.raises(CursorError):
        decode_cursor(value)
