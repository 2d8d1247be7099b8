from __future__ import annotations

import base64
import json
import math
from dataclasses import dataclass


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class Cursor:
    """Keyset position in a `(created_at DESC, id DESC)` listing."""

    created_at: float
    item_id: str

    def as_tuple(self) -> tuple[float, str]:
        return self.created_at, self.item_id


def encode_cursor(cursor: Cursor) -> str:
    raw = json.dumps({"created_at": cursor.created_at, "id": cursor.item_id}, separators=(",", ":")).encode(
        "utf-8"
    )
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(value: str) -> Cursor:
    s = (value or "").strip()
    if not s:
        raise CursorError("Empty cursor")

    # Add padding for base64 decoding.
    pad = "=" * ((4 - (len(s) % 4)) % 4)
    try:
        raw = base64.urlsafe_b64decode((s + pad).encode("ascii")).decode("utf-8")
        obj = json.loads(raw)
        cursor = Cursor(created_at=float(obj["created_at"]), item_id=str(obj["id"]))
    except Exception as e:
        raise CursorError("Invalid cursor") from e
    if not math.isfinite(cursor.created_at) or not cursor.item_id:
        raise CursorError("Invalid cursor")
    return cursor


def encode_next_cursor(next_cursor: tuple[float, str] | None) -> str | None:
    """Store pages return the last `(created_at, id)` pair; the API hands out an opaque token."""
    if next_cursor is None:
        return None
    created_at, item_id = next_cursor
    return encode_cursor(Cursor(created_at=float(created_at), item_id=str(item_id)))
