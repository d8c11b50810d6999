from __future__ import annotations

import base64
import json
import math
from dataclasses import dataclass


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class Cursor:
    """Position just past the last item of a newest-first page."""

    created_at: float
    item_id: str

    def as_key(self) -> tuple[float, str]:
        return (self.created_at, self.item_id)

    @classmethod
    def from_key(cls, key: tuple[float, str]) -> Cursor:
        created_at, item_id = key
        return cls(created_at=float(created_at), item_id=str(item_id))


def encode_cursor(cursor: Cursor) -> str:
    raw = json.dumps({"t": cursor.created_at, "id": cursor.item_id}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(value: str) -> Cursor:
    s = (value or "").strip()
    if not s:
        raise CursorError("Empty cursor")

    pad = "=" * ((4 - (len(s) % 4)) % 4)
    try:
        obj = json.loads(base64.urlsafe_b64decode((s + pad).encode("ascii")).decode("utf-8"))
        created_at = float(obj["t"])
        item_id = str(obj["id"])
    except (ValueError, TypeError, KeyError, UnicodeError) as e:
        raise CursorError("Invalid cursor") from e

    if not math.isfinite(created_at) or not item_id:
        raise CursorError("Invalid cursor")
    return Cursor(created_at=created_at, item_id=item_id)
