"""Incremental and page cursor helpers.

Cursors are persisted as text so heterogeneous shapes fit one column: the
incremental cursor is an epoch-seconds `created` watermark, the page cursor is
either a bare item id (`starting_after`) or a small JSON document for
parent-scoped listings.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any


def parse_watermark(value: str | int | None) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def format_watermark(value: int | None) -> str | None:
    if value is None:
        return None
    return str(int(value))


def max_cursor(*values: str | None) -> str | None:
    """Largest watermark among `values`, ignoring blanks and unparseable text."""
    parsed = [watermark for watermark in (parse_watermark(value) for value in values) if watermark is not None]
    if not parsed:
        return None
    return format_watermark(max(parsed))


def max_created(items: Iterable[dict[str, Any]]) -> int | None:
    created_values = [parse_watermark(item.get("created")) for item in items]
    present = [value for value in created_values if value is not None]
    return max(present) if present else None


@dataclass(frozen=True)
class ParentPageCursor:
    parent_id: str
    after: str | None = None

    def encode(self) -> str:
        return json.dumps({"parent": self.parent_id, "after": self.after}, separators=(",", ":"))

    @classmethod
    def decode(cls, raw: str | None) -> ParentPageCursor | None:
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(payload, dict) or not isinstance(payload.get("parent"), str):
            return None
        after = payload.get("after")
        return cls(parent_id=payload["parent"], after=after if isinstance(after, str) else None)
