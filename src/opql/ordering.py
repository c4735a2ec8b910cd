"""Stable ordering, paging and ``offset:<n>`` cursors."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from opql.errors import InvalidCursorError
from opql.statements import OrderBy
from opql.values import sort_key

T = TypeVar("T")

CURSOR_PREFIX = "offset:"
DEFAULT_ORDER = (OrderBy("score", descending=True),)


def sort_rows(
    rows: Sequence[T],
    order_by: Sequence[OrderBy],
    value_of: Callable[[T, str], Any],
    tie_break: Callable[[T], str],
) -> list[T]:
    """Sort ``rows`` by ``order_by`` with nulls last, ties broken by ``tie_break``.

    Python's sort is stable, so sorting by the tie-break first and then by
    each key from last to first yields a multi-key order.
    """
    ordered = sorted(rows, key=tie_break)
    for order in reversed(order_by):
        def key(row: T, field: str = order.field, desc: bool = order.descending) -> tuple[int, Any]:
            value = value_of(row, field)
            if value is None or value == []:
                return (0, (0, 0)) if desc else (1, (0, 0))
            return (1, sort_key(value)) if desc else (0, sort_key(value))
        ordered.sort(key=key, reverse=order.descending)
    return ordered


def encode_cursor(offset: int) -> str:
    return f"{CURSOR_PREFIX}{offset}"


def decode_cursor(cursor: str | None) -> int:
    """Return the offset carried by ``cursor`` (0 for none).

    Raises:
        InvalidCursorError: If the cursor is not ``offset:<n>`` with ``n >= 0``.
    """
    if not cursor:
        return 0
    if not cursor.startswith(CURSOR_PREFIX):
        raise InvalidCursorError(cursor)
    raw = cursor[len(CURSOR_PREFIX):]
    if not raw.isdigit():
        raise InvalidCursorError(cursor)
    return int(raw)


def paginate(rows: Sequence[T], offset: int, limit: int) -> tuple[list[T], str | None]:
    """Slice one page; the cursor is present only when more rows remain."""
    page = list(rows[offset:offset + limit])
    end = offset + len(page)
    next_cursor = encode_cursor(end) if end < len(rows) else None
    return page, next_cursor
