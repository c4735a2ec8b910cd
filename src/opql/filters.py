"""Predicate expression types for OPQL WHERE, ON and HAVING clauses."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

NULL_EQ_ERROR = "Use .is_null() instead of == None in OPQL predicate expressions."
NULL_NE_ERROR = "Use .is_not_null() instead of != None in OPQL predicate expressions."

# Canonical comparison operators produced by the parser.
COMPARISON_OPS = frozenset(
    {
        "=", "!=", "<", "<=", ">", ">=", "~", "!~",
        "IN", "NOT IN", "BETWEEN", "NOT BETWEEN",
        "LIKE", "NOT LIKE", "MATCH", "NOT MATCH", "CONTAINS", "NOT CONTAINS",
        "IS NULL", "IS NOT NULL", "IS EMPTY", "IS NOT EMPTY",
        "BEFORE", "AFTER", "ON", "DURING",
    }
)
NULLARY_OPS = frozenset({"IS NULL", "IS NOT NULL", "IS EMPTY", "IS NOT EMPTY"})
LIST_OPS = frozenset({"IN", "NOT IN"})

HISTORY_VERBS = ("WAS", "WAS NOT", "CHANGED")


class _Absent(Enum):
    ABSENT = "absent"

    def __repr__(self) -> str:
        return "ABSENT"


# A history clause that was not written; ``None`` is an explicit NULL.
ABSENT = _Absent.ABSENT


@dataclass(frozen=True)
class FieldRef:
    """Reference to a field of a joined (or the base) row, e.g. ``p.id``."""

    alias: str | None
    field: str

    def __str__(self) -> str:
        return f"{self.alias}.{self.field}" if self.alias else self.field


@dataclass(frozen=True)
class FunctionCall:
    """A value function such as ``me()`` or ``startOfWeek()``."""

    name: str
    args: tuple[Any, ...] = ()

    def __str__(self) -> str:
        return f"{self.name}({', '.join(str(a) for a in self.args)})"


@dataclass(frozen=True)
class TimeWindow:
    """A closed ``[start, end]`` window; ``None`` leaves that side unbounded."""

    start: Any = None
    end: Any = None


class FilterExpression:
    """Base class for predicate expressions."""

    def __and__(self, other: FilterExpression) -> LogicalExpression:
        return LogicalExpression(op="AND", children=(self, other))

    def __or__(self, other: FilterExpression) -> LogicalExpression:
        return LogicalExpression(op="OR", children=(self, other))

    def __invert__(self) -> LogicalExpression:
        return LogicalExpression(op="NOT", children=(self,))


@dataclass(frozen=True)
class ComparisonExpression(FilterExpression):
    """A structural comparison between a field and a value.

    ``value`` is a tuple for IN-style operators, a ``(low, high)`` pair for
    BETWEEN, a :class:`TimeWindow` for DURING and ``None`` for IS NULL/EMPTY.
    """

    field: str
    op: str
    value: Any = None


@dataclass(frozen=True)
class LogicalExpression(FilterExpression):
    """A logical combination of predicate expressions."""

    op: str  # "AND", "OR", "NOT"
    children: tuple[FilterExpression, ...] = ()


@dataclass(frozen=True)
class HistoryExpression(FilterExpression):
    """A history predicate evaluated against a field's segment list.

    ``op`` qualifies the WAS value: ``"="`` (single value), ``"IN"`` (tuple),
    ``"IS NULL"`` or ``"IS EMPTY"``. ``from_value``/``to_value``/``by`` are
    :data:`ABSENT` when the clause is not written and ``None`` for ``NULL``.
    """

    field: str
    verb: str  # "WAS", "WAS NOT", "CHANGED"
    value: Any = None
    op: str = "="
    from_value: Any = ABSENT
    to_value: Any = ABSENT
    by: Any = ABSENT
    window: TimeWindow | None = None


def conjuncts(expr: FilterExpression | None) -> list[FilterExpression]:
    """Flatten the top-level AND chain of ``expr``."""
    if expr is None:
        return []
    if isinstance(expr, LogicalExpression) and expr.op == "AND":
        out: list[FilterExpression] = []
        for child in expr.children:
            out.extend(conjuncts(child))
        return out
    return [expr]


def walk(expr: FilterExpression | None) -> Iterator[FilterExpression]:
    """Yield every node of ``expr`` depth-first."""
    if expr is None:
        return
    yield expr
    if isinstance(expr, LogicalExpression):
        for child in expr.children:
            yield from walk(child)


def combine(op: str, exprs: list[FilterExpression]) -> FilterExpression | None:
    """Join ``exprs`` under ``op``; a single expression is returned unchanged."""
    if not exprs:
        return None
    if len(exprs) == 1:
        return exprs[0]
    return LogicalExpression(op=op, children=tuple(exprs))


class FieldProxy:
    """Proxy that generates FilterExpression from field operations.

    Usage: ``FieldProxy("status") == "Done"`` or
    ``FieldProxy("status").changed(to="Review", by="user:ben")``.
    """

    def __init__(self, field: str) -> None:
        self._field = field

    def __eq__(self, other: object) -> ComparisonExpression:  # type: ignore[override]
        if other is None:
            raise TypeError(NULL_EQ_ERROR)
        return ComparisonExpression(self._field, "=", other)

    def __ne__(self, other: object) -> ComparisonExpression:  # type: ignore[override]
        if other is None:
            raise TypeError(NULL_NE_ERROR)
        return ComparisonExpression(self._field, "!=", other)

    def __gt__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field, ">", other)

    def __ge__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field, ">=", other)

    def __lt__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field, "<", other)

    def __le__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field, "<=", other)

    def in_(self, values: list[Any] | tuple[Any, ...]) -> ComparisonExpression:
        return ComparisonExpression(self._field, "IN", tuple(values))

    def not_in(self, values: list[Any] | tuple[Any, ...]) -> ComparisonExpression:
        return ComparisonExpression(self._field, "NOT IN", tuple(values))

    def contains(self, text: str) -> ComparisonExpression:
        return ComparisonExpression(self._field, "CONTAINS", text)

    def matches(self, text: str) -> ComparisonExpression:
        return ComparisonExpression(self._field, "MATCH", text)

    def like(self, pattern: str) -> ComparisonExpression:
        return ComparisonExpression(self._field, "LIKE", pattern)

    def between(self, low: Any, high: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field, "BETWEEN", (low, high))

    def is_null(self) -> ComparisonExpression:
        return ComparisonExpression(self._field, "IS NULL")

    def is_not_null(self) -> ComparisonExpression:
        return ComparisonExpression(self._field, "IS NOT NULL")

    def is_empty(self) -> ComparisonExpression:
        return ComparisonExpression(self._field, "IS EMPTY")

    def during(self, start: Any, end: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field, "DURING", TimeWindow(start, end))

    def was(self, value: Any, *, during: tuple[Any, Any] | None = None) -> HistoryExpression:
        return HistoryExpression(self._field, "WAS", value, window=_window(during))

    def was_not(self, value: Any, *, during: tuple[Any, Any] | None = None) -> HistoryExpression:
        return HistoryExpression(self._field, "WAS NOT", value, window=_window(during))

    def changed(
        self,
        *,
        from_: Any = ABSENT,
        to: Any = ABSENT,
        by: Any = ABSENT,
        during: tuple[Any, Any] | None = None,
    ) -> HistoryExpression:
        return HistoryExpression(
            self._field, "CHANGED", from_value=from_, to_value=to, by=by, window=_window(during)
        )


def _window(during: tuple[Any, Any] | None) -> TimeWindow | None:
    if during is None:
        return None
    return TimeWindow(during[0], during[1])
