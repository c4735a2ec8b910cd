"""Parsed OPQL statements: FIND, COUNT, AGGREGATE, UPDATE and EXPLAIN."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, ClassVar

from opql.filters import ABSENT, FilterExpression

STATEMENT_KEYWORDS = ("FIND", "COUNT", "AGGREGATE", "UPDATE", "EXPLAIN")
AGGREGATE_FUNCTIONS = ("COUNT", "SUM", "AVG", "MIN", "MAX")
JOIN_KINDS = ("INNER", "LEFT", "RIGHT", "FULL")


def _written(items: list[tuple[str, Any]]) -> dict[str, Any]:
    return {k: v for k, v in items if v is not ABSENT}


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class JoinClause:
    """``[kind] JOIN entity [AS alias] ON condition``."""

    kind: str
    entity: str
    alias: str
    condition: FilterExpression | None = None


@dataclass(frozen=True)
class Aggregate:
    """An aggregate call such as ``COUNT(*)`` or ``SUM(estimate) AS points``."""

    function: str
    field: str | None
    alias: str


@dataclass(frozen=True)
class Assignment:
    field: str
    value: Any


@dataclass(frozen=True)
class Statement:
    """Fields shared by every executable statement.

    ``target`` is the word after the statement keyword (``ITEMS``, ``tasks``,
    ``*``); ``source`` is the optional ``FROM`` entity which, when present,
    decides the entity types searched.
    """

    kind: ClassVar[str] = ""

    target: str = "ITEMS"
    source: str | None = None
    alias: str | None = None
    joins: tuple[JoinClause, ...] = ()
    where: FilterExpression | None = None
    order_by: tuple[OrderBy, ...] = ()
    limit: int | None = None
    offset: int | None = None

    @property
    def entity(self) -> str:
        return self.source or self.target

    @property
    def qualifiers(self) -> tuple[str, ...]:
        """Names that refer to the base row when used as ``name.field``."""
        names = [self.target, self.source, self.alias]
        return tuple(n for n in names if n and n != "*")

    def to_dict(self) -> dict[str, Any]:
        """Plain-data form of the statement tree, tagged with ``kind``."""
        return {"kind": self.kind, **dataclasses.asdict(self, dict_factory=_written)}


@dataclass(frozen=True)
class FindStatement(Statement):
    kind: ClassVar[str] = "FIND"


@dataclass(frozen=True)
class CountStatement(Statement):
    kind: ClassVar[str] = "COUNT"


@dataclass(frozen=True)
class AggregateStatement(Statement):
    kind: ClassVar[str] = "AGGREGATE"

    aggregates: tuple[Aggregate, ...] = ()
    group_by: tuple[str, ...] = ()
    having: FilterExpression | None = None


@dataclass(frozen=True)
class UpdateStatement(Statement):
    kind: ClassVar[str] = "UPDATE"

    assignments: tuple[Assignment, ...] = ()


@dataclass(frozen=True)
class ExplainStatement(Statement):
    """``EXPLAIN [VERBOSE] <statement>``; executes the wrapped statement."""

    kind: ClassVar[str] = "EXPLAIN"

    statement: Statement | None = None
    verbose: bool = False

    @property
    def entity(self) -> str:
        return self.statement.entity if self.statement is not None else self.target

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["statement"] = self.statement.to_dict() if self.statement is not None else None
        return data
