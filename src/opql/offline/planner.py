"""Offline query planning.

A plan summarises what the local replica can answer: the structured filters
found among the top-level AND conjuncts, and the constructs it cannot honour
(joins, aggregation). Unsupported constructs are reported, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from opql.filters import ComparisonExpression, FieldRef, conjuncts, walk
from opql.parser import parse
from opql.schema import BUILTIN_FIELDS, FIELD_ALIASES
from opql.statements import (
    AggregateStatement,
    ExplainStatement,
    Statement,
    UpdateStatement,
)
from opql.values import as_list, scalar, text_terms

# Entries that change which rows a query returns; the rest only change its shape.
_DEGRADING_PREFIXES = ("join:", "statement:aggregate", "aggregate:")


@dataclass
class OfflineFilters:
    project_id: str | None = None
    statuses: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    types: list[str] = field(default_factory=list)
    terms: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "statuses": self.statuses,
            "labels": self.labels,
            "assignees": self.assignees,
            "types": self.types,
            "terms": self.terms,
        }


@dataclass
class OfflineQueryPlan:
    statement: Statement
    filters: OfflineFilters = field(default_factory=OfflineFilters)
    unsupported: list[str] = field(default_factory=list)

    @property
    def supported(self) -> bool:
        return not any(entry.startswith(_DEGRADING_PREFIXES) for entry in self.unsupported)

    def to_dict(self) -> dict[str, Any]:
        return {
            "statement": self.statement.kind,
            "supported": self.supported,
            "filters": self.filters.to_dict(),
            "unsupported": list(self.unsupported),
        }


def _canonical(name: str) -> str:
    key = name.casefold()
    return BUILTIN_FIELDS.get(key) or FIELD_ALIASES.get(key, key)


def _add(target: list[str], values: list[str]) -> None:
    for value in values:
        if value not in target:
            target.append(value)


def _literals(value: Any) -> list[str]:
    return [str(scalar(v)) for v in as_list(value) if v is not None and not isinstance(v, FieldRef)]


def _unsupported(statement: Statement) -> list[str]:
    out = [f"join:{join.alias}" for join in statement.joins]
    if isinstance(statement, AggregateStatement):
        out.append("statement:aggregate")
        if statement.group_by:
            out.append("aggregate:group_by")
        if statement.having is not None:
            out.append("aggregate:having")
    if isinstance(statement, UpdateStatement):
        out.append("statement:update")
    return out


def _filters(statement: Statement) -> OfflineFilters:
    filters = OfflineFilters()
    join_aliases = {join.alias for join in statement.joins}
    base = set(statement.qualifiers)
    for expr in conjuncts(statement.where):
        if not isinstance(expr, ComparisonExpression):
            continue
        head, dot, tail = expr.field.partition(".")
        if dot and head in join_aliases:
            continue
        name = _canonical(tail if dot and head in base else expr.field)
        if expr.op not in ("=", "IN"):
            continue
        values = _literals(expr.value)
        if name == "project_id" and values:
            filters.project_id = values[0]
        elif name == "status":
            _add(filters.statuses, [v.casefold() for v in values])
        elif name == "labels":
            _add(filters.labels, [v.casefold() for v in values])
        elif name == "assignees":
            _add(filters.assignees, values)
        elif name == "type":
            _add(filters.types, [v.casefold() for v in values])
    # terms anywhere in the predicate, OR branches included, guide ranking
    for expr in walk(statement.where):
        if isinstance(expr, ComparisonExpression) and expr.op in ("CONTAINS", "MATCH"):
            _add(filters.terms, text_terms(expr.value))
    return filters


def plan_offline_query(text: str) -> OfflineQueryPlan:
    """Plan ``text`` for offline execution.

    Raises:
        OpqlSyntaxError: If ``text`` does not parse.
    """
    statement = parse(text)
    if isinstance(statement, ExplainStatement) and statement.statement is not None:
        statement = statement.statement
    return OfflineQueryPlan(
        statement=statement,
        filters=_filters(statement),
        unsupported=_unsupported(statement),
    )
