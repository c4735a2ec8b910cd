"""Predicate evaluation over permission-filtered rows.

:func:`select_rows` is the single filtering path used by the online engine
and the offline index: workspace and permission filtering, masking, joins,
and WHERE evaluation (structural and history predicates).
"""

from __future__ import annotations

import dataclasses
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

from opql.errors import UnsupportedStatementError
from opql.filters import (
    ComparisonExpression,
    FieldRef,
    FilterExpression,
    FunctionCall,
    HistoryExpression,
    LogicalExpression,
    TimeWindow,
)
from opql.history import HistoryMatch, build_segments, evaluate
from opql.permissions import VisibleRow, visible_rows
from opql.schema import BoundStatement, FieldRegistry
from opql.statements import Statement, UpdateStatement
from opql.types import Principal, RepositoryRow
from opql.values import (
    as_list,
    call_function,
    compare,
    display_text,
    is_empty,
    like_pattern,
    text_terms,
    text_tokens,
    to_datetime,
    upper_bound,
    values_equal,
)

logger = structlog.get_logger(__name__)

SEARCHABLE_FIELDS = ("title", "snippet", "name", "body", "status", "labels", "key")


@dataclass(frozen=True)
class HistoryScan:
    """Explain record for one history predicate evaluated against one row."""

    entity_id: str
    field: str
    verb: str
    matched: bool
    segments: tuple[Any, ...] = ()
    transitions: tuple[Any, ...] = ()
    masked: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "field": self.field,
            "verb": self.verb,
            "matched": self.matched,
            "masked": self.masked,
            "segments": [s.model_dump(mode="json") for s in self.segments],
            "transitions": [t.to_dict() for t in self.transitions],
        }


@dataclass
class RowContext:
    base: VisibleRow
    joined: dict[str, VisibleRow | None] = field(default_factory=dict)


@dataclass
class SelectedRow:
    """A base row that passed WHERE, with the joined rows it matched through."""

    visible: VisibleRow
    joined: dict[str, VisibleRow | None] = field(default_factory=dict)

    @property
    def entity_id(self) -> str:
        return self.visible.entity_id

    def values(self) -> dict[str, Any]:
        values = dict(self.visible.row.values)
        for alias, joined in self.joined.items():
            values[alias] = dict(joined.row.values) if joined is not None else None
        return values


# --- function resolution ---


def resolve_functions(statement: Statement, principal: Principal, now: datetime) -> Statement:
    """Replace ``me()``/``today()``-style calls with concrete values."""

    def value(v: Any) -> Any:
        if isinstance(v, FunctionCall):
            return call_function(v.name, principal.principal_id, now)
        if isinstance(v, TimeWindow):
            return TimeWindow(value(v.start), value(v.end))
        if isinstance(v, tuple):
            return tuple(value(x) for x in v)
        return v

    def predicate(expr: FilterExpression | None) -> FilterExpression | None:
        if expr is None:
            return None
        if isinstance(expr, LogicalExpression):
            return LogicalExpression(expr.op, tuple(predicate(c) for c in expr.children))
        if isinstance(expr, ComparisonExpression):
            return ComparisonExpression(expr.field, expr.op, value(expr.value))
        if isinstance(expr, HistoryExpression):
            return dataclasses.replace(
                expr,
                value=value(expr.value),
                from_value=value(expr.from_value),
                to_value=value(expr.to_value),
                by=value(expr.by),
                window=value(expr.window),
            )
        return expr

    changes: dict[str, Any] = {
        "where": predicate(statement.where),
        "joins": tuple(dataclasses.replace(j, condition=predicate(j.condition)) for j in statement.joins),
    }
    if isinstance(statement, UpdateStatement):
        changes["assignments"] = tuple(
            dataclasses.replace(a, value=value(a.value)) for a in statement.assignments
        )
    return dataclasses.replace(statement, **changes)


# --- operators ---


def _any(actual: Any, test: Any) -> bool:
    items = as_list(actual)
    return any(test(item) for item in items) if items else test(None)


def _text_contains(actual: Any, expected: Any) -> bool:
    terms = text_terms(expected)
    if not terms:
        return False
    haystacks = [display_text(item).casefold() for item in as_list(actual)]
    return any(term in hay for hay in haystacks for term in terms)


def _text_match(actual: Any, expected: Any) -> bool:
    wanted = text_tokens(display_text(expected))
    if not wanted:
        return False
    tokens = text_tokens(display_text(actual))
    return all(any(tok.startswith(w) for tok in tokens) for w in wanted)


def apply_operator(op: str, actual: Any, expected: Any) -> bool:
    """Evaluate one structural comparison. List-valued fields match element-wise."""
    if op == "=":
        if expected is None:
            return is_empty(actual)
        return _any(actual, lambda v: values_equal(v, expected))
    if op == "!=":
        return not apply_operator("=", actual, expected)
    if op in ("<", "<=", ">", ">="):
        def ordered(v: Any) -> bool:
            result = compare(v, expected)
            if result is None:
                return False
            return {"<": result < 0, "<=": result <= 0, ">": result > 0, ">=": result >= 0}[op]
        return _any(actual, ordered)
    if op == "IN":
        options = as_list(expected)
        return _any(actual, lambda v: any(values_equal(v, o) for o in options))
    if op == "NOT IN":
        return not apply_operator("IN", actual, expected)
    if op == "IS NULL":
        return actual is None
    if op == "IS NOT NULL":
        return actual is not None
    if op == "IS EMPTY":
        return is_empty(actual)
    if op == "IS NOT EMPTY":
        return not is_empty(actual)
    if op == "BETWEEN":
        low, high = expected
        return _any(actual, lambda v: _between(v, low, high))
    if op == "NOT BETWEEN":
        return not apply_operator("BETWEEN", actual, expected)
    if op == "LIKE":
        pattern = like_pattern(str(expected))
        return any(pattern.match(display_text(v)) for v in as_list(actual))
    if op == "NOT LIKE":
        return not apply_operator("LIKE", actual, expected)
    if op == "~":
        regex = re.compile(str(expected), re.IGNORECASE)
        return any(regex.search(display_text(v)) for v in as_list(actual))
    if op == "!~":
        return not apply_operator("~", actual, expected)
    if op == "CONTAINS":
        return _text_contains(actual, expected)
    if op == "NOT CONTAINS":
        return not _text_contains(actual, expected)
    if op == "MATCH":
        return _text_match(actual, expected)
    if op == "NOT MATCH":
        return not _text_match(actual, expected)
    if op == "BEFORE":
        bound = to_datetime(expected)
        return _any(actual, lambda v: _moment_cmp(v, bound, lambda m, b: m < b))
    if op == "AFTER":
        bound = upper_bound(expected)
        return _any(actual, lambda v: _moment_cmp(v, bound, lambda m, b: m > b))
    if op == "ON":
        return _any(actual, lambda v: _between(v, expected, expected))
    if op == "DURING":
        return _any(actual, lambda v: _between(v, expected.start, expected.end))
    raise UnsupportedStatementError(f"Unsupported operator '{op}'")


def _moment_cmp(value: Any, bound: datetime | None, test: Any) -> bool:
    moment = to_datetime(value)
    return moment is not None and bound is not None and test(moment, bound)


def _between(value: Any, low: Any, high: Any) -> bool:
    if value is None:
        return False
    moment = to_datetime(value)
    low_dt, high_dt = to_datetime(low), upper_bound(high)
    if moment is not None and (low_dt is not None or high_dt is not None):
        return (low_dt is None or moment >= low_dt) and (high_dt is None or moment <= high_dt)
    lower = compare(value, low) if low is not None else 0
    upper = compare(value, high) if high is not None else 0
    return lower is not None and upper is not None and lower >= 0 and upper <= 0


# --- evaluator ---


class PredicateEvaluator:
    """Evaluates bound predicates against row contexts, recording history scans."""

    def __init__(self, registry: FieldRegistry, *, now: datetime, explain: bool = False) -> None:
        self.registry = registry
        self.now = now
        self.explain = explain
        self.scans: list[HistoryScan] = []

    def lookup(self, ctx: RowContext, name: str) -> tuple[VisibleRow | None, str]:
        head, dot, tail = name.partition(".")
        if dot and head in ctx.joined:
            return ctx.joined[head], tail
        return ctx.base, name

    def field_value(self, ctx: RowContext, name: str) -> Any:
        visible, field_name = self.lookup(ctx, name)
        if visible is None:
            return None
        row = visible.row
        if field_name == "id":
            return row.entity_id
        if field_name == "type":
            return row.entity_type
        if field_name == "workspace_id":
            return row.workspace_id
        if field_name == "score":
            return row.score
        if field_name == "searchable":
            return " ".join(
                display_text(row.values.get(f)) for f in SEARCHABLE_FIELDS if row.values.get(f)
            )
        return row.values.get(field_name)

    def resolve(self, ctx: RowContext, value: Any) -> Any:
        if isinstance(value, FieldRef):
            name = f"{value.alias}.{value.field}" if value.alias else value.field
            return self.field_value(ctx, name)
        return value

    def matches(self, expr: FilterExpression | None, ctx: RowContext) -> bool:
        if expr is None:
            return True
        if isinstance(expr, LogicalExpression):
            if expr.op == "AND":
                return all(self.matches(c, ctx) for c in expr.children)
            if expr.op == "OR":
                return any(self.matches(c, ctx) for c in expr.children)
            return not self.matches(expr.children[0], ctx)
        if isinstance(expr, ComparisonExpression):
            return apply_operator(
                expr.op, self.field_value(ctx, expr.field), self.resolve(ctx, expr.value)
            )
        if isinstance(expr, HistoryExpression):
            return self.history(expr, ctx).matched
        raise UnsupportedStatementError(f"Unsupported predicate {expr!r}")

    def history(self, expr: HistoryExpression, ctx: RowContext) -> HistoryMatch:
        row = ctx.base
        if expr.field in row.masked_fields:
            match = HistoryMatch(field=expr.field, verb=expr.verb)
            self._record(row, match, masked=True)
            return match
        segments = build_segments(
            expr.field,
            row.row.history,
            current=row.row.values.get(expr.field),
            aliases=self.registry.aliases_for(expr.field),
        )
        match = evaluate(expr, segments, now=self.now)
        self._record(row, match)
        return match

    def _record(self, row: VisibleRow, match: HistoryMatch, masked: bool = False) -> None:
        if not self.explain:
            return
        self.scans.append(
            HistoryScan(
                entity_id=row.entity_id,
                field=match.field,
                verb=match.verb,
                matched=match.matched,
                segments=match.segments,
                transitions=match.transitions,
                masked=masked,
            )
        )


def select_rows(
    rows: list[RepositoryRow],
    bound: BoundStatement,
    principal: Principal,
    *,
    registry: FieldRegistry,
    workspace_id: str | None,
    placeholder: str,
    now: datetime,
    explain: bool = False,
) -> tuple[list[SelectedRow], list[HistoryScan]]:
    """Return the rows of ``bound`` visible to ``principal`` that satisfy WHERE."""
    statement = resolve_functions(bound.statement, principal, now)
    for join in statement.joins:
        if join.kind not in ("INNER", "LEFT"):
            raise UnsupportedStatementError(f"{join.kind} JOIN is not supported")
    aliases = registry.alias_map()
    base_rows = visible_rows(
        rows,
        principal,
        workspace_id=workspace_id,
        entity_types=bound.entity_types,
        placeholder=placeholder,
        aliases=aliases,
    )
    join_rows = {
        join.alias: visible_rows(
            rows,
            principal,
            workspace_id=workspace_id,
            entity_types=bound.join_types[join.alias],
            placeholder=placeholder,
            aliases=aliases,
        )
        for join in statement.joins
    }

    evaluator = PredicateEvaluator(registry, now=now, explain=explain)
    selected: list[SelectedRow] = []
    for base in base_rows:
        for joined in _join_combinations(evaluator, statement, base, join_rows):
            if evaluator.matches(statement.where, RowContext(base, joined)):
                selected.append(SelectedRow(base, joined))
                break

    logger.debug(
        "opql_rows_selected",
        candidates=len(base_rows),
        selected=len(selected),
        joins=len(statement.joins),
    )
    return selected, evaluator.scans


def _join_combinations(
    evaluator: PredicateEvaluator,
    statement: Statement,
    base: VisibleRow,
    join_rows: dict[str, list[VisibleRow]],
) -> list[dict[str, VisibleRow | None]]:
    """Candidate alias bindings for ``base``, one joined row per alias."""
    combos: list[dict[str, VisibleRow | None]] = [{}]
    for join in statement.joins:
        extended: list[dict[str, VisibleRow | None]] = []
        for combo in combos:
            matches = [
                candidate
                for candidate in join_rows[join.alias]
                if evaluator.matches(join.condition, RowContext(base, {**combo, join.alias: candidate}))
            ]
            if matches:
                extended.extend({**combo, join.alias: m} for m in matches)
            elif join.kind == "LEFT":
                extended.append({**combo, join.alias: None})
        combos = extended
    return combos
