"""Query execution: bind, filter, order, page.

:class:`QueryEngine` is the one execution path behind every search surface.
It never leaks rows across workspaces or past permissions; predicates see
the masked view of each row.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from opql.config import OpqlConfig
from opql.errors import ValidationError
from opql.evaluator import (
    HistoryScan,
    PredicateEvaluator,
    RowContext,
    SelectedRow,
    apply_operator,
    resolve_functions,
    select_rows,
)
from opql.filters import ComparisonExpression, FilterExpression, LogicalExpression, combine
from opql.ordering import DEFAULT_ORDER, decode_cursor, paginate, sort_rows
from opql.parser import ValidationResult, parse
from opql.parser import validate as validate_syntax
from opql.repository import SearchRepository
from opql.schema import BoundStatement, FieldRegistry
from opql.statements import (
    STATEMENT_KEYWORDS,
    Aggregate,
    AggregateStatement,
    CountStatement,
    ExplainStatement,
    FindStatement,
    OrderBy,
    Statement,
    UpdateStatement,
)
from opql.types import Principal, ResultRow
from opql.values import as_list, ensure_utc, scalar, sort_key, text_tokens

logger = structlog.get_logger(__name__)


@dataclass
class QueryRequest:
    """One execution request.

    Exactly one of ``statement``, ``opql`` or ``query`` is used, in that
    order. ``opql`` is always parsed as OPQL; ``query`` is parsed when it
    starts with a statement keyword and treated as free text otherwise.
    """

    principal: Principal
    workspace_id: str | None = None
    statement: Statement | None = None
    opql: str | None = None
    query: str | None = None
    types: tuple[str, ...] | None = None
    limit: int | None = None
    cursor: str | None = None
    explain: bool = False
    now: datetime | None = None


@dataclass
class QueryResult:
    kind: str
    total: int
    rows: list[ResultRow] = field(default_factory=list)
    next_cursor: str | None = None
    history_scans: list[HistoryScan] | None = None
    groups: list[dict[str, Any]] | None = None
    plan: dict[str, Any] = field(default_factory=dict)

    def entity_ids(self) -> list[str]:
        return [row.entity_id for row in self.rows]

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "kind": self.kind,
            "total": self.total,
            "rows": [row.to_dict() for row in self.rows],
            "next_cursor": self.next_cursor,
            "plan": self.plan,
        }
        if self.groups is not None:
            out["groups"] = self.groups
        if self.history_scans is not None:
            out["history_scans"] = [scan.to_dict() for scan in self.history_scans]
        return out


def looks_like_statement(text: str) -> bool:
    words = text.split(None, 1)
    return bool(words) and words[0].upper() in STATEMENT_KEYWORDS


def free_text_statement(text: str) -> FindStatement:
    """``FIND * WHERE searchable CONTAINS t1 AND searchable CONTAINS t2 ...``."""
    terms = text_tokens(text)
    where = combine("AND", [ComparisonExpression("searchable", "CONTAINS", t) for t in terms])
    return FindStatement(target="*", where=where)


def _plan(bound: BoundStatement, *, explain: bool, verbose: bool) -> dict[str, Any]:
    statement = bound.statement
    plan: dict[str, Any] = {
        "kind": statement.kind,
        "entity_types": list(bound.entity_types),
        "joins": [
            {"kind": j.kind, "alias": j.alias, "entity_types": list(bound.join_types[j.alias])}
            for j in statement.joins
        ],
        "order_by": [
            {"field": o.field, "descending": o.descending}
            for o in (statement.order_by or DEFAULT_ORDER)
        ],
        "limit": statement.limit,
        "offset": statement.offset,
        "explain": explain,
    }
    if verbose:
        plan["where"] = repr(statement.where) if statement.where is not None else None
    return plan


class QueryEngine:
    """Executes OPQL statements against a :class:`SearchRepository`."""

    def __init__(
        self,
        repository: SearchRepository,
        *,
        registry: FieldRegistry | None = None,
        config: OpqlConfig | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry or FieldRegistry()
        self.config = config or OpqlConfig()

    def statement_for(self, request: QueryRequest) -> Statement:
        if request.statement is not None:
            return request.statement
        if request.opql is not None:
            return parse(request.opql)
        if request.query is None:
            raise ValidationError("A statement, OPQL text or query is required")
        if looks_like_statement(request.query):
            return parse(request.query)
        return free_text_statement(request.query)

    def validate(self, opql: str) -> ValidationResult:
        """Parse and bind ``opql`` without executing it."""
        result = validate_syntax(opql)
        if not result.valid:
            return result
        try:
            self.registry.bind(parse(opql))
        except ValidationError as exc:
            return ValidationResult(valid=False, error=str(exc))
        return result

    def execute(self, request: QueryRequest) -> QueryResult:
        """Run ``request``.

        Raises:
            OpqlSyntaxError: If the OPQL text does not parse.
            ValidationError: If it references unknown entities, fields or functions.
            UnsupportedStatementError: For RIGHT/FULL joins.
            InvalidCursorError: If ``request.cursor`` is malformed.
        """
        now = ensure_utc(request.now or datetime.now(timezone.utc))
        statement = self.statement_for(request)
        explain = request.explain
        verbose = False
        if isinstance(statement, ExplainStatement):
            explain = True
            verbose = statement.verbose
        offset = decode_cursor(request.cursor)

        bound = self.registry.bind(statement, request.types)
        selected, scans = select_rows(
            self.repository.rows(request.workspace_id),
            bound,
            request.principal,
            registry=self.registry,
            workspace_id=request.workspace_id,
            placeholder=self.config.mask_placeholder,
            now=now,
            explain=explain,
        )
        stmt = bound.statement
        plan = _plan(bound, explain=explain, verbose=verbose)

        if isinstance(stmt, AggregateStatement):
            result = self._aggregate(stmt, selected, request, offset)
        else:
            ordered = order_rows(selected, stmt.order_by, self.registry, now)
            window = statement_window(ordered, stmt)
            if isinstance(stmt, CountStatement):
                result = QueryResult(kind=stmt.kind, total=len(window))
            else:
                size = self.config.page_size(request.limit or stmt.limit)
                page, next_cursor = paginate(window, offset, size)
                rows = [_result_row(s) for s in page]
                if isinstance(stmt, UpdateStatement):
                    rows = _apply_assignments(rows, resolve_functions(stmt, request.principal, now))
                result = QueryResult(
                    kind=stmt.kind, total=len(window), rows=rows, next_cursor=next_cursor
                )

        result.plan = plan
        if explain:
            result.history_scans = scans
        logger.info(
            "opql_query_executed",
            kind=result.kind,
            workspace_id=request.workspace_id,
            total=result.total,
            returned=len(result.rows),
            explain=explain,
        )
        return result

    def _aggregate(
        self,
        stmt: AggregateStatement,
        selected: list[SelectedRow],
        request: QueryRequest,
        offset: int,
    ) -> QueryResult:
        groups = group_rows(stmt, selected)
        if stmt.having is not None:
            groups = [g for g in groups if _having_matches(stmt.having, g)]
        order = stmt.order_by or tuple(OrderBy(f) for f in stmt.group_by)
        groups = sort_rows(
            groups,
            order,
            lambda g, name: g.get(name),
            lambda g: "\x1f".join(str(g.get(f)) for f in stmt.group_by),
        )
        window = statement_window(groups, stmt)
        size = self.config.page_size(request.limit or stmt.limit)
        page, next_cursor = paginate(window, offset, size)
        return QueryResult(kind=stmt.kind, total=len(window), groups=page, next_cursor=next_cursor)


# --- result shaping ---


def order_rows(
    selected: list[SelectedRow],
    order_by: tuple[OrderBy, ...],
    registry: FieldRegistry,
    now: datetime,
) -> list[SelectedRow]:
    """Sort by ``order_by`` (default ``score DESC``), ties broken by entity id."""
    lookup = PredicateEvaluator(registry, now=now)
    return sort_rows(
        selected,
        order_by or DEFAULT_ORDER,
        lambda row, name: lookup.field_value(RowContext(row.visible, row.joined), name),
        lambda row: row.entity_id,
    )


def statement_window(rows: list[Any], stmt: Statement) -> list[Any]:
    """Apply the statement's own ``OFFSET``/``LIMIT``."""
    window = rows[stmt.offset or 0:]
    if stmt.limit is not None:
        window = window[:stmt.limit]
    return window


def _result_row(selected: SelectedRow) -> ResultRow:
    row = selected.visible.row
    return ResultRow(
        entity_id=row.entity_id,
        entity_type=row.entity_type,
        workspace_id=row.workspace_id,
        score=row.score,
        values=selected.values(),
        masked_fields=tuple(sorted(selected.visible.masked_fields)),
    )


def _apply_assignments(rows: list[ResultRow], stmt: UpdateStatement) -> list[ResultRow]:
    """Preview ``SET`` assignments; nothing is written back."""
    assigned = {a.field: a.value for a in stmt.assignments}
    return [
        row.model_copy(
            update={
                "values": {**row.values, **assigned},
                "masked_fields": tuple(f for f in row.masked_fields if f not in assigned),
            }
        )
        for row in rows
    ]


# --- aggregation ---


def _field_of(row: SelectedRow, name: str) -> Any:
    visible = row.visible
    head, dot, tail = name.partition(".")
    if dot and head in row.joined:
        joined = row.joined[head]
        return joined.row.values.get(tail) if joined is not None else None
    if name == "id":
        return visible.entity_id
    if name == "type":
        return visible.row.entity_type
    if name == "workspace_id":
        return visible.row.workspace_id
    if name == "score":
        return visible.row.score
    return visible.row.values.get(name)


def _group_keys(row: SelectedRow, group_by: tuple[str, ...]) -> list[tuple[Any, ...]]:
    """Group keys of ``row``; a list-valued field puts the row in one group per element."""
    choices = []
    for name in group_by:
        values = [scalar(v) for v in as_list(_field_of(row, name))]
        choices.append(values or [None])
    return list(itertools.product(*choices))


def _numbers(values: list[Any]) -> list[float]:
    out = []
    for value in values:
        if isinstance(value, bool) or value is None:
            continue
        try:
            out.append(float(value))
        except (TypeError, ValueError):
            continue
    return out


def compute_aggregate(aggregate: Aggregate, rows: list[SelectedRow]) -> Any:
    if aggregate.field is None:
        return len(rows) if aggregate.function == "COUNT" else None
    values = [_field_of(row, aggregate.field) for row in rows]
    present = [v for v in values if v is not None and v != []]
    if aggregate.function == "COUNT":
        return len(present)
    if aggregate.function in ("SUM", "AVG"):
        numbers = _numbers(present)
        if not numbers:
            return None
        total = sum(numbers)
        return total if aggregate.function == "SUM" else total / len(numbers)
    if not present:
        return None
    pick = min if aggregate.function == "MIN" else max
    return pick(present, key=sort_key)


def group_rows(stmt: AggregateStatement, rows: list[SelectedRow]) -> list[dict[str, Any]]:
    """One output dict per group: grouped field values plus aggregate aliases."""
    buckets: dict[tuple[Any, ...], list[SelectedRow]] = {}
    if not rows:
        return []
    if not stmt.group_by:
        buckets[()] = list(rows)
    else:
        for row in rows:
            for key in _group_keys(row, stmt.group_by):
                buckets.setdefault(_hashable(key), []).append(row)
    groups = []
    for key, members in buckets.items():
        group: dict[str, Any] = dict(zip(stmt.group_by, key))
        for aggregate in stmt.aggregates:
            group[aggregate.alias] = compute_aggregate(aggregate, members)
        groups.append(group)
    return groups


def _hashable(key: tuple[Any, ...]) -> tuple[Any, ...]:
    return tuple(v if isinstance(v, (str, int, float, bool, type(None))) else str(v) for v in key)


def _having_matches(expr: FilterExpression, group: dict[str, Any]) -> bool:
    if isinstance(expr, LogicalExpression):
        if expr.op == "AND":
            return all(_having_matches(c, group) for c in expr.children)
        if expr.op == "OR":
            return any(_having_matches(c, group) for c in expr.children)
        return not _having_matches(expr.children[0], group)
    return apply_operator(expr.op, group.get(expr.field), expr.value)

