"""Field registry: entity definitions, source synonyms, and statement binding.

Binding checks a parsed statement against the registry and returns a copy
whose field names are canonical, so a typo in a field name is reported as
a :class:`ValidationError` rather than silently matching nothing.
"""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from opql.errors import UnknownFieldError, ValidationError
from opql.filters import (
    ComparisonExpression,
    FieldRef,
    FilterExpression,
    FunctionCall,
    HistoryExpression,
    LogicalExpression,
    TimeWindow,
)
from opql.statements import (
    AggregateStatement,
    Assignment,
    ExplainStatement,
    JoinClause,
    OrderBy,
    Statement,
    UpdateStatement,
)
from opql.values import is_known_function, to_datetime

FIELD_TYPES = ("string", "number", "boolean", "date", "array", "object")

# Fields every row has, independent of its entity type.
BUILTIN_FIELDS: dict[str, str] = {
    "id": "id",
    "entity_id": "id",
    "type": "type",
    "entity_type": "type",
    "workspace_id": "workspace_id",
    "score": "score",
    "searchable": "searchable",
}
BUILTIN_TYPES = {
    "id": "string",
    "type": "string",
    "workspace_id": "string",
    "score": "number",
    "searchable": "string",
}

# Alternate spellings accepted for common fields.
FIELD_ALIASES: dict[str, str] = {
    "project": "project_id",
    "projectid": "project_id",
    "label": "labels",
    "tag": "labels",
    "tags": "labels",
    "assignee": "assignees",
    "owner_id": "owner",
    "updated": "updated_at",
    "created": "created_at",
    "due": "due_date",
}

# Sources that mean "every registered entity type".
ALL_SOURCES = frozenset({"items", "item", "search", "all", "*"})

_SORTABLE_AGGREGATE_RE = re.compile(r"^(count|sum|avg|min|max)\((\*|[\w.]+)\)$")


@dataclass(frozen=True)
class FieldSpec:
    name: str
    type: str = "string"


@dataclass(frozen=True)
class EntityDefinition:
    name: str
    fields: tuple[FieldSpec, ...]
    synonyms: tuple[str, ...] = ()

    def field(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None


def _fields(**types: str) -> tuple[FieldSpec, ...]:
    common = {"title": "string", "snippet": "string", "url": "string",
              "created_at": "date", "updated_at": "date"}
    common.update(types)
    return tuple(FieldSpec(name, kind) for name, kind in common.items())


DEFAULT_DEFINITIONS: tuple[EntityDefinition, ...] = (
    EntityDefinition(
        "task",
        _fields(
            status="string", priority="string", labels="array", assignees="array",
            project_id="string", reporter="string", due_date="date", estimate="number",
            resolved="boolean",
        ),
        synonyms=("tasks", "ticket", "tickets", "issue", "issues"),
    ),
    EntityDefinition(
        "project",
        _fields(name="string", key="string", status="string", owner="string",
                labels="array", project_id="string"),
        synonyms=("projects",),
    ),
    EntityDefinition(
        "doc",
        _fields(project_id="string", author="string", labels="array", status="string"),
        synonyms=("docs", "document", "documents", "page", "pages"),
    ),
    EntityDefinition(
        "comment",
        _fields(task_id="string", project_id="string", author="string", body="string"),
        synonyms=("comments",),
    ),
    EntityDefinition(
        "person",
        _fields(name="string", email="string", role="string", team="string"),
        synonyms=("people", "persons", "user", "users", "member", "members"),
    ),
)


@dataclass(frozen=True)
class BoundStatement:
    """A statement with canonical fields plus the entity types each qualifier searches."""

    statement: Statement
    entity_types: tuple[str, ...]
    join_types: dict[str, tuple[str, ...]]

    @property
    def kind(self) -> str:
        return self.statement.kind


class FieldRegistry:
    """Known entity types and their fields."""

    def __init__(self, definitions: Iterable[EntityDefinition] | None = None) -> None:
        self._definitions: dict[str, EntityDefinition] = {}
        for definition in DEFAULT_DEFINITIONS if definitions is None else definitions:
            self.register(definition)

    def register(self, definition: EntityDefinition) -> None:
        for spec in definition.fields:
            if spec.type not in FIELD_TYPES:
                raise ValueError(f"Unknown field type '{spec.type}' for {definition.name}.{spec.name}")
        self._definitions[definition.name] = definition

    @property
    def entity_types(self) -> tuple[str, ...]:
        return tuple(self._definitions)

    def definition(self, entity_type: str) -> EntityDefinition | None:
        return self._definitions.get(entity_type)

    def resolve_source(self, name: str) -> tuple[str, ...]:
        """Map ``tasks``/``ITEMS``/``*`` style names to registered entity types."""
        key = name.casefold()
        if key in ALL_SOURCES:
            return self.entity_types
        for definition in self._definitions.values():
            if key == definition.name or key in definition.synonyms:
                return (definition.name,)
        raise ValidationError(f"Unknown entity '{name}'")

    def resolve_types(self, names: Iterable[str]) -> tuple[str, ...]:
        out: list[str] = []
        for name in names:
            for entity_type in self.resolve_source(name):
                if entity_type not in out:
                    out.append(entity_type)
        return tuple(out)

    def aliases_for(self, field: str) -> tuple[str, ...]:
        return tuple(alias for alias, target in FIELD_ALIASES.items() if target == field)

    def alias_map(self) -> dict[str, tuple[str, ...]]:
        """Canonical field -> alternate spellings seen in change events."""
        return {target: self.aliases_for(target) for target in set(FIELD_ALIASES.values())}

    def canonical_field(self, name: str, entity_types: tuple[str, ...]) -> str:
        """Return the canonical spelling of ``name``.

        Raises:
            UnknownFieldError: If no entity in ``entity_types`` defines it.
        """
        key = name.casefold()
        if key in BUILTIN_FIELDS:
            return BUILTIN_FIELDS[key]
        key = FIELD_ALIASES.get(key, key)
        for entity_type in entity_types:
            definition = self._definitions.get(entity_type)
            if definition is not None and definition.field(key) is not None:
                return key
        raise UnknownFieldError(name, entity_types)

    def field_type(self, field: str, entity_types: tuple[str, ...]) -> str | None:
        if field in BUILTIN_TYPES:
            return BUILTIN_TYPES[field]
        for entity_type in entity_types:
            definition = self._definitions.get(entity_type)
            spec = definition.field(field) if definition is not None else None
            if spec is not None:
                return spec.type
        return None

    # --- binding ---

    def bind(self, statement: Statement, types: Iterable[str] | None = None) -> BoundStatement:
        """Validate ``statement`` and canonicalise its field names.

        ``types`` further restricts the searched entity types (search surfaces
        pass the caller's type filter here).
        """
        if isinstance(statement, ExplainStatement):
            if statement.statement is None:
                raise ValidationError("EXPLAIN requires a statement")
            statement = statement.statement
        return _Binder(self, statement, types).bind()


class _Binder:
    def __init__(self, registry: FieldRegistry, statement: Statement, types: Iterable[str] | None):
        self.registry = registry
        self.statement = statement
        # fields are validated against the statement scope; ``types`` only narrows the rows searched
        self.scope = registry.resolve_source(statement.entity)
        self.entity_types = self.scope
        if types is not None:
            allowed = registry.resolve_types(types)
            self.entity_types = tuple(t for t in self.scope if t in allowed)
        self.base_qualifiers = set(statement.qualifiers)
        self.join_types: dict[str, tuple[str, ...]] = {}

    def bind(self) -> BoundStatement:
        stmt = self.statement
        joins = tuple(self.join(j) for j in stmt.joins)
        changes: dict[str, Any] = {
            "joins": joins,
            "where": self.predicate(stmt.where),
        }
        if isinstance(stmt, AggregateStatement):
            group_by = tuple(self.field(f) for f in stmt.group_by)
            aggregates = tuple(
                dataclasses.replace(a, field=self.field(a.field) if a.field else None)
                for a in stmt.aggregates
            )
            outputs = {a.alias for a in aggregates} | set(group_by)
            changes.update(
                group_by=group_by,
                aggregates=aggregates,
                having=self.having(stmt.having, outputs),
                order_by=tuple(self.aggregate_order(o, outputs) for o in stmt.order_by),
            )
        else:
            changes["order_by"] = tuple(
                dataclasses.replace(o, field=self.field(o.field)) for o in stmt.order_by
            )
        if isinstance(stmt, UpdateStatement):
            changes["assignments"] = tuple(self.assignment(a) for a in stmt.assignments)
        return BoundStatement(
            statement=dataclasses.replace(stmt, **changes),
            entity_types=self.entity_types,
            join_types=dict(self.join_types),
        )

    def join(self, join: JoinClause) -> JoinClause:
        self.join_types[join.alias] = self.registry.resolve_source(join.entity)
        return dataclasses.replace(join, condition=self.predicate(join.condition))

    def field(self, name: str) -> str:
        head, dot, tail = name.partition(".")
        if dot and tail:
            if head in self.join_types:
                return f"{head}.{self.registry.canonical_field(tail, self.join_types[head])}"
            if head in self.base_qualifiers:
                return self.registry.canonical_field(tail, self.scope)
        return self.registry.canonical_field(name, self.scope)

    def field_types(self, name: str) -> tuple[str, tuple[str, ...]]:
        head, dot, tail = name.partition(".")
        if dot and head in self.join_types:
            return tail, self.join_types[head]
        return name, self.scope

    def value(self, value: Any) -> Any:
        if isinstance(value, FieldRef):
            alias = value.alias
            if alias in self.join_types:
                return FieldRef(alias, self.registry.canonical_field(value.field, self.join_types[alias]))
            return FieldRef(None, self.registry.canonical_field(value.field, self.scope))
        if isinstance(value, FunctionCall):
            if not is_known_function(value.name):
                raise ValidationError(f"Unknown function '{value.name}()'")
            return value
        if isinstance(value, TimeWindow):
            return TimeWindow(self.value(value.start), self.value(value.end))
        if isinstance(value, tuple):
            return tuple(self.value(v) for v in value)
        return value

    def check_literal(self, field: str, op: str, value: Any) -> None:
        name, entity_types = self.field_types(field)
        kind = self.registry.field_type(name, entity_types)
        if op in ("CONTAINS", "NOT CONTAINS", "MATCH", "NOT MATCH", "LIKE", "NOT LIKE", "~", "!~"):
            return
        literals = value if isinstance(value, tuple) else (value,)
        if isinstance(value, TimeWindow):
            literals = (value.start, value.end)
        for literal in literals:
            if literal is None or isinstance(literal, (FieldRef, FunctionCall)):
                continue
            if kind == "number" and not _is_numeric(literal):
                raise ValidationError(f"Field '{field}' expects a number, got {literal!r}")
            if kind == "boolean" and not _is_boolean(literal):
                raise ValidationError(f"Field '{field}' expects a boolean, got {literal!r}")
            if kind == "date" and to_datetime(literal) is None:
                raise ValidationError(f"Field '{field}' expects a date, got {literal!r}")

    def predicate(self, expr: FilterExpression | None) -> FilterExpression | None:
        if expr is None:
            return None
        if isinstance(expr, LogicalExpression):
            return LogicalExpression(expr.op, tuple(self.predicate(c) for c in expr.children))
        if isinstance(expr, ComparisonExpression):
            field = self.field(expr.field)
            value = self.value(expr.value)
            if expr.op in ("~", "!~"):
                _check_regex(expr.value)
            self.check_literal(field, expr.op, value)
            return ComparisonExpression(field, expr.op, value)
        if isinstance(expr, HistoryExpression):
            if "." in expr.field and expr.field.partition(".")[0] in self.join_types:
                raise ValidationError(f"History predicates on joined fields are not supported: '{expr.field}'")
            window = expr.window
            if window is not None:
                window = self.value(window)
                for bound in (window.start, window.end):
                    if bound is not None and not isinstance(bound, FunctionCall) and to_datetime(bound) is None:
                        raise ValidationError(f"Invalid time {bound!r} in history window")
            return dataclasses.replace(
                expr,
                field=self.field(expr.field),
                value=self.value(expr.value),
                from_value=self.value(expr.from_value),
                to_value=self.value(expr.to_value),
                by=self.value(expr.by),
                window=window,
            )
        raise ValidationError(f"Unsupported predicate {expr!r}")

    def having(self, expr: FilterExpression | None, outputs: set[str]) -> FilterExpression | None:
        if expr is None:
            return None
        if isinstance(expr, LogicalExpression):
            return LogicalExpression(expr.op, tuple(self.having(c, outputs) for c in expr.children))
        if isinstance(expr, ComparisonExpression):
            return ComparisonExpression(self.output_field(expr.field, outputs), expr.op, expr.value)
        raise ValidationError("HAVING only supports comparisons on aggregates and grouped fields")

    def aggregate_order(self, order: OrderBy, outputs: set[str]) -> OrderBy:
        return dataclasses.replace(order, field=self.output_field(order.field, outputs))

    def output_field(self, name: str, outputs: set[str]) -> str:
        if name in outputs:
            return name
        lowered = name.lower()
        match = _SORTABLE_AGGREGATE_RE.match(lowered)
        if match and match.group(2) != "*":
            lowered = f"{match.group(1)}({self.field(match.group(2))})"
        if lowered in outputs:
            return lowered
        try:
            canonical = self.field(name)
        except UnknownFieldError:
            canonical = None
        if canonical in outputs:
            return canonical
        raise ValidationError(f"'{name}' is neither an aggregate nor a grouped field")

    def assignment(self, assignment: Assignment) -> Assignment:
        field = self.field(assignment.field)
        if field in BUILTIN_TYPES:
            raise ValidationError(f"Field '{field}' cannot be updated")
        value = self.value(assignment.value)
        self.check_literal(field, "=", value)
        return Assignment(field, value)


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    try:
        float(str(value))
    except ValueError:
        return False
    return True


def _is_boolean(value: Any) -> bool:
    return isinstance(value, bool) or str(value).lower() in ("true", "false")


def _check_regex(pattern: Any) -> None:
    try:
        re.compile(str(pattern))
    except re.error as exc:
        raise ValidationError(f"Invalid regular expression {pattern!r}: {exc}") from exc
