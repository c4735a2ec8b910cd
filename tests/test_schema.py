"""Tests for the field registry and statement binding."""

from __future__ import annotations

import pytest

from opql.errors import UnknownFieldError, ValidationError
from opql.filters import FieldRef
from opql.parser import parse
from opql.schema import EntityDefinition, FieldRegistry, FieldSpec


def bind(registry, text, types=None):
    return registry.bind(parse(text), types)


class TestSources:
    def test_items_means_every_type(self, registry):
        assert registry.resolve_source("ITEMS") == registry.entity_types
        assert set(registry.entity_types) == {"task", "project", "doc", "comment", "person"}

    @pytest.mark.parametrize("name", ["task", "tasks", "TICKETS", "Issues"])
    def test_synonyms(self, registry, name):
        assert registry.resolve_source(name) == ("task",)

    def test_unknown_entity(self, registry):
        with pytest.raises(ValidationError, match="Unknown entity 'widgets'"):
            registry.resolve_source("widgets")

    def test_custom_definitions(self):
        registry = FieldRegistry(
            [EntityDefinition("bug", (FieldSpec("severity", "number"),), synonyms=("bugs",))]
        )
        assert registry.resolve_source("bugs") == ("bug",)
        assert registry.field_type("severity", ("bug",)) == "number"

    def test_bad_field_type(self):
        with pytest.raises(ValueError, match="Unknown field type"):
            FieldRegistry([EntityDefinition("bug", (FieldSpec("x", "money"),))])


class TestFields:
    def test_canonical_spellings(self, registry):
        assert registry.canonical_field("assignee", ("task",)) == "assignees"
        assert registry.canonical_field("entity_id", ("task",)) == "id"
        assert registry.canonical_field("ESTIMATE", ("task",)) == "estimate"

    def test_unknown_field(self, registry):
        with pytest.raises(UnknownFieldError) as exc_info:
            registry.canonical_field("nope", ("task",))
        assert exc_info.value.field == "nope"
        assert exc_info.value.entity_types == ("task",)

    def test_alias_map(self, registry):
        assert set(registry.alias_map()["labels"]) == {"label", "tag", "tags"}


class TestBind:
    def test_canonicalises_fields(self, registry):
        bound = bind(registry, "FIND tasks WHERE assignee = me() ORDER BY updated DESC")
        assert bound.statement.where.field == "assignees"
        assert bound.statement.order_by[0].field == "updated_at"
        assert bound.entity_types == ("task",)
        assert bound.kind == "FIND"

    def test_types_narrow_rows_not_scope(self, registry):
        bound = bind(registry, "FIND ITEMS WHERE name = 'Alpha'", types=["tasks"])
        assert bound.entity_types == ("task",)
        with pytest.raises(UnknownFieldError):
            bind(registry, "FIND tasks WHERE name = 'Alpha'")

    def test_explain_is_unwrapped(self, registry):
        assert bind(registry, "EXPLAIN VERBOSE FIND tasks").kind == "FIND"

    @pytest.mark.parametrize(
        "where,message",
        [
            ("estimate = 'lots'", "expects a number"),
            ("resolved = 'maybe'", "expects a boolean"),
            ("due_date AFTER 'soon'", "expects a date"),
            ("assignees = whoami()", "Unknown function"),
            ("title ~ '('", "Invalid regular expression"),
            ("status WAS 'Done' DURING ('soon', 'later')", "Invalid time"),
        ],
    )
    def test_literal_checks(self, registry, where, message):
        with pytest.raises(ValidationError, match=message):
            bind(registry, f"FIND tasks WHERE {where}")

    def test_numeric_string_accepted(self, registry):
        assert bind(registry, "FIND tasks WHERE estimate = '3'").statement.where.value == "3"

    def test_text_operators_skip_type_checks(self, registry):
        bind(registry, "FIND tasks WHERE estimate CONTAINS 'x'")


class TestBindJoins:
    def test_join_scope(self, registry):
        bound = bind(
            registry,
            "FIND tasks JOIN projects AS p ON p.id = tasks.project_id WHERE p.name = 'Alpha'",
        )
        assert bound.join_types == {"p": ("project",)}
        join = bound.statement.joins[0]
        assert join.condition.field == "p.id"
        assert join.condition.value == FieldRef(None, "project_id")
        assert bound.statement.where.field == "p.name"

    def test_unknown_joined_field(self, registry):
        with pytest.raises(UnknownFieldError):
            bind(registry, "FIND tasks JOIN projects AS p ON p.id = tasks.project_id WHERE p.estimate > 1")

    def test_history_on_joined_field_rejected(self, registry):
        with pytest.raises(ValidationError, match="joined fields"):
            bind(
                registry,
                "FIND tasks JOIN projects AS p ON p.id = tasks.project_id WHERE p.status WAS 'Active'",
            )


class TestBindAggregateAndUpdate:
    def test_aggregate_outputs(self, registry):
        bound = bind(
            registry,
            "AGGREGATE COUNT(*) AS n, SUM(estimate) FROM tasks GROUP BY project "
            "HAVING n > 1 ORDER BY sum(estimate) DESC, project",
        )
        stmt = bound.statement
        assert stmt.group_by == ("project_id",)
        assert stmt.aggregates[1].field == "estimate"
        assert stmt.having.field == "n"
        assert [o.field for o in stmt.order_by] == ["sum(estimate)", "project_id"]

    def test_having_on_non_output(self, registry):
        with pytest.raises(ValidationError, match="neither an aggregate"):
            bind(registry, "AGGREGATE COUNT(*) FROM tasks GROUP BY status HAVING title = 'x'")

    def test_update_builtin_rejected(self, registry):
        with pytest.raises(ValidationError, match="cannot be updated"):
            bind(registry, "UPDATE tasks SET id = 'x'")

    def test_update_literal_checked(self, registry):
        with pytest.raises(ValidationError, match="expects a number"):
            bind(registry, "UPDATE tasks SET estimate = 'lots'")

    def test_update_canonicalises(self, registry):
        bound = bind(registry, "UPDATE tasks SET label = 'bug' WHERE id = 'task-1'")
        assert bound.statement.assignments[0].field == "labels"
