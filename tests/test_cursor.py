"""Tests for the autocomplete cursor-context analyzer."""

from __future__ import annotations

import pytest

from opql.cursor import analyze


class TestGrammarStates:
    def test_after_statement_keyword(self):
        ctx = analyze("FIND ")
        assert ctx.state == "entity"
        assert ctx.token == ""
        assert ctx.preceding_keyword == "FIND"

    def test_half_typed_field(self):
        ctx = analyze("FIND tasks WHERE sta")
        assert ctx.state == "field"
        assert ctx.token == "sta"
        assert ctx.prefix == "sta"
        assert ctx.entity == "tasks"
        assert ctx.previous_token == "WHERE"
        assert ctx.preceding_keyword == "WHERE"

    def test_after_field(self):
        ctx = analyze("FIND tasks WHERE status ")
        assert ctx.state == "operator"
        assert ctx.field == "status"

    def test_after_operator(self):
        ctx = analyze("FIND tasks WHERE status = ")
        assert ctx.state == "value"
        assert ctx.operator == "="
        assert ctx.field == "status"

    def test_after_value(self):
        ctx = analyze("FIND tasks WHERE status = 'Done' ")
        assert ctx.state == "postfix"
        assert ctx.expecting == "logical"

    def test_and_resets_to_field(self):
        ctx = analyze("FIND tasks WHERE status = 'Done' AND ")
        assert ctx.state == "field"
        assert ctx.field is None
        assert ctx.operator is None

    def test_order_by_field(self):
        assert analyze("FIND tasks ORDER BY ").state == "field"
        assert analyze("FIND tasks ORDER BY title ").state == "postfix"


class TestNegationAndLists:
    def test_not_in(self):
        ctx = analyze("FIND tasks WHERE status NOT IN ")
        assert ctx.operator == "NOT IN"
        assert ctx.state == "value"

    def test_is_not(self):
        ctx = analyze("FIND tasks WHERE assignee IS NOT ")
        assert ctx.operator == "IS NOT"
        assert ctx.state == "value"

    def test_comma_inside_in_list_keeps_value(self):
        ctx = analyze("FIND tasks WHERE status IN ('a', ")
        assert ctx.state == "value"
        assert ctx.in_list
        assert ctx.depth == 1
        assert ctx.operator == "IN"

    def test_paren_at_caret_is_walked(self):
        ctx = analyze("FIND tasks WHERE status IN (")
        assert ctx.in_list
        assert ctx.depth == 1
        assert ctx.state == "value"

    def test_closed_list(self):
        ctx = analyze("FIND tasks WHERE status IN ('a') ")
        assert ctx.state == "postfix"
        assert not ctx.in_list
        assert ctx.depth == 0

    def test_aggregate_call_expects_field(self):
        ctx = analyze("AGGREGATE COUNT(")
        assert ctx.state == "field"
        assert ctx.depth == 1


class TestHistoryContext:
    def test_was_not(self):
        ctx = analyze("FIND tasks WHERE status WAS NOT ")
        assert ctx.operator == "WAS NOT"
        assert ctx.state == "value"

    def test_changed_from(self):
        ctx = analyze("FIND tasks WHERE status CHANGED FROM ")
        assert ctx.operator == "CHANGED"
        assert ctx.state == "value"


class TestTotality:
    def test_cursor_inside_token(self):
        ctx = analyze("FIND tasks WHERE status = 'Done'", 12)
        assert ctx.token == "WHERE"
        assert ctx.prefix == "W"
        assert ctx.state == "postfix"

    @pytest.mark.parametrize(
        "text,cursor",
        [
            (None, None),
            ("", 0),
            ("FIND", 99),
            ("status = 'unterminated", -5),
            ("))) ((( ,,, =!=", None),
            ("FIND tasks WHERE (a = 1 OR", 20),
        ],
    )
    def test_never_raises(self, text, cursor):
        ctx = analyze(text, cursor)
        assert ctx.state in ("entity", "field", "operator", "value", "postfix", "root")

    def test_idempotent(self):
        text = "FIND tasks WHERE status IN ('a', 'b') AND title CONTAINS 'x'"
        for cursor in range(len(text) + 1):
            assert analyze(text, cursor) == analyze(text, cursor)

    def test_to_dict(self):
        data = analyze("FIND tasks WHERE status = ").to_dict()
        assert data["state"] == "value"
        assert data["previous_token"] == "="
        assert set(data) >= {"token", "prefix", "in_list", "depth", "expecting"}
