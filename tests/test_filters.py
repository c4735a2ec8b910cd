"""Tests for predicate expressions and the field proxy."""

from __future__ import annotations

import pytest

from opql.filters import (
    NULL_EQ_ERROR,
    NULL_NE_ERROR,
    ComparisonExpression,
    FieldProxy,
    HistoryExpression,
    LogicalExpression,
    TimeWindow,
    combine,
    conjuncts,
    walk,
)


class TestFilterExpression:
    def test_logical_and(self):
        a = ComparisonExpression("estimate", ">", 1)
        b = ComparisonExpression("estimate", "<", 5)
        combined = a & b
        assert isinstance(combined, LogicalExpression)
        assert combined.op == "AND"
        assert combined.children == (a, b)

    def test_logical_or_and_not(self):
        a = ComparisonExpression("status", "=", "Done")
        assert (a | a).op == "OR"
        assert (~a).children == (a,)

    def test_conjuncts_flattens_nested_and(self):
        a, b, c = (ComparisonExpression(f, "=", 1) for f in "abc")
        assert conjuncts((a & b) & c) == [a, b, c]
        assert conjuncts(a | b) == [a | b]
        assert conjuncts(None) == []

    def test_walk_visits_every_node(self):
        a, b = ComparisonExpression("a", "=", 1), ComparisonExpression("b", "=", 2)
        tree = ~(a | b)
        assert list(walk(tree))[2:] == [a, b]
        assert len(list(walk(tree))) == 4

    def test_combine(self):
        a = ComparisonExpression("a", "=", 1)
        assert combine("AND", []) is None
        assert combine("AND", [a]) is a
        assert combine("OR", [a, a]).op == "OR"


class TestFieldProxy:
    def test_comparisons(self):
        f = FieldProxy("estimate")
        assert (f == 3) == ComparisonExpression("estimate", "=", 3)
        assert (f != 3).op == "!="
        assert (f > 3).op == ">"
        assert (f >= 3).op == ">="
        assert (f < 3).op == "<"
        assert (f <= 3).op == "<="

    def test_none_comparison_rejected(self):
        with pytest.raises(TypeError, match=NULL_EQ_ERROR.split()[0]):
            FieldProxy("status") == None  # noqa: E711
        with pytest.raises(TypeError) as exc_info:
            FieldProxy("status") != None  # noqa: E711
        assert str(exc_info.value) == NULL_NE_ERROR

    def test_text_and_set_operators(self):
        f = FieldProxy("title")
        assert f.contains("login").op == "CONTAINS"
        assert f.matches("log").op == "MATCH"
        assert f.like("fix%").op == "LIKE"
        assert f.in_(["a", "b"]).value == ("a", "b")
        assert f.not_in(["a"]).op == "NOT IN"
        assert f.between(1, 2).value == (1, 2)
        assert f.is_null().op == "IS NULL"
        assert f.is_not_null().op == "IS NOT NULL"
        assert f.is_empty().op == "IS EMPTY"

    def test_during(self):
        expr = FieldProxy("due_date").during("2024-01-01", "2024-01-31")
        assert expr.value == TimeWindow("2024-01-01", "2024-01-31")

    def test_history(self):
        assert FieldProxy("status").was("Done") == HistoryExpression("status", "WAS", "Done")
        expr = FieldProxy("status").changed(from_="a", to="b", by="user:ben", during=("x", "y"))
        assert (expr.from_value, expr.to_value, expr.by) == ("a", "b", "user:ben")
        assert expr.window == TimeWindow("x", "y")
