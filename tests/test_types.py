"""Tests for row and principal models."""

from __future__ import annotations

from opql.types import Principal, RepositoryRow
from tests.conftest import TASK_ITEMS


class TestRepositoryRow:
    def test_from_search_result(self):
        row = RepositoryRow.from_search_result(TASK_ITEMS[0], "ws-1")
        assert row.entity_id == "task-1"
        assert row.entity_type == "task"
        assert row.workspace_id == "ws-1"
        assert row.score == 0.9
        assert row.values["status"] == "Review"
        assert "history" not in row.values
        assert len(row.history.events) == 2

    def test_item_workspace_wins(self):
        row = RepositoryRow.from_search_result({"id": "x", "type": "task", "workspaceId": "ws-2"}, "ws-1")
        assert row.workspace_id == "ws-2"

    def test_stored_row_form(self):
        row = RepositoryRow.from_search_result(
            {"entityId": "x", "entityType": "doc", "values": {"title": "Guide"}}
        )
        assert row.entity_type == "doc"
        assert row.values == {"title": "Guide"}

    def test_to_search_result(self):
        item = RepositoryRow.from_search_result(TASK_ITEMS[2], "ws-1").to_search_result()
        assert item["id"] == "task-3"
        assert item["title"] == "Login page redesign"
        assert item["permissions"]["fieldMasks"]["snippet"]["required"] == ["search.snippets.read"]
        assert item["history"]["initial"]["values"] == {"status": "In Progress"}


class TestPrincipal:
    def test_holds(self):
        principal = Principal(permissions=frozenset({"a", "b"}))
        assert principal.holds(("a",))
        assert principal.holds(())
        assert not principal.holds(("a", "c"))

    def test_allow_all(self):
        principal = Principal.model_validate({"principalId": "user:root", "allowAll": True})
        assert principal.principal_id == "user:root"
        assert principal.holds(("anything",))
