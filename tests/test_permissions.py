"""Tests for workspace isolation, visibility and masking."""

from __future__ import annotations

import pytest

from opql.permissions import in_workspace, is_visible, mask_row, visible_rows
from opql.types import Principal, RepositoryRow
from tests.conftest import TASK_ITEMS

PLACEHOLDER = "*** masked ***"


@pytest.fixture
def masked_task():
    return RepositoryRow.from_search_result(TASK_ITEMS[2], "ws-1")


class TestWorkspace:
    def test_same_workspace(self, masked_task, principal):
        assert in_workspace(masked_task, "ws-1", principal)

    def test_principal_outside_workspace(self, masked_task, principal):
        assert not in_workspace(masked_task, "ws-2", principal)

    def test_defaults_to_principal_workspace(self, principal):
        other = RepositoryRow.from_search_result({"id": "x", "type": "task"}, "ws-2")
        assert not in_workspace(other, None, principal)

    def test_unscoped_principal(self):
        other = RepositoryRow.from_search_result({"id": "x", "type": "task"}, "ws-2")
        assert in_workspace(other, None, Principal())
        assert in_workspace(other, "ws-2", Principal())


class TestVisibility:
    def test_required_permissions(self, principal, admin):
        restricted = RepositoryRow.from_search_result(TASK_ITEMS[3], "ws-1")
        assert not is_visible(restricted, principal)
        assert is_visible(restricted, admin)

    def test_no_permissions_block(self, principal):
        assert is_visible(RepositoryRow.from_search_result(TASK_ITEMS[0], "ws-1"), principal)


class TestMasking:
    def test_masks_field(self, masked_task, principal):
        visible = mask_row(masked_task, principal, PLACEHOLDER)
        assert visible.row.values["snippet"] == PLACEHOLDER
        assert visible.masked_fields == frozenset({"snippet"})
        assert masked_task.values["snippet"] == "Secret design notes"

    def test_permission_unmasks(self, masked_task):
        reader = Principal(workspace_id="ws-1", permissions=frozenset({"search.execute", "search.snippets.read"}))
        visible = mask_row(masked_task, reader, PLACEHOLDER)
        assert visible.row.values["snippet"] == "Secret design notes"
        assert not visible.masked_fields

    def test_allow_all_unmasks(self, masked_task, admin):
        assert not mask_row(masked_task, admin, PLACEHOLDER).masked_fields

    def test_custom_mask(self, principal):
        row = RepositoryRow.from_search_result(
            {
                "id": "x",
                "type": "task",
                "title": "Salary review",
                "permissions": {"fieldMasks": {"title": {"required": ["hr"], "mask": "[hidden]"}}},
            }
        )
        assert mask_row(row, principal, PLACEHOLDER).row.values["title"] == "[hidden]"

    def test_history_redacted(self, principal):
        item = dict(TASK_ITEMS[0])
        item["permissions"] = {"fieldMasks": {"status": {"required": ["search.status.read"]}}}
        row = RepositoryRow.from_search_result(item, "ws-1")
        visible = mask_row(row, principal, PLACEHOLDER)
        history = visible.row.history
        assert all(not event.changes for event in history.events)
        assert "status" not in history.initial.values
        assert visible.row.values["status"] == PLACEHOLDER

    def test_alias_spellings_redacted(self, principal):
        row = RepositoryRow.from_search_result(
            {
                "id": "x",
                "type": "task",
                "labels": ["a"],
                "history": {
                    "events": [{"at": "2024-01-02T00:00:00Z", "changes": [{"field": "tag", "from": "a", "to": "b"}]}]
                },
                "permissions": {"fieldMasks": {"labels": {"required": ["labels.read"]}}},
            }
        )
        visible = mask_row(row, principal, PLACEHOLDER, {"labels": ("label", "tag", "tags")})
        assert not visible.row.history.events[0].changes


class TestVisibleRows:
    def test_filters_and_masks(self, rows, principal):
        out = visible_rows(
            rows, principal, workspace_id="ws-1", entity_types=("task",), placeholder=PLACEHOLDER
        )
        assert [v.entity_id for v in out] == ["task-1", "task-2", "task-3"]
        assert out[2].masked_fields == frozenset({"snippet"})

    def test_no_type_filter(self, rows, principal):
        out = visible_rows(rows, principal, workspace_id="ws-1", entity_types=None, placeholder=PLACEHOLDER)
        assert {v.entity_id for v in out} == {"task-1", "task-2", "task-3", "proj-alpha", "proj-beta"}
