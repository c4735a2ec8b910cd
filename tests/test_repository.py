"""Tests for row repositories and JSON Lines loading."""

from __future__ import annotations

import json

import pytest

from opql.errors import StorageBackendError
from opql.repository import InMemorySearchRepository, load_rows
from opql.types import RepositoryRow
from tests.conftest import PROJECT_ITEMS, TASK_ITEMS


def write_jsonl(path, items):
    path.write_text("\n".join(json.dumps(i) for i in items) + "\n\n", encoding="utf-8")
    return path


class TestInMemorySearchRepository:
    def test_rows_by_workspace(self, repository):
        assert len(repository) == 7
        assert [r.entity_id for r in repository.rows("ws-2")] == ["task-9"]
        assert len(repository.rows()) == 7

    def test_add_replaces_same_key(self):
        repo = InMemorySearchRepository()
        repo.add(RepositoryRow.from_search_result({"id": "x", "type": "task", "title": "a"}, "ws-1"))
        repo.add(RepositoryRow.from_search_result({"id": "x", "type": "task", "title": "b"}, "ws-1"))
        repo.add(RepositoryRow.from_search_result({"id": "x", "type": "task", "title": "c"}, "ws-2"))
        assert len(repo) == 2
        assert repo.rows("ws-1")[0].values["title"] == "b"


class TestLoadRows:
    def test_loads_flat_items(self, tmp_path):
        path = write_jsonl(tmp_path / "rows.jsonl", TASK_ITEMS + PROJECT_ITEMS)
        rows = load_rows(path)
        assert [r.entity_id for r in rows][:2] == ["task-1", "task-2"]
        assert rows[0].history is not None

    def test_from_jsonl(self, tmp_path):
        path = write_jsonl(tmp_path / "rows.jsonl", [dict(TASK_ITEMS[1], workspace_id="ws-1")])
        repo = InMemorySearchRepository.from_jsonl(path)
        assert [r.entity_id for r in repo.rows("ws-1")] == ["task-2"]

    def test_bad_json(self, tmp_path):
        path = tmp_path / "rows.jsonl"
        path.write_text('{"id": "x", "type": "task"}\n{not json\n', encoding="utf-8")
        with pytest.raises(StorageBackendError) as exc_info:
            load_rows(path)
        assert exc_info.value.operation == "load_rows"
        assert ":2:" in exc_info.value.detail

    def test_missing_file(self, tmp_path):
        with pytest.raises(StorageBackendError):
            load_rows(tmp_path / "missing.jsonl")
