"""Tests for the SQLite offline index."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from opql import InMemorySearchRepository, Principal, QueryEngine, QueryRequest, RepositoryRow
from opql.errors import InvalidCursorError, OpqlSyntaxError, StorageBackendError
from opql.offline import OfflineIndex, OfflineSnapshot
from opql.offline.index import offline_statement, query_key
from opql.parser import parse
from tests.conftest import NOW, OFFLINE_ITEMS, STORED_QUERY, make_snapshot

EXECUTE = ["search.execute"]
EVERYTHING = ["search.execute", "search.comments.read"]


@pytest.fixture
def query(recorded_index):
    def _query(text: str, permissions=EXECUTE, **kwargs):
        return recorded_index.execute_offline_query(text, permissions=permissions, now=NOW, **kwargs)

    return _query


class TestRecord:
    def test_record_returns_count(self, offline_index):
        assert offline_index.record_opql_response(make_snapshot()) == 3
        assert offline_index.count() == 3

    def test_upsert_by_entity_id(self, recorded_index):
        item = dict(OFFLINE_ITEMS[0], title="Renamed")
        recorded_index.record_opql_response(make_snapshot([item], query="FIND tasks"))
        assert recorded_index.count() == 3
        assert recorded_index.get("task-1")["title"] == "Renamed"

    def test_accepts_model(self, offline_index):
        snapshot = OfflineSnapshot.model_validate(make_snapshot(workspaceId="ws-1"))
        offline_index.record_opql_response(snapshot)
        assert len(offline_index.rows("ws-1")) == 3
        assert offline_index.rows("ws-2") == []

    def test_stored_order_key_is_normalised(self, recorded_index):
        assert recorded_index.stored_order(STORED_QUERY) == ["task-1", "task-2", "task-3"]
        assert recorded_index.stored_order("find items   where STATUS = 'in progress'") == [
            "task-1",
            "task-2",
            "task-3",
        ]
        assert query_key("  FIND   tasks ") == "find tasks"

    def test_continuation_page_appends(self, recorded_index):
        extra = dict(OFFLINE_ITEMS[2], id="task-4")
        recorded_index.record_opql_response(
            make_snapshot([extra, OFFLINE_ITEMS[0]], cursor="offset:3")
        )
        assert recorded_index.stored_order(STORED_QUERY) == ["task-1", "task-2", "task-3", "task-4"]

    def test_first_page_replaces(self, recorded_index):
        recorded_index.record_opql_response(make_snapshot([OFFLINE_ITEMS[2], OFFLINE_ITEMS[0]]))
        assert recorded_index.stored_order(STORED_QUERY) == ["task-3", "task-1"]

    def test_get_is_unmasked(self, recorded_index):
        assert recorded_index.get("task-2")["title"] == "Offline metrics summary"
        assert recorded_index.get("missing") is None

    def test_clear(self, recorded_index):
        recorded_index.clear()
        assert recorded_index.count() == 0
        assert recorded_index.stored_order(STORED_QUERY) == []

    def test_concurrent_records(self, offline_index):
        with ThreadPoolExecutor(max_workers=4) as pool:
            counts = list(pool.map(lambda _: offline_index.record_opql_response(make_snapshot()), range(12)))
        assert counts == [3] * 12
        assert offline_index.count() == 3

    def test_reads_never_see_partial_snapshots(self, offline_index):
        def snapshot(word):
            items = [{"id": f"bulk-{i}", "type": "task", "title": f"{word} item {i}", "score": 0.1} for i in range(200)]
            return make_snapshot(items, query="FIND tasks")

        offline_index.record_opql_response(snapshot("old"))
        done = threading.Event()
        totals = []

        def read():
            while True:
                result = offline_index.execute_offline_query(
                    "FIND tasks WHERE title CONTAINS 'new'", allow_all=True, now=NOW
                )
                totals.append(result.total)
                if done.is_set():
                    break

        reader = threading.Thread(target=read)
        reader.start()
        try:
            for n in range(10):
                offline_index.record_opql_response(snapshot("new" if n % 2 == 0 else "old"))
        finally:
            done.set()
            reader.join()
        assert totals
        assert set(totals) <= {0, 200}

    def test_unopenable_path(self, tmp_path):
        with pytest.raises(StorageBackendError) as exc_info:
            OfflineIndex(str(tmp_path))
        assert exc_info.value.operation == "open"


class TestQuery:
    def test_stored_query(self, query):
        result = query(STORED_QUERY)
        assert result.supported
        assert result.ids() == ["task-1", "task-3"]
        assert result.total == 2
        assert result.next_cursor is None

    def test_cursor_paging(self, query):
        first = query(STORED_QUERY, limit=1)
        assert first.next_cursor == "offset:1"
        second = query(STORED_QUERY, limit=1, cursor=first.next_cursor)
        assert first.ids() != second.ids()
        assert second.ids() == ["task-3"]
        assert second.next_cursor is None

    def test_permissions_filter_rows(self, query):
        assert query("FIND ITEMS WHERE status = 'Blocked'").ids() == []
        assert query("FIND ITEMS WHERE status = 'Blocked'", permissions=EVERYTHING).ids() == ["task-2"]
        assert query("FIND ITEMS WHERE status = 'Blocked'", permissions=(), allow_all=True).ids() == ["task-2"]

    def test_score_order_without_stored_order(self, query):
        assert query("FIND tasks").ids() == ["task-1", "task-3"]
        assert query("FIND tasks", permissions=EVERYTHING).ids() == ["task-1", "task-2", "task-3"]

    def test_order_by_wins(self, query):
        result = query("FIND ITEMS WHERE status = 'In Progress' ORDER BY updated_at")
        assert result.ids() == ["task-3", "task-1"]

    def test_bm25_on_terms(self, query):
        assert query("FIND tasks WHERE title CONTAINS 'offline'").ids() == ["task-3", "task-1"]

    def test_history_from_stored_segments(self, query):
        assert query("FIND ITEMS WHERE status WAS 'Backlog'").ids() == ["task-1"]
        assert query("FIND ITEMS WHERE status CHANGED TO 'Blocked'", permissions=EVERYTHING).ids() == ["task-2"]

    def test_history_window(self, query):
        text = "FIND ITEMS WHERE status WAS 'In Progress' DURING ('2024-01-16', '2024-01-31')"
        assert query(text, permissions=EVERYTHING).ids() == ["task-2", "task-3"]

    def test_me(self, query):
        assert query("FIND tasks WHERE assignee = me()", principal_id="user:ava").ids() == ["task-1"]

    def test_field_masks_applied(self, offline_index):
        item = dict(
            OFFLINE_ITEMS[2],
            snippet="Internal only",
            permissions={"required": [], "fieldMasks": {"snippet": {"required": ["search.snippets.read"]}}},
        )
        offline_index.record_opql_response(make_snapshot([item]))
        result = offline_index.execute_offline_query("FIND tasks", permissions=EXECUTE, now=NOW)
        assert result.items[0]["snippet"] == "*** masked ***"
        assert offline_index.execute_offline_query("FIND tasks WHERE snippet CONTAINS 'internal'").ids() == []

    def test_workspace_isolation(self, offline_index):
        offline_index.record_opql_response(make_snapshot(workspaceId="ws-1"))
        result = offline_index.execute_offline_query(
            "FIND tasks", permissions=EXECUTE, workspace_id="ws-2", now=NOW
        )
        assert result.ids() == []

    def test_invalid_query(self, query):
        with pytest.raises(OpqlSyntaxError):
            query("FIND tasks WHERE")

    def test_invalid_cursor(self, query):
        with pytest.raises(InvalidCursorError):
            query(STORED_QUERY, cursor="next")

    def test_to_dict(self, query):
        data = query(STORED_QUERY).to_dict()
        assert [item["id"] for item in data["items"]] == ["task-1", "task-3"]
        assert data["supported"] is True


class TestDegradedQueries:
    def test_join_stripped(self, query):
        result = query(
            "FIND tasks JOIN projects AS p ON p.id = tasks.project_id "
            "WHERE p.status = 'Active' AND status = 'In Progress'"
        )
        assert not result.supported
        assert result.unsupported == ["join:p"]
        assert result.ids() == ["task-1", "task-3"]

    def test_aggregate_returns_rows(self, query):
        result = query("AGGREGATE COUNT(*) FROM tasks GROUP BY status")
        assert not result.supported
        assert "statement:aggregate" in result.unsupported
        assert result.ids() == ["task-1", "task-3"]

    def test_update_returns_stored_rows(self, query):
        result = query("UPDATE tasks SET status = 'Done' WHERE status = 'In Progress'")
        assert result.supported
        assert result.ids() == ["task-1", "task-3"]
        assert result.items[0]["status"] == "In Progress"

    def test_offline_statement(self):
        stmt = offline_statement(parse("COUNT tasks WHERE status = 'Done' ORDER BY title"))
        assert stmt.kind == "FIND"
        assert stmt.order_by[0].field == "title"
        stmt = offline_statement(
            parse("FIND tasks JOIN projects AS p ON p.id = tasks.project_id WHERE p.name = 'x' OR status = 'y'")
        )
        assert stmt.joins == ()
        assert stmt.where.field == "status"


MASKED_ITEMS = OFFLINE_ITEMS[:2] + [
    dict(
        OFFLINE_ITEMS[2],
        permissions={
            "required": ["search.execute"],
            "fieldMasks": {"snippet": {"required": ["search.snippets.read"]}},
        },
    )
]


class TestOnlineConsistency:
    @pytest.fixture
    def both(self, offline_index):
        offline_index.record_opql_response(make_snapshot(MASKED_ITEMS))
        engine = QueryEngine(
            InMemorySearchRepository(RepositoryRow.from_search_result(i) for i in MASKED_ITEMS)
        )
        principal = Principal(principal_id="user:ava", permissions=frozenset(EXECUTE))

        def _both(text: str):
            online = engine.execute(QueryRequest(principal=principal, query=text, now=NOW))
            offline = offline_index.execute_offline_query(
                text, permissions=EXECUTE, principal_id="user:ava", now=NOW
            )
            return online, offline

        return _both

    @pytest.mark.parametrize(
        "text",
        [
            "FIND ITEMS WHERE status = 'In Progress'",
            "FIND tasks WHERE labels = 'search' AND project = 'proj-alpha'",
            "FIND tasks WHERE status WAS 'Backlog'",
            "FIND tasks WHERE status WAS NOT 'In Progress'",
            "FIND tasks WHERE status WAS 'In Progress' DURING ('2024-01-16', '2024-01-31')",
            "FIND tasks WHERE status CHANGED TO 'Blocked'",
            "FIND tasks WHERE snippet CONTAINS 'ranking'",
            "FIND tasks WHERE assignee = me()",
            "FIND tasks ORDER BY updated_at DESC",
            "FIND tasks WHERE title CONTAINS 'offline' ORDER BY title",
        ],
    )
    def test_same_rows_and_values(self, both, text):
        online, offline = both(text)
        assert sorted(online.entity_ids()) == sorted(offline.ids())
        assert online.total == offline.total
        if "ORDER BY" in text:
            assert online.entity_ids() == offline.ids()
        items = {item["id"]: item for item in offline.items}
        for row in online.rows:
            assert items[row.entity_id]["snippet"] == row.values.get("snippet")
            assert items[row.entity_id]["title"] == row.values.get("title")

    def test_masked_snippet_on_both_sides(self, both):
        online, offline = both("FIND tasks WHERE title CONTAINS 'ranking'")
        assert online.rows[0].values["snippet"] == "*** masked ***"
        assert offline.items[0]["snippet"] == "*** masked ***"
