"""Example 02: Answering queries from the offline index.

This example demonstrates:
- Recording an online response snapshot with OfflineIndex.record_opql_response()
- Planning a query with plan_offline_query()
- Executing queries offline with permission filtering and cursors
- Degraded answers for joins and aggregates
"""

from pathlib import Path

from opql import OfflineIndex, plan_offline_query

SNAPSHOT = {
    "query": "FIND ITEMS WHERE status = 'In Progress'",
    "types": ["task"],
    "items": [
        {
            "id": "task-1",
            "type": "task",
            "title": "Implement offline planner",
            "status": "In Progress",
            "labels": ["search"],
            "updated_at": "2024-02-01T12:00:00Z",
            "score": 1.2,
            "permissions": {"required": ["search.execute"]},
        },
        {
            "id": "task-2",
            "type": "task",
            "title": "Plan offline ranking tests",
            "status": "In Progress",
            "labels": ["search"],
            "updated_at": "2024-01-20T09:30:00Z",
            "score": 0.7,
            "permissions": {"required": ["search.execute"]},
        },
    ],
}


def main():
    """Run the offline example."""
    db_path = Path("tmp/offline_example.db")
    db_path.parent.mkdir(exist_ok=True)

    index = OfflineIndex(str(db_path))
    try:
        print("recorded:", index.record_opql_response(SNAPSHOT))

        plan = plan_offline_query("FIND tasks WHERE status IN ('In Progress', 'Blocked') AND label = 'search'")
        print("plan filters:", plan.filters)

        first = index.execute_offline_query(
            "FIND ITEMS WHERE status = 'In Progress'", limit=1, permissions=["search.execute"]
        )
        print("page 1:", first.ids(), "next:", first.next_cursor)
        second = index.execute_offline_query(
            "FIND ITEMS WHERE status = 'In Progress'",
            limit=1,
            cursor=first.next_cursor,
            permissions=["search.execute"],
        )
        print("page 2:", second.ids())

        ranked = index.execute_offline_query("FIND tasks WHERE title CONTAINS 'offline'", permissions=["search.execute"])
        print("BM25 ranked:", ranked.ids())

        degraded = index.execute_offline_query(
            "AGGREGATE COUNT(*) FROM tasks GROUP BY status", permissions=["search.execute"]
        )
        print("aggregate offline: supported =", degraded.supported, degraded.unsupported)
    finally:
        index.close()


if __name__ == "__main__":
    main()
