"""Example 01: Searching a workspace with OPQL.

This example demonstrates:
- Loading rows into an InMemorySearchRepository
- Running statements and free text through SearchService
- Field masking and row permissions for different principals
- History predicates (WAS ... DURING) with an explain trace
- Checking half-typed text with validate() and analyze()
"""

from opql import (
    InMemorySearchRepository,
    Principal,
    QueryEngine,
    QueryRequest,
    RepositoryRow,
    SearchService,
    analyze,
    validate,
)

ITEMS = [
    {
        "id": "task-1",
        "type": "task",
        "title": "Fix login bug",
        "snippet": "Users cannot sign in after reset",
        "status": "Review",
        "labels": ["auth", "bug"],
        "assignees": [{"id": "user:ava", "name": "Ava Patel"}],
        "estimate": 3,
        "score": 0.9,
        "history": {
            "initial": {"at": "2024-01-01T00:00:00Z", "values": {"status": "Backlog"}},
            "events": [
                {
                    "at": "2024-01-05T09:00:00Z",
                    "actor": "user:ava",
                    "changes": [{"field": "status", "from": "Backlog", "to": "In Progress"}],
                },
                {
                    "at": "2024-01-10T17:00:00Z",
                    "actor": "user:ben",
                    "changes": [{"field": "status", "from": "In Progress", "to": "Review"}],
                },
            ],
        },
    },
    {
        "id": "task-2",
        "type": "task",
        "title": "Login page redesign",
        "snippet": "Secret design notes",
        "status": "In Progress",
        "estimate": 8,
        "score": 0.7,
        "permissions": {
            "required": ["search.execute"],
            "fieldMasks": {"snippet": {"required": ["search.snippets.read"]}},
        },
    },
    {
        "id": "task-3",
        "type": "task",
        "title": "Audit comment access",
        "status": "Backlog",
        "score": 1.5,
        "permissions": {"required": ["search.comments.read"]},
    },
]


def show(title, result):
    print(f"\n{title}  (total {result.total})")
    for row in result.rows:
        masked = f"  masked={list(row.masked_fields)}" if row.masked_fields else ""
        print(f"  {row.entity_id:8} {row.values.get('title')!s:24} {row.values.get('status')}{masked}")


def main():
    """Run the search example."""
    repository = InMemorySearchRepository(RepositoryRow.from_search_result(i, "ws-1") for i in ITEMS)
    engine = QueryEngine(repository)
    service = SearchService(engine)

    ava = Principal(principal_id="user:ava", workspace_id="ws-1", permissions=frozenset({"search.execute"}))
    admin = Principal(principal_id="user:root", workspace_id="ws-1", allow_all=True)

    # Statements and free text share one engine
    show("FIND tasks ORDER BY estimate DESC", service.search("FIND tasks ORDER BY estimate DESC", ava))
    show("free text: login", service.search("login", ava))

    # task-3 needs search.comments.read; task-2's snippet is masked for ava
    show("as ava", service.search("FIND tasks", ava))
    show("as admin", service.search("FIND tasks", admin))

    # History predicates with explain
    result = engine.execute(
        QueryRequest(
            principal=ava,
            query="FIND tasks WHERE status WAS 'In Progress' DURING ('2024-01-01', '2024-01-11')",
            explain=True,
        )
    )
    show("WAS 'In Progress' DURING early January", result)
    for scan in result.history_scans:
        print(f"  scan {scan.entity_id}: matched={scan.matched} segments={len(scan.segments)}")

    # Aggregation
    result = engine.execute(
        QueryRequest(principal=admin, query="AGGREGATE COUNT(*) AS n, SUM(estimate) FROM tasks GROUP BY status")
    )
    print("\nAGGREGATE by status")
    for group in result.groups:
        print(f"  {group}")

    # Editor support
    print("\nvalidate:", validate("FIND tasks WHERE status 'Done'").caret)
    ctx = analyze("FIND tasks WHERE sta")
    print(f"analyze: state={ctx.state} token={ctx.token!r} entity={ctx.entity}")


if __name__ == "__main__":
    main()
