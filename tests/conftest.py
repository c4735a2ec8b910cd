"""Shared test fixtures for OPQL tests."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any

import pytest

from opql import (
    FieldRegistry,
    InMemorySearchRepository,
    OfflineIndex,
    Principal,
    QueryEngine,
    RepositoryRow,
    SearchService,
)

NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)

# --- Online rows (workspace ws-1 unless noted) ---

TASK_ITEMS: list[dict[str, Any]] = [
    {
        "id": "task-1",
        "type": "task",
        "title": "Fix login bug",
        "snippet": "Users cannot sign in after reset",
        "status": "Review",
        "priority": "high",
        "labels": ["auth", "bug"],
        "assignees": [{"id": "user:ava", "name": "Ava Patel"}],
        "project_id": "proj-alpha",
        "estimate": 3,
        "score": 0.9,
        "history": {
            "initial": {
                "at": "2024-01-01T00:00:00Z",
                "actor": "user:ava",
                "values": {"status": "Backlog"},
            },
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
        "title": "Write onboarding docs",
        "snippet": "Guide for new members",
        "status": "Done",
        "priority": "low",
        "labels": ["docs"],
        "assignees": [{"id": "user:ben", "name": "Ben Ortiz"}],
        "project_id": "proj-alpha",
        "estimate": 5,
        "score": 0.5,
    },
    {
        "id": "task-3",
        "type": "task",
        "title": "Login page redesign",
        "snippet": "Secret design notes",
        "status": "In Progress",
        "priority": "medium",
        "labels": ["ui"],
        "assignees": [],
        "project_id": "proj-beta",
        "estimate": 8,
        "score": 0.9,
        "history": {
            "initial": {
                "at": "2024-02-01T00:00:00Z",
                "actor": "user:cara",
                "values": {"status": "In Progress"},
            },
        },
        "permissions": {
            "required": ["search.execute"],
            "fieldMasks": {"snippet": {"required": ["search.snippets.read"]}},
        },
    },
    {
        "id": "task-4",
        "type": "task",
        "title": "Audit comment access",
        "snippet": "Review who reads comments",
        "status": "Backlog",
        "labels": ["security"],
        "project_id": "proj-beta",
        "estimate": 2,
        "score": 1.5,
        "permissions": {"required": ["search.comments.read"]},
    },
]

PROJECT_ITEMS: list[dict[str, Any]] = [
    {"id": "proj-alpha", "type": "project", "name": "Alpha", "key": "ALPHA", "status": "Active"},
    {"id": "proj-beta", "type": "project", "name": "Beta", "key": "BETA", "status": "Archived"},
]

OTHER_WORKSPACE_ITEM: dict[str, Any] = {
    "id": "task-9",
    "type": "task",
    "title": "Other workspace login",
    "status": "In Progress",
    "score": 2.0,
}


# --- Offline snapshot items ---

OFFLINE_ITEMS: list[dict[str, Any]] = [
    {
        "id": "task-1",
        "type": "task",
        "title": "Implement offline planner",
        "snippet": "*** masked ***",
        "url": "/tasks/task-1",
        "project_id": "proj-alpha",
        "updated_at": "2024-02-01T12:00:00.000Z",
        "score": 1.2,
        "labels": ["search", "reliability"],
        "assignees": [{"id": "user:ava", "name": "Ava Patel", "email": "ava@example.com"}],
        "status": "In Progress",
        "history": {
            "events": [
                {
                    "at": "2024-02-01T12:00:00.000Z",
                    "actor": "user:ava",
                    "changes": [
                        {"field": "status", "from": "backlog", "to": "in progress"},
                        {"field": "assignee", "from": "user:ava", "to": "user:ava"},
                    ],
                }
            ],
            "segments": {
                "status": [
                    {
                        "field": "status",
                        "value": "Backlog",
                        "start": "2024-01-01T00:00:00.000Z",
                        "end": "2024-02-01T12:00:00.000Z",
                        "actor": "user:ava",
                        "changedAt": "2024-02-01T12:00:00.000Z",
                    },
                    {
                        "field": "status",
                        "value": "In Progress",
                        "start": "2024-02-01T12:00:00.000Z",
                        "end": None,
                        "actor": "user:ava",
                        "changedAt": "2024-02-01T12:00:00.000Z",
                    },
                ]
            },
        },
        "permissions": {"required": ["search.execute"]},
    },
    {
        "id": "task-2",
        "type": "task",
        "title": "Offline metrics summary",
        "snippet": "Masked details",
        "url": "/tasks/task-2",
        "project_id": "proj-alpha",
        "updated_at": "2024-02-10T15:00:00.000Z",
        "score": 0.9,
        "labels": ["analytics"],
        "assignees": [{"id": "user:ben", "name": "Ben Ortiz", "email": "ben@example.com"}],
        "status": "Blocked",
        "history": {
            "events": [
                {
                    "at": "2024-02-10T15:00:00.000Z",
                    "actor": "user:ben",
                    "changes": [{"field": "status", "from": "in progress", "to": "blocked"}],
                }
            ],
            "segments": {
                "status": [
                    {
                        "field": "status",
                        "value": "In Progress",
                        "start": "2024-01-15T00:00:00.000Z",
                        "end": "2024-02-10T15:00:00.000Z",
                        "actor": "user:ben",
                        "changedAt": "2024-02-10T15:00:00.000Z",
                    },
                    {
                        "field": "status",
                        "value": "Blocked",
                        "start": "2024-02-10T15:00:00.000Z",
                        "end": None,
                        "actor": "user:ben",
                        "changedAt": "2024-02-10T15:00:00.000Z",
                    },
                ]
            },
        },
        "permissions": {"required": ["search.comments.read"]},
    },
    {
        "id": "task-3",
        "type": "task",
        "title": "Plan offline ranking tests",
        "snippet": "Offline ranking coverage",
        "url": "/tasks/task-3",
        "project_id": "proj-beta",
        "updated_at": "2024-01-20T09:30:00.000Z",
        "score": 0.7,
        "labels": ["search"],
        "assignees": [{"id": "user:cara", "name": "Cara Kim"}],
        "status": "In Progress",
        "history": {"events": [], "segments": {"status": []}},
        "permissions": {"required": ["search.execute"]},
    },
]

STORED_QUERY = "FIND ITEMS WHERE status = 'In Progress'"


def make_snapshot(items: list[dict[str, Any]] | None = None, **overrides: Any) -> dict[str, Any]:
    snapshot = {
        "query": STORED_QUERY,
        "projectId": None,
        "types": ["task"],
        "items": copy.deepcopy(OFFLINE_ITEMS if items is None else items),
        "partial": False,
        "nextCursor": None,
    }
    snapshot.update(overrides)
    return snapshot


# --- Fixtures ---


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def rows():
    items = [RepositoryRow.from_search_result(i, "ws-1") for i in TASK_ITEMS + PROJECT_ITEMS]
    items.append(RepositoryRow.from_search_result(OTHER_WORKSPACE_ITEM, "ws-2"))
    return items


@pytest.fixture
def repository(rows):
    return InMemorySearchRepository(rows)


@pytest.fixture
def registry():
    return FieldRegistry()


@pytest.fixture
def engine(repository, registry):
    return QueryEngine(repository, registry=registry)


@pytest.fixture
def service(engine):
    return SearchService(engine)


@pytest.fixture
def principal():
    """Ava in ws-1, holding only ``search.execute``."""
    return Principal(
        principal_id="user:ava",
        workspace_id="ws-1",
        permissions=frozenset({"search.execute"}),
    )


@pytest.fixture
def admin():
    return Principal(principal_id="user:root", workspace_id="ws-1", allow_all=True)


@pytest.fixture
def offline_index(tmp_path):
    index = OfflineIndex(str(tmp_path / "offline.db"))
    yield index
    index.close()


@pytest.fixture
def recorded_index(offline_index):
    offline_index.record_opql_response(make_snapshot())
    return offline_index
