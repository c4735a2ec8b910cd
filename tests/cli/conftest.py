"""Shared fixtures for CLI tests."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from opql.cli import app
from tests.conftest import OTHER_WORKSPACE_ITEM, PROJECT_ITEMS, TASK_ITEMS, make_snapshot

if TYPE_CHECKING:
    from click.testing import Result


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def offline_db(tmp_path):
    """Temp offline index path passed to every invocation."""
    return str(tmp_path / "offline.db")


@pytest.fixture
def rows_file(tmp_path):
    """JSON Lines rows: the ws-1 tasks and projects plus one ws-2 task."""
    items = [dict(i, workspace_id="ws-1") for i in TASK_ITEMS + PROJECT_ITEMS]
    items.append(dict(OTHER_WORKSPACE_ITEM, workspace_id="ws-2"))
    path = tmp_path / "rows.jsonl"
    path.write_text("\n".join(json.dumps(i) for i in items) + "\n", encoding="utf-8")
    return str(path)


@pytest.fixture
def snapshot_file(tmp_path):
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps(make_snapshot()), encoding="utf-8")
    return str(path)


@pytest.fixture
def recorded_db(runner, offline_db, snapshot_file):
    """An offline index holding the default snapshot."""
    result = invoke(runner, ["offline", "record", snapshot_file], offline_db)
    assert result.exit_code == 0
    return offline_db


def invoke(runner: CliRunner, args: list[str], offline_db: str | None = None) -> "Result":
    """Invoke CLI with proper state setup."""
    if offline_db:
        # Inject --offline-db before subcommand
        args = ["--offline-db", offline_db] + args
    result = runner.invoke(app, args, catch_exceptions=False)
    return result
