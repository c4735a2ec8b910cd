"""Tests for opql run."""

import json

import pytest

from opql.cli import _exitcodes as ec
from tests.cli.conftest import invoke


def run_json(runner, rows_file, *args):
    result = invoke(
        runner, ["--json", "run", *args, "--rows", rows_file, "-w", "ws-1", "-p", "search.execute"]
    )
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def ids(data):
    return [row["entity_id"] for row in data["rows"]]


def test_run_find(runner, rows_file):
    data = run_json(runner, rows_file, "FIND tasks")
    assert data["kind"] == "FIND"
    assert ids(data) == ["task-1", "task-3", "task-2"]
    assert data["total"] == 3


def test_run_masks_fields(runner, rows_file):
    data = run_json(runner, rows_file, "FIND tasks WHERE id = 'task-3'")
    row = data["rows"][0]
    assert row["values"]["snippet"] == "*** masked ***"
    assert row["masked_fields"] == ["snippet"]


def test_run_allow_all(runner, rows_file):
    result = invoke(
        runner, ["--json", "run", "FIND tasks", "--rows", rows_file, "-w", "ws-1", "--allow-all"]
    )
    assert result.exit_code == 0
    assert ids(json.loads(result.stdout))[0] == "task-4"


def test_run_free_text(runner, rows_file):
    assert ids(run_json(runner, rows_file, "login")) == ["task-1", "task-3"]


def test_run_workspace_isolation(runner, rows_file):
    result = invoke(
        runner, ["--json", "run", "login", "--rows", rows_file, "-w", "ws-2", "--allow-all"]
    )
    assert result.exit_code == 0
    assert ids(json.loads(result.stdout)) == ["task-9"]


def test_run_paging(runner, rows_file):
    first = run_json(runner, rows_file, "FIND tasks", "--limit", "2")
    assert first["next_cursor"] == "offset:2"
    second = run_json(runner, rows_file, "FIND tasks", "--limit", "2", "--cursor", first["next_cursor"])
    assert ids(second) == ["task-2"]
    assert second["next_cursor"] is None


def test_run_type_filter(runner, rows_file):
    data = run_json(runner, rows_file, "FIND ITEMS", "-t", "project")
    assert ids(data) == ["proj-alpha", "proj-beta"]


def test_run_count(runner, rows_file):
    data = run_json(runner, rows_file, "COUNT tasks WHERE status = 'In Progress'")
    assert data["kind"] == "COUNT"
    assert data["total"] == 1
    assert data["rows"] == []


def test_run_aggregate(runner, rows_file):
    data = run_json(runner, rows_file, "AGGREGATE COUNT(*) AS n FROM tasks GROUP BY project_id")
    assert data["groups"] == [{"project_id": "proj-alpha", "n": 2}, {"project_id": "proj-beta", "n": 1}]


def test_run_explain(runner, rows_file):
    data = run_json(runner, rows_file, "FIND tasks WHERE status WAS 'Backlog'", "--explain")
    assert ids(data) == ["task-1"]
    scans = {scan["entity_id"]: scan for scan in data["history_scans"]}
    assert scans["task-1"]["matched"] is True
    assert scans["task-1"]["segments"]


def test_run_text_output(runner, rows_file):
    result = invoke(
        runner,
        ["run", "FIND tasks", "--rows", rows_file, "-w", "ws-1", "-p", "search.execute", "--limit", "1"],
    )
    assert result.exit_code == 0
    assert "task-1" in result.stdout
    assert "Fix login bug" in result.stdout
    assert "total: 3" in result.stdout
    assert "next cursor: offset:1" in result.stdout


def test_run_text_groups(runner, rows_file):
    result = invoke(
        runner,
        [
            "run",
            "AGGREGATE COUNT(*) AS n FROM tasks GROUP BY project_id",
            "--rows",
            rows_file,
            "-w",
            "ws-1",
            "-p",
            "search.execute",
        ],
    )
    assert result.exit_code == 0
    assert "project_id" in result.stdout
    assert "proj-alpha" in result.stdout
    assert "total: 2" in result.stdout


@pytest.mark.parametrize(
    "text,code",
    [
        ("FIND tasks WHERE", ec.SYNTAX_ERROR),
        ("FIND widgets", ec.VALIDATION_ERROR),
        ("FIND tasks RIGHT JOIN projects AS p ON p.id = tasks.project_id", ec.EXECUTION_FAILURE),
    ],
)
def test_run_errors(runner, rows_file, text, code):
    result = invoke(runner, ["run", text, "--rows", rows_file, "-w", "ws-1"])
    assert result.exit_code == code
    assert "Error:" in result.output


def test_run_bad_cursor(runner, rows_file):
    result = invoke(runner, ["run", "FIND tasks", "--rows", rows_file, "-w", "ws-1", "--cursor", "page:2"])
    assert result.exit_code == ec.VALIDATION_ERROR


def test_run_missing_rows_file(runner, tmp_path):
    result = invoke(runner, ["run", "FIND tasks", "--rows", str(tmp_path / "missing.jsonl"), "-w", "ws-1"])
    assert result.exit_code == ec.DATABASE_ERROR
