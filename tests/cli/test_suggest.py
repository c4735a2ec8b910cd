"""Tests for opql suggest and opql jql."""

import json

from opql.cli import _exitcodes as ec
from tests.cli.conftest import invoke


def suggest_json(runner, rows_file, *args):
    result = invoke(
        runner,
        ["--json", "suggest", *args, "--rows", rows_file, "-w", "ws-1", "-p", "search.execute"],
    )
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def test_suggest_statements(runner):
    result = invoke(runner, ["--json", "suggest", ""])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["items"][0]["value"] == "FIND"


def test_suggest_values_from_rows(runner, rows_file):
    data = suggest_json(runner, rows_file, "FIND tasks WHERE status = ")
    assert {item["value"] for item in data["items"]} == {"Review", "Done", "In Progress"}


def test_suggest_cursor(runner, rows_file):
    data = suggest_json(runner, rows_file, "FIND tasks WHERE sta = 'x'", "--cursor", "20")
    assert data["completion"]["insert_text"] == "status "


def test_suggest_text_output(runner):
    result = invoke(runner, ["suggest", "FIND tasks WHERE stauts"])
    assert result.exit_code == 0
    assert "did you mean: Status" in result.stdout


def test_suggest_missing_rows_file(runner, tmp_path):
    result = invoke(runner, ["suggest", "FIND ", "--rows", str(tmp_path / "missing.jsonl")])
    assert result.exit_code == ec.DATABASE_ERROR


def test_jql(runner):
    result = invoke(runner, ["jql", "status = Done ORDER BY created DESC"])
    assert result.exit_code == 0
    assert result.stdout.strip() == "FIND tasks WHERE status = 'Done' ORDER BY created_at DESC"


def test_jql_json(runner):
    result = invoke(runner, ["--json", "jql", "assignee IS EMPTY", "--source", "ITEMS"])
    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["opql"] == "FIND ITEMS WHERE assignees IS EMPTY"
    assert data["original"] == "assignee IS EMPTY"
    assert data["statement"]["kind"] == "FIND"


def test_jql_syntax_error(runner):
    result = invoke(runner, ["jql", "status Done"])
    assert result.exit_code == ec.SYNTAX_ERROR
    assert "^" in result.stdout
