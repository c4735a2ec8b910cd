"""opql offline: plan queries, record snapshots and answer from the local index."""

from __future__ import annotations

import json
from typing import Optional

import typer
from pydantic import ValidationError as SnapshotError

from opql.cli import _exitcodes as ec
from opql.cli._output import print_error, print_object, print_table, print_warning
from opql.errors import (
    InvalidCursorError,
    OpqlSyntaxError,
    StorageBackendError,
    ValidationError,
)
from opql.offline import OfflineIndex, OfflineSnapshot, plan_offline_query

app = typer.Typer(no_args_is_help=True)


def _open_index() -> OfflineIndex:
    from opql.cli import state

    try:
        return OfflineIndex(state.offline_db, config=state.config)
    except StorageBackendError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)


@app.command(name="plan")
def plan_cmd(
    text: str = typer.Argument(..., help="OPQL statement"),
) -> None:
    """Show the filters and unsupported constructs of an offline plan."""
    from opql.cli import state

    try:
        plan = plan_offline_query(text)
    except OpqlSyntaxError as e:
        print_error(str(e))
        raise typer.Exit(ec.SYNTAX_ERROR)
    print_object(plan.to_dict(), json_mode=state.json_output)


@app.command(name="record")
def record_cmd(
    snapshot_path: str = typer.Argument(..., help="JSON file holding one recorded response"),
) -> None:
    """Record an online response snapshot into the offline index."""
    from opql.cli import state

    try:
        with open(snapshot_path, encoding="utf-8") as fh:
            snapshot = OfflineSnapshot.model_validate(json.load(fh))
    except (OSError, json.JSONDecodeError, SnapshotError) as e:
        print_error(f"Cannot read snapshot: {e}")
        raise typer.Exit(ec.USAGE_ERROR)

    index = _open_index()
    try:
        written = index.record_opql_response(snapshot)
        total = index.count()
    except StorageBackendError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)
    finally:
        index.close()
    print_object({"recorded": written, "total": total}, json_mode=state.json_output)


@app.command(name="query")
def query_cmd(
    text: str = typer.Argument(..., help="OPQL statement"),
    permissions: Optional[list[str]] = typer.Option(
        None, "--permission", "-p", help="Permission held by the caller (repeatable)"
    ),
    workspace: Optional[str] = typer.Option(None, "--workspace", "-w", help="Workspace filter"),
    principal: Optional[str] = typer.Option(None, "--principal", help="Principal id for me()"),
    limit: Optional[int] = typer.Option(None, "--limit", help="Page size"),
    cursor: Optional[str] = typer.Option(None, "--cursor", help="Paging cursor (offset:<n>)"),
) -> None:
    """Answer a query from recorded snapshots."""
    from opql.cli import state

    index = _open_index()
    try:
        result = index.execute_offline_query(
            text,
            limit=limit,
            cursor=cursor,
            permissions=permissions or (),
            workspace_id=workspace,
            principal_id=principal,
        )
    except OpqlSyntaxError as e:
        print_error(str(e))
        raise typer.Exit(ec.SYNTAX_ERROR)
    except (ValidationError, InvalidCursorError) as e:
        print_error(str(e))
        raise typer.Exit(ec.VALIDATION_ERROR)
    except StorageBackendError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)
    finally:
        index.close()

    if state.json_output:
        print_object(result.to_dict(), json_mode=True)
        return
    if not result.supported:
        print_warning(
            "results may be incomplete offline; unsupported: " + ", ".join(result.unsupported)
        )
    print_table(
        ["id", "type", "title", "status"],
        [[i.get("id"), i.get("type"), i.get("title"), i.get("status")] for i in result.items],
    )
    print(f"total: {result.total}")
    if result.next_cursor:
        print(f"next cursor: {result.next_cursor}")


@app.command(name="clear")
def clear_cmd() -> None:
    """Remove every recorded item and stored order."""
    from opql.cli import state

    index = _open_index()
    try:
        removed = index.count()
        index.clear()
    except StorageBackendError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)
    finally:
        index.close()
    print_object({"cleared": removed}, json_mode=state.json_output)
