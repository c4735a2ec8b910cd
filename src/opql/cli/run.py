"""opql run: execute a statement against rows loaded from a JSON Lines file."""

from __future__ import annotations

from typing import Optional

import typer

from opql.cli import _exitcodes as ec
from opql.cli._output import format_cell, print_error, print_object, print_table
from opql.engine import QueryEngine, QueryRequest, QueryResult
from opql.errors import (
    InvalidCursorError,
    OpqlSyntaxError,
    StorageBackendError,
    UnsupportedStatementError,
    ValidationError,
)
from opql.repository import InMemorySearchRepository
from opql.types import Principal

_COLUMNS = ("title", "status", "assignees")


def run_cmd(
    text: str = typer.Argument(..., help="OPQL statement or free-text search"),
    rows: str = typer.Option(..., "--rows", help="JSON Lines file of rows or search results"),
    workspace: str = typer.Option(..., "--workspace", "-w", help="Workspace to search"),
    principal: Optional[str] = typer.Option(None, "--principal", help="Principal id for me()"),
    permissions: Optional[list[str]] = typer.Option(
        None, "--permission", "-p", help="Permission held by the principal (repeatable)"
    ),
    allow_all: bool = typer.Option(False, "--allow-all", help="Bypass row and field permissions"),
    types: Optional[list[str]] = typer.Option(
        None, "--type", "-t", help="Restrict to an entity type (repeatable)"
    ),
    limit: Optional[int] = typer.Option(None, "--limit", help="Page size"),
    cursor: Optional[str] = typer.Option(None, "--cursor", help="Paging cursor (offset:<n>)"),
    explain: bool = typer.Option(False, "--explain", help="Include history scan details"),
) -> None:
    """Run a query as a principal and print the visible rows."""
    from opql.cli import state

    try:
        repository = InMemorySearchRepository.from_jsonl(rows)
    except StorageBackendError as e:
        print_error(str(e))
        raise typer.Exit(ec.DATABASE_ERROR)

    engine = QueryEngine(repository, config=state.config)
    request = QueryRequest(
        principal=Principal(
            principal_id=principal,
            workspace_id=workspace,
            permissions=frozenset(permissions or ()),
            allow_all=allow_all,
        ),
        workspace_id=workspace,
        query=text,
        types=tuple(types) if types else None,
        limit=limit,
        cursor=cursor,
        explain=explain,
    )
    try:
        result = engine.execute(request)
    except OpqlSyntaxError as e:
        print_error(str(e))
        raise typer.Exit(ec.SYNTAX_ERROR)
    except (ValidationError, InvalidCursorError) as e:
        print_error(str(e))
        raise typer.Exit(ec.VALIDATION_ERROR)
    except UnsupportedStatementError as e:
        print_error(str(e))
        raise typer.Exit(ec.EXECUTION_FAILURE)

    if state.json_output:
        print_object(result.to_dict(), json_mode=True)
        return
    _print_result(result)


def _print_result(result: QueryResult) -> None:
    if result.groups is not None:
        headers = list(result.groups[0]) if result.groups else []
        print_table(headers, [[g.get(h) for h in headers] for g in result.groups])
    elif result.rows:
        headers = ["id", "type", "score", *_COLUMNS, "masked"]
        print_table(
            headers,
            [
                [r.entity_id, r.entity_type, r.score]
                + [r.values.get(c) for c in _COLUMNS]
                + [format_cell(list(r.masked_fields))]
                for r in result.rows
            ],
        )
    print(f"total: {result.total}")
    if result.next_cursor:
        print(f"next cursor: {result.next_cursor}")
    for scan in result.history_scans or ():
        outcome = "matched" if scan.matched else "masked" if scan.masked else "no match"
        print(
            f"history {scan.entity_id} {scan.field} {scan.verb}: {outcome} "
            f"({len(scan.segments)} segments, {len(scan.transitions)} transitions)"
        )
