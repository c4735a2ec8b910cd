"""opql suggest and jql: autocomplete and JQL translation for search boxes."""

from __future__ import annotations

from typing import Optional

import typer

from opql.cli import _exitcodes as ec
from opql.cli._output import print_error, print_object, print_table
from opql.errors import JqlSyntaxError, OpqlSyntaxError, StorageBackendError, ValidationError
from opql.jql import compile_jql
from opql.parser import caret_line
from opql.repository import InMemorySearchRepository
from opql.suggest import DEFAULT_LIMIT, Suggester
from opql.types import Principal


def suggest_cmd(
    text: str = typer.Argument(..., help="Partial query text"),
    cursor: Optional[int] = typer.Option(
        None, "--cursor", help="Caret offset (default: end of text)"
    ),
    rows: Optional[str] = typer.Option(
        None, "--rows", help="JSON Lines file of rows to draw values from"
    ),
    workspace: Optional[str] = typer.Option(None, "--workspace", "-w", help="Workspace to read"),
    principal: Optional[str] = typer.Option(None, "--principal", help="Principal id"),
    permissions: Optional[list[str]] = typer.Option(
        None, "--permission", "-p", help="Permission held by the principal (repeatable)"
    ),
    allow_all: bool = typer.Option(False, "--allow-all", help="Bypass row and field permissions"),
    limit: int = typer.Option(DEFAULT_LIMIT, "--limit", help="Maximum suggestions"),
) -> None:
    """Suggest completions and corrections for the token at the caret."""
    from opql.cli import state

    repository = InMemorySearchRepository()
    if rows:
        try:
            repository = InMemorySearchRepository.from_jsonl(rows)
        except StorageBackendError as e:
            print_error(str(e))
            raise typer.Exit(ec.DATABASE_ERROR)

    suggester = Suggester(repository, config=state.config)
    try:
        response = suggester.suggest(
            text,
            cursor,
            principal=Principal(
                principal_id=principal,
                workspace_id=workspace,
                permissions=frozenset(permissions or ()),
                allow_all=allow_all,
            ),
            workspace_id=workspace,
            limit=limit,
        )
    except ValidationError as e:
        print_error(str(e))
        raise typer.Exit(ec.VALIDATION_ERROR)

    if state.json_output:
        print_object(response.to_dict(), json_mode=True)
        return
    print_table(
        ["value", "kind", "label", "score"],
        [[i.value, i.kind, i.label, f"{i.score:.2f}"] for i in response.items],
    )
    if response.completion is not None:
        print(f"complete: {response.completion.insert_text!r}")
    for correction in response.corrections:
        print(f"did you mean: {correction.text} ({correction.reason})")


def jql_cmd(
    text: str = typer.Argument(..., help="JQL query"),
    source: str = typer.Option("tasks", "--source", help="Entity source for the FIND"),
) -> None:
    """Translate a JQL query into OPQL."""
    from opql.cli import state

    try:
        compiled = compile_jql(text, source=source)
    except OpqlSyntaxError as e:
        print_error(str(e))
        if isinstance(e, JqlSyntaxError):
            print(caret_line(text.strip(), e.position))
        raise typer.Exit(ec.SYNTAX_ERROR)

    if state.json_output:
        print_object(
            {
                "opql": compiled.opql,
                "original": compiled.original,
                "statement": compiled.statement.to_dict(),
            },
            json_mode=True,
        )
        return
    print(compiled.opql)
