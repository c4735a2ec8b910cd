"""opql parse, validate and context: inspect query text without running it."""

from __future__ import annotations

from typing import Optional

import typer

from opql.cli import _exitcodes as ec
from opql.cli._output import print_document, print_error, print_object
from opql.cursor import analyze
from opql.errors import OpqlSyntaxError
from opql.parser import caret_line, parse
from opql.schema import FieldRegistry


def parse_cmd(
    text: str = typer.Argument(..., help="OPQL statement"),
    fmt: str = typer.Option("json", "--format", help="Output format: json or yaml"),
) -> None:
    """Parse a statement and print its syntax tree."""
    if fmt not in ("json", "yaml"):
        print_error(f"Unknown format '{fmt}'; expected json or yaml")
        raise typer.Exit(ec.USAGE_ERROR)
    try:
        statement = parse(text)
    except OpqlSyntaxError as e:
        print_error(str(e))
        print(caret_line(text, e.position))
        raise typer.Exit(ec.SYNTAX_ERROR)
    print_document(statement.to_dict(), fmt)


def validate_cmd(
    text: str = typer.Argument(..., help="OPQL statement"),
) -> None:
    """Check that a statement parses and only references known entities and fields."""
    from opql.cli import state
    from opql.engine import QueryEngine
    from opql.repository import InMemorySearchRepository

    engine = QueryEngine(InMemorySearchRepository(), registry=FieldRegistry(), config=state.config)
    result = engine.validate(text)
    if state.json_output:
        print_object(result.to_dict(), json_mode=True)
    elif result.valid:
        print("valid")
    else:
        print_error(result.error or "invalid")
        if result.caret is not None:
            print(result.caret)
    if not result.valid:
        code = ec.SYNTAX_ERROR if result.position is not None else ec.VALIDATION_ERROR
        raise typer.Exit(code)


def context_cmd(
    text: str = typer.Argument(..., help="Partial query text"),
    cursor: Optional[int] = typer.Option(
        None, "--cursor", help="Caret offset (default: end of text)"
    ),
) -> None:
    """Show what the autocomplete analyzer expects at the caret."""
    from opql.cli import state

    print_object(analyze(text, cursor).to_dict(), json_mode=state.json_output)
