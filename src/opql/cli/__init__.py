"""OPQL CLI: operator console for parsing, checking and running queries."""

from __future__ import annotations

from typing import Optional

import typer
from click.core import ParameterSource

from opql.cli import offline, parse_cmd, run, suggest_cmd
from opql.config import OpqlConfig
from opql.logging_config import configure_logging

app = typer.Typer(
    name="opql",
    help="OPQL CLI: parse, validate and run queries, and manage the offline index.",
    no_args_is_help=True,
)


class _State:
    """Global CLI state shared across subcommands."""

    json_output: bool = False
    log_level: str = "WARNING"
    offline_db: str = "opql-offline.db"
    config: OpqlConfig = OpqlConfig()


state = _State()


def _version_callback(value: bool) -> None:
    if value:
        from opql import __version__

        print(f"opql {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="JSON output when supported"),
    log_level: Optional[str] = typer.Option(
        None,
        "--log-level",
        envvar="OPQL_LOG_LEVEL",
        help="Log level for stderr diagnostics (default: WARNING)",
    ),
    offline_db: Optional[str] = typer.Option(
        None,
        "--offline-db",
        envvar="OPQL_OFFLINE_DB",
        help="Offline index SQLite file (default: opql-offline.db)",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version", is_eager=True, callback=_version_callback
    ),
) -> None:
    """Global options for all opql commands."""
    config = OpqlConfig.from_env()
    if log_level:
        config.log_level = log_level.upper()
    if offline_db:
        config.offline_db_path = offline_db
    try:
        configure_logging(config.log_level, config.log_format)
    except ValueError as e:
        # Blame the setting the operator actually supplied.
        if "level" not in str(e):
            hint = "OPQL_LOG_FORMAT"
        elif ctx.get_parameter_source("log_level") == ParameterSource.COMMANDLINE:
            hint = "--log-level"
        else:
            hint = "OPQL_LOG_LEVEL"
        raise typer.BadParameter(str(e), param_hint=hint)

    state.json_output = json_output
    state.log_level = config.log_level
    state.offline_db = config.offline_db_path
    state.config = config
    if ctx.invoked_subcommand is None and not version:
        print(ctx.get_help())
        raise typer.Exit()


app.add_typer(offline.app, name="offline", help="Plan, record and query the offline index")

app.command(name="parse")(parse_cmd.parse_cmd)
app.command(name="validate")(parse_cmd.validate_cmd)
app.command(name="context")(parse_cmd.context_cmd)
app.command(name="run")(run.run_cmd)
app.command(name="suggest")(suggest_cmd.suggest_cmd)
app.command(name="jql")(suggest_cmd.jql_cmd)


def main() -> None:
    """Entry point for the opql CLI."""
    app()
