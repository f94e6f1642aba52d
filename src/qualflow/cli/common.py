"""Shared plumbing for qualflow commands: config, database, JSON output, exit codes.

Exit codes: 0 success, 2 invalid request (bad project id, missing DB or
file, bad config), 1 internal failure (remote endpoint, failed job).
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Annotated, NoReturn

import structlog
import typer
from rich.console import Console

from qualflow.cli.errors import (
    err_config,
    err_missing_project_id,
    err_no_api_key,
    err_no_db,
    err_project_not_found,
)
from qualflow.config import ConfigError, QualflowConfig, load_config
from qualflow.db.connection import Database
from qualflow.db.schema import initialize
from qualflow.errors import MissingProjectIdError, ProjectNotFoundError, QualflowError, ValidationError
from qualflow.llm_client import provider_env_var, validate_api_key

console = Console()
err_console = Console(stderr=True)
log = structlog.get_logger("qualflow.cli")

EXIT_INTERNAL = 1
EXIT_VALIDATION = 2

DbOption = Annotated[
    Path | None,
    typer.Option("--db", help="Path to the qualflow database. Defaults to config 'database'."),
]


def load_cli_config() -> QualflowConfig:
    try:
        return load_config()
    except ConfigError as exc:
        err_console.print(err_config(str(exc)))
        raise typer.Exit(EXIT_VALIDATION) from exc


def resolve_db(db: Path | None, cfg: QualflowConfig) -> Path:
    return db if db is not None else Path(cfg.database)


def open_db(db_path: Path, *, create: bool = False) -> sqlite3.Connection:
    """Open *db_path* with schema migrations applied.

    Exits with code 2 when the file is missing and *create* is False.
    """
    if not create and not db_path.exists():
        err_console.print(err_no_db(str(db_path)))
        emit({"success": False, "code": "NO_DATABASE", "error": f"No database at {db_path}"})
        raise typer.Exit(EXIT_VALIDATION)
    conn = Database(db_path).connect()
    initialize(conn)
    return conn


def emit(payload: dict) -> None:
    """Write one JSON document to stdout."""
    typer.echo(json.dumps(payload, default=str))


def exit_with(exc: Exception) -> NoReturn:
    """Report *exc* as JSON and exit with the matching code."""
    if isinstance(exc, ValidationError):
        if isinstance(exc, MissingProjectIdError):
            err_console.print(err_missing_project_id())
        elif isinstance(exc, ProjectNotFoundError):
            err_console.print(err_project_not_found(exc.project_id))
        emit({"success": False, "code": exc.code, "error": str(exc)})
        raise typer.Exit(EXIT_VALIDATION) from exc

    log.error("command_failed", error=str(exc), exc_info=exc)
    retryable = isinstance(exc, QualflowError) and exc.retryable
    emit({"success": False, "error": str(exc), "retryable": retryable})
    raise typer.Exit(EXIT_INTERNAL) from exc


def require_api_key(model: str) -> None:
    """Exit with code 2 when the provider key for *model* is not in the environment."""
    try:
        validate_api_key(model)
    except EnvironmentError as exc:
        provider = model.split("/")[0].lower() if "/" in model else "openai"
        err_console.print(err_no_api_key(provider, provider_env_var(model)))
        emit({"success": False, "code": "NO_API_KEY", "error": str(exc)})
        raise typer.Exit(EXIT_VALIDATION) from exc
