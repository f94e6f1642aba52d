"""qualflow CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from qualflow.cli.init import init_cmd
from qualflow.cli.project import document_app, project_app
from qualflow.cli.queue import analyze_cmd, drain_cmd, enqueue_cmd, requeue_cmd, work_cmd
from qualflow.cli.search import search_cmd
from qualflow.cli.status import status_cmd
from qualflow.logging_config import configure_logging


def _installed_version() -> str:
    try:
        return importlib.metadata.version("qualflow")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"qualflow {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="qualflow",
    help=(
        "qualflow: transcript ingestion and content-analysis job queues.\n\n"
        "  qualflow enqueue   Queue one ingest job per document of a project.\n"
        "  qualflow work      Claim and process one job.\n"
        "  qualflow drain     Run workers until the queue is idle."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR. Overrides QUALFLOW_LOG_LEVEL."),
    ] = None,
    log_json: Annotated[
        bool,
        typer.Option("--log-json", help="Emit JSON log lines on stderr."),
    ] = False,
) -> None:
    """qualflow: transcript ingestion and content-analysis job queues."""
    configure_logging(level=log_level, json_output=log_json or None)


app.command("init")(init_cmd)
app.add_typer(project_app, name="project")
app.add_typer(document_app, name="document")
app.command("enqueue")(enqueue_cmd)
app.command("work")(work_cmd)
app.command("drain")(drain_cmd)
app.command("analyze")(analyze_cmd)
app.command("requeue")(requeue_cmd)
app.command("status")(status_cmd)
app.command("search")(search_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed qualflow version."""
    typer.echo(f"qualflow {_installed_version()}")


if __name__ == "__main__":
    app()
