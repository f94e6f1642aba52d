"""qualflow status command.

Shows a project's ingest aggregate (job counts, first error, ETA) and the
analysis job's progress. ``--json`` prints the raw view for polling.
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from qualflow.cli.common import DbOption, console, emit, exit_with, load_cli_config, open_db, resolve_db
from qualflow.queue.enqueue import project_status


def status_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    as_json: Annotated[bool, typer.Option("--json", help="Print JSON instead of tables.")] = False,
    db: DbOption = None,
) -> None:
    """Show ingest and analysis progress for a project."""
    cfg = load_cli_config()
    conn = open_db(resolve_db(db, cfg))
    try:
        view = project_status(conn, project_id)
    except Exception as exc:
        exit_with(exc)
    finally:
        conn.close()

    if as_json:
        emit({"success": True, **view})
        return

    _show_project_panel(view)
    _show_ingest_panel(view["ingest"])
    _show_analysis_panel(view["analysis"])


def _show_project_panel(view: dict) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("key", style="dim")
    table.add_column("value")
    table.add_row("Project", f"{view['name']} ({view['project_id']})")
    table.add_row("Documents", str(view["documents"]))
    table.add_row("Chunks", str(view["chunks"]))
    table.add_row("Embeddings", str(view["embeddings"]))
    console.print(Panel(table, title="[bold]Project[/]", expand=False))


def _show_ingest_panel(ingest: dict | None) -> None:
    if ingest is None:
        console.print(
            Panel(
                "[yellow]Not ingested yet.[/]\n  Run:  qualflow enqueue <project-id>",
                title="[bold]Ingest[/]",
                expand=False,
            )
        )
        return
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("key", style="dim")
    table.add_column("value")
    table.add_row("Status", _status_markup(ingest["status"]))
    table.add_row("Jobs", f"{ingest['jobs_completed']}/{ingest['jobs_total']} completed")
    if ingest["jobs_failed"]:
        table.add_row("Failed", f"[red]{ingest['jobs_failed']}[/]")
        table.add_row("First error", ingest["error_message"] or "")
    if ingest["estimated_completion"] and ingest["status"] != "completed":
        table.add_row("ETA", ingest["estimated_completion"])
    console.print(Panel(table, title="[bold]Ingest[/]", expand=False))


def _show_analysis_panel(analysis: dict | None) -> None:
    if analysis is None:
        return
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("key", style="dim")
    table.add_column("value")
    table.add_row("Status", _status_markup(analysis["status"]))
    table.add_row("Progress", f"{analysis['progress_percent']}%")
    table.add_row("Documents", f"{analysis['batches_completed']}/{analysis['batches_total']}")
    if analysis["error_message"]:
        table.add_row("Error", analysis["error_message"])
    console.print(Panel(table, title="[bold]Analysis[/]", expand=False))


def _status_markup(status: str) -> str:
    colour = {"completed": "green", "failed": "red", "running": "cyan", "processing": "cyan"}.get(status, "yellow")
    return f"[{colour}]{status}[/]"
