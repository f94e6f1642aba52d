"""qualflow init: scaffold a qualflow workspace.

Creates:
  qualflow.yaml   project config (models, chunking; never API keys)
  qualflow.db     empty database with schema
  blobs/          storage root for documents added with --store
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from qualflow.cli.common import EXIT_VALIDATION, console, err_console, open_db
from qualflow.cli.errors import err_config
from qualflow.config import ConfigError, load_config, write_project_config

_DEFAULT_PROJECT_DIR = Path(".")


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
) -> None:
    """Initialize a qualflow workspace (config, database, blob storage)."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    cfg_path = write_project_config(project_dir)
    console.print(f"  [green]✓[/] {cfg_path.name}")

    try:
        cfg = load_config(project_dir)
    except ConfigError as exc:
        err_console.print(err_config(str(exc)))
        raise typer.Exit(EXIT_VALIDATION) from exc

    db_path = Path(cfg.database)
    if not db_path.is_absolute():
        db_path = project_dir / db_path
    existed = db_path.exists()
    open_db(db_path, create=True).close()
    note = " (already existed, schema up to date)" if existed else ""
    console.print(f"  [green]✓[/] {db_path.name}{note}")

    blob_root = project_dir / cfg.storage.blob_root
    blob_root.mkdir(parents=True, exist_ok=True)
    console.print(f"  [green]✓[/] {cfg.storage.blob_root}/")

    console.print("\n[bold green]✓ Workspace initialized.[/]")
    console.print("\nNext steps:")
    console.print("  1. qualflow project add <name> --guide guide.json")
    console.print("  2. qualflow document add <project-id> transcript.txt")
    console.print("  3. qualflow enqueue <project-id>")
    console.print("  4. qualflow drain --workers 4")
    console.print("  5. qualflow analyze <project-id> && qualflow work --kind analysis")
