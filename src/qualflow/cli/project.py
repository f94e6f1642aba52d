"""qualflow project / document commands: data entry for projects, guides and transcripts."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from qualflow.cli.common import (
    EXIT_VALIDATION,
    DbOption,
    emit,
    err_console,
    exit_with,
    load_cli_config,
    open_db,
    resolve_db,
)
from qualflow.cli.errors import err_file_not_found
from qualflow.db.repository import Repository
from qualflow.errors import ProjectNotFoundError
from qualflow.ingest.blob_store import LocalBlobStore
from qualflow.queue.enqueue import replace_document

project_app = typer.Typer(help="Manage research projects.", no_args_is_help=True)
document_app = typer.Typer(help="Manage project documents (transcripts).", no_args_is_help=True)


def _read_text(path: Path) -> str:
    if not path.is_file():
        err_console.print(err_file_not_found(str(path)))
        emit({"success": False, "code": "FILE_NOT_FOUND", "error": f"File not found: {path}"})
        raise typer.Exit(EXIT_VALIDATION)
    return path.read_text(encoding="utf-8", errors="replace")


@project_app.command("add")
def project_add_cmd(
    name: Annotated[str, typer.Argument(help="Project name.")],
    guide: Annotated[
        Path | None,
        typer.Option("--guide", "-g", help="Discussion guide file (JSON or plain text)."),
    ] = None,
    db: DbOption = None,
) -> None:
    """Create a project, optionally with its discussion guide."""
    cfg = load_cli_config()
    guide_text = _read_text(guide) if guide is not None else None
    conn = open_db(resolve_db(db, cfg))
    try:
        project = Repository(conn).add_project(name, guide_context=guide_text)
    finally:
        conn.close()
    emit({"success": True, "project_id": project.id, "name": project.name})


@project_app.command("guide")
def project_guide_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    guide: Annotated[Path, typer.Argument(help="Discussion guide file (JSON or plain text).")],
    db: DbOption = None,
) -> None:
    """Set or replace a project's discussion guide."""
    cfg = load_cli_config()
    guide_text = _read_text(guide)
    conn = open_db(resolve_db(db, cfg))
    try:
        repo = Repository(conn)
        if repo.get_project(project_id) is None:
            raise ProjectNotFoundError(project_id)
        repo.set_guide(project_id, guide_text)
    except ProjectNotFoundError as exc:
        exit_with(exc)
    finally:
        conn.close()
    emit({"success": True, "project_id": project_id})


@document_app.command("add")
def document_add_cmd(
    project_id: Annotated[str, typer.Argument(help="Project id.")],
    path: Annotated[Path, typer.Argument(help="Transcript text file.")],
    respondent: Annotated[
        str | None,
        typer.Option("--respondent", "-r", help="Respondent name used as the analysis key."),
    ] = None,
    store: Annotated[
        bool,
        typer.Option("--store", help="Copy the file into blob storage instead of storing content inline."),
    ] = False,
    db: DbOption = None,
) -> None:
    """Add a transcript to a project."""
    cfg = load_cli_config()
    text = _read_text(path)
    db_path = resolve_db(db, cfg)
    conn = open_db(db_path)
    try:
        repo = Repository(conn)
        if repo.get_project(project_id) is None:
            raise ProjectNotFoundError(project_id)
        if store:
            blobs = LocalBlobStore(db_path.parent / cfg.storage.blob_root)
            storage_path = blobs.upload(f"{project_id}/{path.name}", text.encode("utf-8"))
            doc = repo.add_document(project_id, path.name, storage_path=storage_path, respondent_name=respondent)
        else:
            doc = repo.add_document(project_id, path.name, content=text, respondent_name=respondent)
    except ProjectNotFoundError as exc:
        exit_with(exc)
    finally:
        conn.close()
    emit({"success": True, "document_id": doc.id, "name": doc.name, "stored": store})


@document_app.command("replace")
def document_replace_cmd(
    document_id: Annotated[str, typer.Argument(help="Document id.")],
    path: Annotated[Path, typer.Argument(help="New transcript text file.")],
    db: DbOption = None,
) -> None:
    """Replace a document's content. Its chunks are dropped and its ingest job re-queued."""
    cfg = load_cli_config()
    text = _read_text(path)
    conn = open_db(resolve_db(db, cfg))
    try:
        doc = replace_document(conn, document_id, text)
    finally:
        conn.close()
    if doc is None:
        emit({"success": False, "code": "DOCUMENT_NOT_FOUND", "error": f"Document not found: {document_id}"})
        raise typer.Exit(EXIT_VALIDATION)
    emit({"success": True, "document_id": doc.id, "version_hash": doc.version_hash})
