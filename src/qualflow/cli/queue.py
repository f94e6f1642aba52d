"""qualflow queue commands: enqueue, work, drain, analyze, requeue.

These are the trigger surface of the pipeline. Each prints one JSON document
to stdout; human-facing hints go to stderr.
"""

from __future__ import annotations

from typing import Annotated

import typer

from qualflow.cli.common import (
    EXIT_INTERNAL,
    DbOption,
    emit,
    err_console,
    exit_with,
    load_cli_config,
    open_db,
    require_api_key,
    resolve_db,
)
from qualflow.cli.errors import err_job_failed, warn_failed_jobs
from qualflow.config import QualflowConfig
from qualflow.db.models import JobKind
from qualflow.queue.drain import drain, worker_factory
from qualflow.queue.enqueue import enqueue_analysis, enqueue_ingest, requeue_failed

KindOption = Annotated[
    JobKind,
    typer.Option("--kind", "-k", help="Queue to operate on.", case_sensitive=False),
]


def _model_for(kind: JobKind, cfg: QualflowConfig) -> str:
    return cfg.embedding.model if kind is JobKind.INGEST else cfg.chat.model


def enqueue_cmd(
    project_id: Annotated[str, typer.Argument(help="Project to ingest.")],
    force: Annotated[
        bool,
        typer.Option("--force", help="Delete existing chunks, embeddings and jobs and re-queue everything."),
    ] = False,
    db: DbOption = None,
) -> None:
    """Create one ingest job per document of a project."""
    cfg = load_cli_config()
    conn = open_db(resolve_db(db, cfg))
    try:
        result = enqueue_ingest(conn, project_id, cfg, force=force)
    except Exception as exc:
        exit_with(exc)
    finally:
        conn.close()
    emit({"success": True, **result.to_dict()})


def work_cmd(
    kind: KindOption = JobKind.INGEST,
    job_id: Annotated[
        str | None,
        typer.Option("--job-id", help="Claim this job instead of the oldest queued one."),
    ] = None,
    db: DbOption = None,
) -> None:
    """Claim and process at most one job."""
    cfg = load_cli_config()
    require_api_key(_model_for(kind, cfg))
    db_path = resolve_db(db, cfg)
    conn = open_db(db_path)
    worker = worker_factory(kind, cfg, base_dir=db_path.parent)(conn)
    try:
        result = worker.run_once(job_id)
    except Exception as exc:
        err_console.print(err_job_failed(kind.value, str(exc)))
        exit_with(exc)
    finally:
        conn.close()
    emit(result.to_dict())


def drain_cmd(
    kind: KindOption = JobKind.INGEST,
    workers: Annotated[
        int,
        typer.Option("--workers", "-w", min=1, help="Concurrent worker invocations."),
    ] = 1,
    db: DbOption = None,
) -> None:
    """Run workers until the queue is idle. Exits 1 if any job failed."""
    cfg = load_cli_config()
    require_api_key(_model_for(kind, cfg))
    db_path = resolve_db(db, cfg)
    open_db(db_path).close()
    try:
        result = drain(db_path, worker_factory(kind, cfg, base_dir=db_path.parent), workers=workers)
    except Exception as exc:
        exit_with(exc)
    emit({"success": result.failed == 0, **result.to_dict()})
    if result.failed:
        err_console.print(warn_failed_jobs(result.failed))
        raise typer.Exit(EXIT_INTERNAL)


def analyze_cmd(
    project_id: Annotated[str, typer.Argument(help="Project to analyze.")],
    db: DbOption = None,
) -> None:
    """Queue the content-analysis job for a project."""
    cfg = load_cli_config()
    conn = open_db(resolve_db(db, cfg))
    try:
        job = enqueue_analysis(conn, project_id)
    except Exception as exc:
        exit_with(exc)
    finally:
        conn.close()
    emit({"success": True, "job_id": job.id, "status": job.status.value})


def requeue_cmd(
    project_id: Annotated[str, typer.Argument(help="Project whose failed jobs to re-queue.")],
    kind: KindOption = JobKind.INGEST,
    db: DbOption = None,
) -> None:
    """Re-queue a project's failed jobs."""
    cfg = load_cli_config()
    conn = open_db(resolve_db(db, cfg))
    try:
        count = requeue_failed(conn, project_id, kind)
    except Exception as exc:
        exit_with(exc)
    finally:
        conn.close()
    emit({"success": True, "kind": kind.value, "requeued": count})
