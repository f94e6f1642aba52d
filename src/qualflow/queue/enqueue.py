"""Queue enqueuer: create ingest jobs, the analysis job, and operator re-enqueues.

Validation errors are raised before anything is written. Ingest jobs and the
project metadata row are written in one transaction.
"""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

import structlog

from qualflow.config import QualflowConfig
from qualflow.db.jobs import JobStore
from qualflow.db.models import AnalysisJob, Document, IngestJob, JobKind, JobStatus, Project
from qualflow.db.repository import Repository
from qualflow.errors import MissingProjectIdError, ProjectNotFoundError
from qualflow.queue.aggregate import refresh_ingest_metadata

log = structlog.get_logger(__name__)


@dataclass
class EnqueueResult:
    project_id: str
    jobs_created: int
    total_documents: int
    jobs_requeued: int = 0
    estimated_completion: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def _require_project(repo: Repository, project_id: str | None) -> Project:
    if not project_id or not str(project_id).strip():
        raise MissingProjectIdError()
    project = repo.get_project(project_id)
    if project is None:
        raise ProjectNotFoundError(project_id)
    return project


def enqueue_ingest(
    conn: sqlite3.Connection,
    project_id: str | None,
    cfg: QualflowConfig,
    *,
    force: bool = False,
) -> EnqueueResult:
    """Create one queued ingest job per document of the project.

    Documents that already have a job keep it, except that a completed job whose
    document has no chunks for its current revision (content replaced since it
    ran) is re-queued. With *force*, the project's chunks, embeddings and ingest
    jobs are deleted first and every document is re-queued.

    Raises:
        MissingProjectIdError: *project_id* is empty.
        ProjectNotFoundError: No such project.
    """
    repo = Repository(conn)
    jobs = JobStore(conn, lease_seconds=cfg.queue.lease_seconds)
    project = _require_project(repo, project_id)

    documents = repo.list_documents(project.id)
    if not documents:
        log.info("enqueue_no_documents", project_id=project.id)
        return EnqueueResult(project_id=project.id, jobs_created=0, total_documents=0)

    if force:
        # Chunk deletion manages its own transaction (vec tables included).
        repo.delete_chunks_for_project(project.id)

    jobs_created = 0
    jobs_requeued = 0
    try:
        if force:
            jobs.delete_ingest_jobs(project.id, commit=False)
        jobs.upsert_metadata(
            project.id,
            total_documents=len(documents),
            chunk_token_size=cfg.chunking.chunk_tokens,
            overlap_tokens=cfg.chunking.overlap_tokens,
            embedding_model=cfg.embedding.model,
            commit=False,
        )
        for doc in documents:
            if jobs.insert_ingest_job(project.id, doc.id, commit=False):
                jobs_created += 1
            elif (stale := _stale_ingest_job(repo, jobs, doc)) is not None:
                jobs.requeue(JobKind.INGEST, stale.id, commit=False)
                jobs_requeued += 1
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    refresh_ingest_metadata(jobs, project.id)
    pending = jobs_created + jobs_requeued
    eta = datetime.now(timezone.utc) + timedelta(seconds=cfg.queue.seconds_per_document * pending)
    estimated_completion = eta.isoformat(timespec="microseconds")
    jobs.set_estimated_completion(project.id, estimated_completion)

    log.info(
        "ingest_enqueued",
        project_id=project.id,
        jobs_created=jobs_created,
        jobs_requeued=jobs_requeued,
        total_documents=len(documents),
        force=force,
    )
    return EnqueueResult(
        project_id=project.id,
        jobs_created=jobs_created,
        total_documents=len(documents),
        jobs_requeued=jobs_requeued,
        estimated_completion=estimated_completion,
    )


def _stale_ingest_job(repo: Repository, jobs: JobStore, doc: Document) -> IngestJob | None:
    """The document's completed ingest job, if its chunks no longer match the document."""
    job = jobs.get_ingest_job(doc.project_id, doc.id)
    if job is None or job.status is not JobStatus.COMPLETED:
        return None
    if repo.count_chunks(doc.project_id, doc.id) == 0:
        return job
    if repo.count_stale_chunks(doc.project_id, doc.id, doc.version_hash):
        return job
    return None


def replace_document(conn: sqlite3.Connection, document_id: str, content: str) -> Document | None:
    """Replace a document's content and re-queue its finished ingest job.

    Returns:
        The updated document, or None if it does not exist.
    """
    repo = Repository(conn)
    jobs = JobStore(conn)
    doc = repo.replace_document_content(document_id, content)
    if doc is None:
        return None
    job = jobs.get_ingest_job(doc.project_id, doc.id)
    if job is not None and jobs.requeue(JobKind.INGEST, job.id):
        refresh_ingest_metadata(jobs, doc.project_id)
        log.info("document_requeued", project_id=doc.project_id, document_id=doc.id, job_id=job.id)
    return doc


def enqueue_analysis(conn: sqlite3.Connection, project_id: str | None) -> AnalysisJob:
    """Return the project's active analysis job, re-arm a finished one, or create one."""
    repo = Repository(conn)
    jobs = JobStore(conn)
    project = _require_project(repo, project_id)

    existing = jobs.get_analysis_job(project.id)
    if existing is None:
        job = jobs.insert_analysis_job(project.id)
        log.info("analysis_enqueued", project_id=project.id, job_id=job.id)
        return job
    if existing.status.is_terminal:
        jobs.requeue(JobKind.ANALYSIS, existing.id)
        log.info("analysis_requeued", project_id=project.id, job_id=existing.id, previous=existing.status.value)
        return jobs.get_analysis_job(project.id)
    return existing


def requeue_failed(conn: sqlite3.Connection, project_id: str | None, kind: JobKind = JobKind.INGEST) -> int:
    """Re-queue the project's failed jobs of *kind*. Returns how many were re-queued."""
    repo = Repository(conn)
    jobs = JobStore(conn)
    project = _require_project(repo, project_id)

    count = jobs.requeue_failed(kind, project.id)
    if kind is JobKind.INGEST:
        refresh_ingest_metadata(jobs, project.id)
    log.info("jobs_requeued", project_id=project.id, kind=kind.value, count=count)
    return count


def project_status(conn: sqlite3.Connection, project_id: str | None) -> dict:
    """Progress view of a project: ingest aggregate plus analysis job progress."""
    repo = Repository(conn)
    jobs = JobStore(conn)
    project = _require_project(repo, project_id)

    meta = jobs.get_metadata(project.id)
    analysis = jobs.get_analysis_job(project.id)
    ingest = None
    if meta is not None:
        ingest = {
            "status": meta.status,
            "jobs_total": meta.jobs_total,
            "jobs_completed": meta.jobs_completed,
            "jobs_failed": meta.jobs_failed,
            "error_message": meta.first_error,
            "estimated_completion": meta.estimated_completion,
        }
    return {
        "project_id": project.id,
        "name": project.name,
        "documents": len(repo.list_documents(project.id)),
        "chunks": repo.count_chunks(project.id),
        "embeddings": repo.count_embeddings(project.id),
        "ingest": ingest,
        "analysis": None
        if analysis is None
        else {
            "job_id": analysis.id,
            "status": analysis.status.value,
            "progress_percent": analysis.progress_percent,
            "batches_completed": analysis.batches_completed,
            "batches_total": analysis.batches_total,
            "error_message": analysis.error_message,
        },
    }

