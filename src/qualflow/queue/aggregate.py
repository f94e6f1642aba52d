"""Project-level ingest aggregate, recomputed from sibling job rows.

The metadata row is never incremented in place: every refresh rescans the
project's ingest jobs, so the counters cannot drift from job state.
"""

from __future__ import annotations

from qualflow.db.jobs import JobStore
from qualflow.db.models import JobStatus, ProjectIngestMetadata, utc_now

STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"


def refresh_ingest_metadata(jobs: JobStore, project_id: str) -> ProjectIngestMetadata | None:
    """Recount the project's ingest jobs and rewrite its metadata row.

    Status is ``completed`` only when every job completed; a failed job keeps
    the project ``processing`` with ``jobs_failed > 0``. A row with no jobs,
    or whose jobs are all still queued, is ``queued``.

    Returns:
        The refreshed row, or None if the project has no metadata row.
    """
    meta = jobs.get_metadata(project_id)
    if meta is None:
        return None

    statuses = jobs.ingest_statuses(project_id)
    total = len(statuses)
    completed = sum(1 for status, _ in statuses if status is JobStatus.COMPLETED)
    failed = sum(1 for status, _ in statuses if status is JobStatus.FAILED)
    queued = sum(1 for status, _ in statuses if status is JobStatus.QUEUED)
    first_error = next(
        (error for status, error in statuses if status is JobStatus.FAILED and error),
        None,
    )

    if queued == total:
        status = STATUS_QUEUED
    elif completed == total:
        status = STATUS_COMPLETED
    else:
        status = STATUS_PROCESSING

    finished_at = None
    if total and completed + failed == total:
        finished_at = meta.processing_completed_at or utc_now()

    jobs.write_metadata_counts(
        project_id,
        jobs_total=total,
        jobs_completed=completed,
        jobs_failed=failed,
        status=status,
        first_error=first_error,
        completed_at=finished_at,
    )
    return jobs.get_metadata(project_id)
