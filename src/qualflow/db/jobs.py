"""Persisted job queues: ingest jobs, analysis jobs, and the ingest metadata row.

Claiming is a single conditional ``UPDATE ... RETURNING`` executed inside a
``BEGIN IMMEDIATE`` transaction, so at most one worker holds a job at a time.
A ``running`` job becomes claimable again only after its lease expires, which
is how work abandoned by a crashed worker is picked back up.

Rows are decoded into typed IngestJob / AnalysisJob instances here; JSON
columns never leave this module as raw strings.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone

from qualflow.db.models import (
    AnalysisJob,
    IngestJob,
    IngestPhase,
    IngestProgress,
    Job,
    JobKind,
    JobStatus,
    ProjectIngestMetadata,
    utc_now,
)

DEFAULT_LEASE_SECONDS = 900

_TABLES: dict[JobKind, str] = {
    JobKind.INGEST: "ingest_jobs",
    JobKind.ANALYSIS: "analysis_jobs",
}

_CLAIMABLE = "(status = 'queued' OR (status = 'running' AND claimed_at < :lease_cutoff))"


class JobStore:
    """Data access layer for job rows and the per-project ingest metadata row.

    Args:
        conn: Open connection; owned by the caller.
        lease_seconds: Age after which a ``running`` claim counts as abandoned.
    """

    def __init__(self, conn: sqlite3.Connection, lease_seconds: int = DEFAULT_LEASE_SECONDS) -> None:
        self._conn = conn
        self.lease_seconds = lease_seconds

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def claim_next(self, kind: JobKind, worker_id: str) -> Job | None:
        """Atomically claim the oldest claimable job of *kind*.

        Returns:
            The claimed job (status ``running``), or None if nothing is claimable.
        """
        table = _TABLES[kind]
        sql = f"""
            UPDATE {table}
            SET status = 'running',
                worker_id = :worker_id,
                claimed_at = :now,
                started_at = COALESCE(started_at, :now),
                updated_at = :now
            WHERE id = (
                SELECT id FROM {table}
                WHERE {_CLAIMABLE}
                ORDER BY created_at, rowid
                LIMIT 1
            )
            AND {_CLAIMABLE}
            RETURNING *
        """  # noqa: S608
        return self._claim(kind, sql, {"worker_id": worker_id})

    def claim_job(self, kind: JobKind, job_id: str, worker_id: str) -> Job | None:
        """Claim one specific job. None if it is missing, terminal, or held by a live worker."""
        table = _TABLES[kind]
        sql = f"""
            UPDATE {table}
            SET status = 'running',
                worker_id = :worker_id,
                claimed_at = :now,
                started_at = COALESCE(started_at, :now),
                updated_at = :now
            WHERE id = :job_id AND {_CLAIMABLE}
            RETURNING *
        """  # noqa: S608
        return self._claim(kind, sql, {"worker_id": worker_id, "job_id": job_id})

    def _claim(self, kind: JobKind, sql: str, params: dict) -> Job | None:
        now = datetime.now(timezone.utc)
        params = {
            **params,
            "now": now.isoformat(timespec="microseconds"),
            "lease_cutoff": (now - timedelta(seconds=self.lease_seconds)).isoformat(timespec="microseconds"),
        }
        if self._conn.in_transaction:
            self._conn.commit()
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            row = self._conn.execute(sql, params).fetchone()
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise
        return _decode(kind, row) if row else None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job(self, kind: JobKind, job_id: str) -> Job | None:
        row = self._conn.execute(
            f"SELECT * FROM {_TABLES[kind]} WHERE id = ?", (job_id,)  # noqa: S608
        ).fetchone()
        return _decode(kind, row) if row else None

    def list_ingest_jobs(self, project_id: str) -> list[IngestJob]:
        rows = self._conn.execute(
            "SELECT * FROM ingest_jobs WHERE project_id = ? ORDER BY created_at, rowid",
            (project_id,),
        ).fetchall()
        return [_row_to_ingest_job(r) for r in rows]

    def get_ingest_job(self, project_id: str, document_id: str) -> IngestJob | None:
        row = self._conn.execute(
            "SELECT * FROM ingest_jobs WHERE project_id = ? AND document_id = ?",
            (project_id, document_id),
        ).fetchone()
        return _row_to_ingest_job(row) if row else None

    def get_analysis_job(self, project_id: str) -> AnalysisJob | None:
        row = self._conn.execute(
            "SELECT * FROM analysis_jobs WHERE project_id = ?", (project_id,)
        ).fetchone()
        return _row_to_analysis_job(row) if row else None

    def ingest_statuses(self, project_id: str) -> list[tuple[JobStatus, str | None]]:
        """(status, error_message) of every ingest job of a project, oldest first."""
        rows = self._conn.execute(
            "SELECT status, error_message FROM ingest_jobs WHERE project_id = ? ORDER BY created_at, rowid",
            (project_id,),
        ).fetchall()
        return [(JobStatus(r["status"]), r["error_message"]) for r in rows]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def insert_ingest_job(self, project_id: str, document_id: str, *, commit: bool = True) -> bool:
        """Insert a queued ingest job unless the (project, document) pair has one.

        Returns:
            True if a new row was inserted.
        """
        now = utc_now()
        cur = self._conn.execute(
            """
            INSERT INTO ingest_jobs (id, project_id, document_id, status, created_at, updated_at)
            VALUES (?, ?, ?, 'queued', ?, ?)
            ON CONFLICT(project_id, document_id) DO NOTHING
            """,
            (str(uuid.uuid4()), project_id, document_id, now, now),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount == 1

    def delete_ingest_jobs(self, project_id: str, *, commit: bool = True) -> int:
        cur = self._conn.execute("DELETE FROM ingest_jobs WHERE project_id = ?", (project_id,))
        if commit:
            self._conn.commit()
        return cur.rowcount

    def insert_analysis_job(self, project_id: str) -> AnalysisJob:
        now = utc_now()
        row = self._conn.execute(
            """
            INSERT INTO analysis_jobs (id, project_id, status, created_at, updated_at)
            VALUES (?, ?, 'queued', ?, ?)
            RETURNING *
            """,
            (str(uuid.uuid4()), project_id, now, now),
        ).fetchone()
        self._conn.commit()
        return _row_to_analysis_job(row)

    # ------------------------------------------------------------------
    # Progress
    #
    # A progress write from the claiming worker also renews its lease:
    # claimed_at is the heartbeat checked by _CLAIMABLE.
    # ------------------------------------------------------------------

    def update_progress(
        self,
        job_id: str,
        phase: IngestPhase,
        done: int,
        total: int,
        *,
        worker_id: str | None = None,
    ) -> bool:
        """Record ingest progress and renew the lease.

        Returns:
            False if *worker_id* is given and no longer holds the job.
        """
        progress = IngestProgress(phase=phase, chunks_created=done, chunks_total=total)
        return self._heartbeat(
            "ingest_jobs",
            "progress = :progress",
            {"progress": json.dumps(progress.to_dict())},
            job_id,
            worker_id,
        )

    def update_batches(
        self,
        job_id: str,
        completed: int,
        total: int | None = None,
        *,
        worker_id: str | None = None,
    ) -> bool:
        if total is None:
            assignments = "batches_completed = :completed"
        else:
            assignments = "batches_completed = :completed, batches_total = :total, error_message = NULL"
        return self._heartbeat(
            "analysis_jobs",
            assignments,
            {"completed": completed, "total": total},
            job_id,
            worker_id,
        )

    def _heartbeat(
        self, table: str, assignments: str, params: dict, job_id: str, worker_id: str | None
    ) -> bool:
        sql = (
            f"UPDATE {table} SET {assignments}, updated_at = :now, "  # noqa: S608
            "claimed_at = CASE WHEN status = 'running' THEN :now ELSE claimed_at END "
            "WHERE id = :job_id" + _holder_clause(worker_id)
        )
        cur = self._conn.execute(
            sql, {**params, "now": utc_now(), "job_id": job_id, "worker_id": worker_id}
        )
        self._conn.commit()
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Terminal transitions (idempotent)
    #
    # With worker_id, only the current holder may finish a job; a worker
    # whose lease was taken over cannot overwrite the new holder's state.
    # ------------------------------------------------------------------

    def complete_job(
        self, kind: JobKind, job_id: str, result: dict, *, worker_id: str | None = None
    ) -> bool:
        """Mark a job completed and attach *result*. Safe to call twice.

        Returns:
            False if *worker_id* is given and no longer holds the job.
        """
        now = utc_now()
        cur = self._conn.execute(
            f"""
            UPDATE {_TABLES[kind]}
            SET status = 'completed', result = :result, error_message = NULL,
                completed_at = COALESCE(completed_at, :now), updated_at = :now
            WHERE id = :job_id
            """  # noqa: S608
            + _holder_clause(worker_id, ("running", "completed")),
            {"result": json.dumps(result), "now": now, "job_id": job_id, "worker_id": worker_id},
        )
        if kind is JobKind.ANALYSIS and cur.rowcount:
            self._conn.execute(
                "UPDATE analysis_jobs SET batches_completed = batches_total WHERE id = ?",
                (job_id,),
            )
        self._conn.commit()
        return cur.rowcount == 1

    def fail_job(
        self, kind: JobKind, job_id: str, error: str, *, worker_id: str | None = None
    ) -> bool:
        """Mark a job failed with *error*. Safe to call twice.

        ``retry_count`` is incremented only on the transition into ``failed``;
        the job is never re-queued here.

        Returns:
            False if *worker_id* is given and no longer holds the job.
        """
        now = utc_now()
        cur = self._conn.execute(
            f"""
            UPDATE {_TABLES[kind]}
            SET retry_count = retry_count + CASE WHEN status = 'failed' THEN 0 ELSE 1 END,
                status = 'failed', error_message = :error, completed_at = :now, updated_at = :now
            WHERE id = :job_id
            """  # noqa: S608
            + _holder_clause(worker_id, ("running", "failed")),
            {"error": error, "now": now, "job_id": job_id, "worker_id": worker_id},
        )
        self._conn.commit()
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Operator re-enqueue
    # ------------------------------------------------------------------

    def requeue(self, kind: JobKind, job_id: str, *, commit: bool = True) -> bool:
        """Reset a terminal job to ``queued`` and bump ``retry_count``.

        Returns:
            True if the job was terminal and has been re-queued.
        """
        cur = self._conn.execute(
            f"UPDATE {_TABLES[kind]} SET {_requeue_set(kind)} "  # noqa: S608
            "WHERE id = ? AND status IN ('completed', 'failed')",
            (utc_now(), job_id),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount == 1

    def requeue_failed(self, kind: JobKind, project_id: str) -> int:
        """Re-queue every failed job of *kind* for a project. Returns the count."""
        cur = self._conn.execute(
            f"UPDATE {_TABLES[kind]} SET {_requeue_set(kind)} "  # noqa: S608
            "WHERE project_id = ? AND status = 'failed'",
            (utc_now(), project_id),
        )
        self._conn.commit()
        return cur.rowcount

    # ------------------------------------------------------------------
    # Project ingest metadata
    # ------------------------------------------------------------------

    def upsert_metadata(
        self,
        project_id: str,
        *,
        total_documents: int,
        chunk_token_size: int,
        overlap_tokens: int,
        embedding_model: str,
        commit: bool = True,
    ) -> None:
        """Create or reset the metadata row to ``queued`` for a new enqueue run."""
        now = utc_now()
        self._conn.execute(
            """
            INSERT INTO project_ingest_metadata (
                project_id, status, total_documents, jobs_total, jobs_completed, jobs_failed,
                chunk_token_size, overlap_tokens, embedding_model, processing_started_at, updated_at
            )
            VALUES (?, 'queued', ?, ?, 0, 0, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id) DO UPDATE SET
                status = 'queued',
                total_documents = excluded.total_documents,
                jobs_total = excluded.jobs_total,
                jobs_completed = 0,
                jobs_failed = 0,
                first_error = NULL,
                estimated_completion = NULL,
                chunk_token_size = excluded.chunk_token_size,
                overlap_tokens = excluded.overlap_tokens,
                embedding_model = excluded.embedding_model,
                processing_started_at = excluded.processing_started_at,
                processing_completed_at = NULL,
                updated_at = excluded.updated_at
            """,
            (
                project_id,
                total_documents,
                total_documents,
                chunk_token_size,
                overlap_tokens,
                embedding_model,
                now,
                now,
            ),
        )
        if commit:
            self._conn.commit()

    def get_metadata(self, project_id: str) -> ProjectIngestMetadata | None:
        row = self._conn.execute(
            "SELECT * FROM project_ingest_metadata WHERE project_id = ?", (project_id,)
        ).fetchone()
        if row is None:
            return None
        return ProjectIngestMetadata(
            project_id=row["project_id"],
            status=row["status"],
            total_documents=row["total_documents"],
            jobs_total=row["jobs_total"],
            jobs_completed=row["jobs_completed"],
            jobs_failed=row["jobs_failed"],
            chunk_token_size=row["chunk_token_size"],
            overlap_tokens=row["overlap_tokens"],
            embedding_model=row["embedding_model"],
            first_error=row["first_error"],
            estimated_completion=row["estimated_completion"],
            processing_started_at=row["processing_started_at"],
            processing_completed_at=row["processing_completed_at"],
            updated_at=row["updated_at"],
        )

    def write_metadata_counts(
        self,
        project_id: str,
        *,
        jobs_total: int,
        jobs_completed: int,
        jobs_failed: int,
        status: str,
        first_error: str | None,
        completed_at: str | None,
    ) -> None:
        self._conn.execute(
            """
            UPDATE project_ingest_metadata
            SET jobs_total = ?, jobs_completed = ?, jobs_failed = ?, status = ?,
                first_error = ?, processing_completed_at = ?, updated_at = ?
            WHERE project_id = ?
            """,
            (
                jobs_total,
                jobs_completed,
                jobs_failed,
                status,
                first_error,
                completed_at,
                utc_now(),
                project_id,
            ),
        )
        self._conn.commit()

    def set_estimated_completion(self, project_id: str, estimated_completion: str) -> None:
        self._conn.execute(
            "UPDATE project_ingest_metadata SET estimated_completion = ? WHERE project_id = ?",
            (estimated_completion, project_id),
        )
        self._conn.commit()


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _requeue_set(kind: JobKind) -> str:
    common = (
        "status = 'queued', retry_count = retry_count + 1, error_message = NULL, "
        "worker_id = NULL, claimed_at = NULL, started_at = NULL, completed_at = NULL, "
        "result = '{}', updated_at = ?"
    )
    if kind is JobKind.INGEST:
        return common + ", progress = '{}'"
    return common + ", batches_completed = 0, batches_total = 0"


def _holder_clause(worker_id: str | None, statuses: tuple[str, ...] = ("running",)) -> str:
    if worker_id is None:
        return ""
    allowed = ", ".join(f"'{s}'" for s in statuses)
    return f" AND worker_id = :worker_id AND status IN ({allowed})"


def _decode(kind: JobKind, row: sqlite3.Row) -> Job:
    if kind is JobKind.INGEST:
        return _row_to_ingest_job(row)
    return _row_to_analysis_job(row)


def _row_to_ingest_job(row: sqlite3.Row) -> IngestJob:
    return IngestJob(
        id=row["id"],
        project_id=row["project_id"],
        document_id=row["document_id"],
        status=JobStatus(row["status"]),
        retry_count=row["retry_count"],
        error_message=row["error_message"],
        progress=IngestProgress.from_dict(json.loads(row["progress"] or "{}")),
        result=json.loads(row["result"] or "{}"),
        worker_id=row["worker_id"],
        claimed_at=row["claimed_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_analysis_job(row: sqlite3.Row) -> AnalysisJob:
    return AnalysisJob(
        id=row["id"],
        project_id=row["project_id"],
        status=JobStatus(row["status"]),
        batches_total=row["batches_total"],
        batches_completed=row["batches_completed"],
        retry_count=row["retry_count"],
        error_message=row["error_message"],
        result=json.loads(row["result"] or "{}"),
        worker_id=row["worker_id"],
        claimed_at=row["claimed_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
