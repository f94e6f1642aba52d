"""Ingest worker: claim one ingest job and run chunking + embedding to completion.

One ``run_once()`` call is one worker invocation: at most one job is claimed
and processed before it returns. On failure the job row is marked ``failed``
and the project aggregate recomputed before the exception propagates.
"""

from __future__ import annotations

import os
import socket
import sqlite3
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path

import structlog

from qualflow.config import QualflowConfig
from qualflow.db.jobs import JobStore
from qualflow.db.models import Chunk, Document, Embedding, IngestJob, IngestPhase, JobKind
from qualflow.db.repository import Repository
from qualflow.errors import DocumentNotFoundError, EmptyDocumentError
from qualflow.ingest.blob_store import LocalBlobStore
from qualflow.ingest.chunker import SentenceChunker, normalize_transcript
from qualflow.ingest.embedding_batcher import EmbedFn, EmbeddingBatcher
from qualflow.ingest.rate_limiter import TokenBucket
from qualflow.queue.aggregate import refresh_ingest_metadata

DEFAULT_INSERT_BATCH_SIZE = 50


def new_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


@dataclass
class WorkerResult:
    """Outcome of one worker invocation. ``status`` is ``idle``, ``completed`` or ``superseded``."""

    success: bool
    status: str
    job_id: str | None = None
    chunks_created: int = 0
    embeddings_created: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class IngestWorker:
    """Process one claimed ingest job per ``run_once()`` call.

    Args:
        conn: Connection owned by this worker; never shared across threads.
        chunker: Sentence chunker configured with the project's token sizes.
        batcher: Embedding batcher holding this invocation's rate limiter.
        blob_store: Source of content for documents stored by path.
        insert_batch_size: Chunks inserted per transaction.
        lease_seconds: Claim lease passed to the JobStore.
        worker_id: Identity recorded on claimed rows.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        chunker: SentenceChunker,
        batcher: EmbeddingBatcher,
        blob_store: LocalBlobStore | None = None,
        insert_batch_size: int = DEFAULT_INSERT_BATCH_SIZE,
        lease_seconds: int = 900,
        worker_id: str | None = None,
        logger=None,
    ) -> None:
        self._repo = Repository(conn)
        self._jobs = JobStore(conn, lease_seconds=lease_seconds)
        self._chunker = chunker
        self._batcher = batcher
        self._blobs = blob_store
        self._insert_batch_size = insert_batch_size
        self.worker_id = worker_id or new_worker_id()
        self._log = (logger or structlog.get_logger(__name__)).bind(worker_id=self.worker_id)

    @classmethod
    def from_config(
        cls,
        conn: sqlite3.Connection,
        cfg: QualflowConfig,
        *,
        base_dir: Path | None = None,
        embed_fn: EmbedFn | None = None,
        worker_id: str | None = None,
        logger=None,
    ) -> IngestWorker:
        """Build a worker with a fresh rate limiter from *cfg*."""
        limiter = TokenBucket(
            cfg.rate_limit.capacity,
            cfg.rate_limit.refill_per_second,
            poll_interval=cfg.rate_limit.poll_interval,
        )
        batcher = EmbeddingBatcher(
            limiter,
            cfg.embedding.model,
            batch_size=cfg.embedding.batch_size,
            embed_fn=embed_fn,
            acquire_timeout=cfg.rate_limit.acquire_timeout,
            logger=logger,
        )
        blob_root = Path(cfg.storage.blob_root)
        if base_dir is not None and not blob_root.is_absolute():
            blob_root = base_dir / blob_root
        return cls(
            conn,
            chunker=SentenceChunker(cfg.chunking.chunk_tokens, cfg.chunking.overlap_tokens),
            batcher=batcher,
            blob_store=LocalBlobStore(blob_root),
            insert_batch_size=cfg.chunking.insert_batch_size,
            lease_seconds=cfg.queue.lease_seconds,
            worker_id=worker_id,
            logger=logger,
        )

    def run_once(self, job_id: str | None = None) -> WorkerResult:
        """Claim and process at most one ingest job.

        Args:
            job_id: Claim this job instead of the oldest claimable one.

        Returns:
            ``WorkerResult(status="idle")`` when nothing is claimable, else the
            completed job's counts.

        Raises:
            Exception: Whatever failed the job, after the job row is marked
                ``failed`` and the aggregate recomputed.
        """
        job = self.claim(job_id)
        if job is None:
            return WorkerResult(success=True, status="idle")
        return self.process(job)

    def claim(self, job_id: str | None = None) -> IngestJob | None:
        if job_id is None:
            job = self._jobs.claim_next(JobKind.INGEST, self.worker_id)
        else:
            job = self._jobs.claim_job(JobKind.INGEST, job_id, self.worker_id)
        if job is None:
            self._log.debug("ingest_queue_idle", job_id=job_id)
        return job

    def process(self, job: IngestJob) -> WorkerResult:
        """Run a claimed job to a terminal state."""
        log = self._log.bind(job_id=job.id, project_id=job.project_id, document_id=job.document_id)
        log.info("ingest_job_claimed", retry_count=job.retry_count)
        refresh_ingest_metadata(self._jobs, job.project_id)

        try:
            chunks_created, embeddings_created = self._process(job, log)
        except Exception as exc:
            self._jobs.fail_job(
                JobKind.INGEST, job.id, str(exc) or type(exc).__name__, worker_id=self.worker_id
            )
            refresh_ingest_metadata(self._jobs, job.project_id)
            log.error("ingest_job_failed", error=str(exc), exc_info=True)
            raise

        held = self._jobs.complete_job(
            JobKind.INGEST,
            job.id,
            {"chunks_created": chunks_created, "embeddings_created": embeddings_created},
            worker_id=self.worker_id,
        )
        refresh_ingest_metadata(self._jobs, job.project_id)
        if not held:
            log.warning("ingest_job_superseded")
            return WorkerResult(success=False, status="superseded", job_id=job.id)
        log.info("ingest_job_completed", chunks_created=chunks_created, embeddings_created=embeddings_created)
        return WorkerResult(
            success=True,
            status="completed",
            job_id=job.id,
            chunks_created=chunks_created,
            embeddings_created=embeddings_created,
        )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _process(self, job: IngestJob, log) -> tuple[int, int]:
        doc = self._repo.get_document(job.document_id)
        if doc is None or doc.project_id != job.project_id:
            raise DocumentNotFoundError(job.document_id)

        content = self._resolve_content(doc)
        if not normalize_transcript(content):
            raise EmptyDocumentError(doc.id)

        revision = doc.version_hash
        removed = self._repo.delete_chunks_for_document(job.project_id, doc.id)
        if removed:
            log.info("ingest_previous_chunks_deleted", count=removed)

        chunks = self._chunker.chunk(
            job.project_id, doc.id, content, doc_name=doc.name, version_hash=revision
        )
        self._insert_chunks(job, chunks)

        vectors = self._batcher.embed_all(
            [c.text for c in chunks],
            on_batch=lambda done, total: self._jobs.update_progress(
                job.id, IngestPhase.EMBEDDING, done, total, worker_id=self.worker_id
            ),
        )
        embeddings_created = self._repo.add_embeddings(
            [
                Embedding(chunk_id=chunk.id, model_id=self._batcher.model, vector=vector)
                for chunk, vector in zip(chunks, vectors)
            ]
        )
        return len(chunks), embeddings_created

    def _insert_chunks(self, job: IngestJob, chunks: list[Chunk]) -> None:
        total = len(chunks)
        for start in range(0, total, self._insert_batch_size):
            batch = chunks[start : start + self._insert_batch_size]
            self._repo.add_chunks(batch)
            self._jobs.update_progress(
                job.id, IngestPhase.CHUNKING, start + len(batch), total, worker_id=self.worker_id
            )

    def _resolve_content(self, doc: Document) -> str:
        if doc.content:
            return doc.content
        if doc.storage_path and self._blobs is not None:
            return self._blobs.download(doc.storage_path).decode("utf-8", errors="replace")
        return ""
