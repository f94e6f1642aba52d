"""Drain a queue with N concurrent worker invocations.

Each thread opens its own connection and builds its own worker (and with it
its own rate limiter), then claims and processes jobs until the queue is idle.
Any exception raised while processing a claimed job is counted as a failure
and the loop moves on; the failed job is already recorded on its row. Only an
error from the claim itself stops that thread.
"""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable, Protocol

import structlog

from qualflow.analysis.extractor import ChatFn
from qualflow.analysis.worker import AnalysisWorker
from qualflow.config import QualflowConfig
from qualflow.db.connection import Database
from qualflow.db.models import JobKind
from qualflow.ingest.embedding_batcher import EmbedFn
from qualflow.ingest.worker import IngestWorker

log = structlog.get_logger(__name__)


class _Runnable(Protocol):
    def claim(self, job_id: str | None = None): ...

    def process(self, job): ...


WorkerFactory = Callable[[sqlite3.Connection], _Runnable]


@dataclass
class DrainResult:
    processed: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _drain_one(db_path: Path, factory: WorkerFactory, index: int) -> DrainResult:
    result = DrainResult()
    with Database(db_path) as conn:
        worker = factory(conn)
        while (job := worker.claim()) is not None:
            try:
                outcome = worker.process(job)
            except Exception as exc:
                result.failed += 1
                log.warning("drain_job_failed", thread=index, job_id=job.id, error=str(exc))
                continue
            if outcome.status == "completed":
                result.processed += 1
    return result


def drain(db_path: Path | str, factory: WorkerFactory, *, workers: int = 1) -> DrainResult:
    """Run *workers* threads, each claiming and processing jobs until idle.

    Args:
        db_path: SQLite database shared by all threads.
        factory: Builds a worker around a thread-owned connection.
        workers: Number of concurrent worker invocations.

    Returns:
        Total processed (completed) and failed jobs.
    """
    if workers < 1:
        raise ValueError("workers must be >= 1")

    total = DrainResult()
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(_drain_one, Path(db_path), factory, i) for i in range(workers)]
        for future in as_completed(futures):
            part = future.result()
            total.processed += part.processed
            total.failed += part.failed

    log.info("drain_finished", workers=workers, processed=total.processed, failed=total.failed)
    return total


def worker_factory(
    kind: JobKind,
    cfg: QualflowConfig,
    *,
    base_dir: Path | None = None,
    embed_fn: EmbedFn | None = None,
    chat_fn: ChatFn | None = None,
) -> WorkerFactory:
    """Return a factory that builds a fresh worker of *kind* per connection."""

    def build(conn: sqlite3.Connection) -> _Runnable:
        if kind is JobKind.INGEST:
            return IngestWorker.from_config(conn, cfg, base_dir=base_dir, embed_fn=embed_fn)
        return AnalysisWorker.from_config(conn, cfg, base_dir=base_dir, chat_fn=chat_fn)

    return build
