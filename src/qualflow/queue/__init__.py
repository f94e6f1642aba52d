"""qualflow job queues: enqueueing, aggregate refresh, concurrent drain."""

from qualflow.queue.aggregate import refresh_ingest_metadata
from qualflow.queue.enqueue import (
    EnqueueResult,
    enqueue_analysis,
    enqueue_ingest,
    project_status,
    replace_document,
    requeue_failed,
)

__all__ = [
    "EnqueueResult",
    "enqueue_analysis",
    "enqueue_ingest",
    "project_status",
    "refresh_ingest_metadata",
    "replace_document",
    "requeue_failed",
]
