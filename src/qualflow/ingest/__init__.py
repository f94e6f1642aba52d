"""qualflow ingest pipeline: chunker, rate limiter, embedding batcher, worker."""

from qualflow.ingest.blob_store import LocalBlobStore
from qualflow.ingest.chunker import SentenceChunker, estimate_tokens
from qualflow.ingest.embedding_batcher import EmbeddingBatcher
from qualflow.ingest.rate_limiter import TokenBucket
from qualflow.ingest.worker import IngestWorker, WorkerResult

__all__ = [
    "EmbeddingBatcher",
    "IngestWorker",
    "LocalBlobStore",
    "SentenceChunker",
    "TokenBucket",
    "WorkerResult",
    "estimate_tokens",
]
