"""Embedding batcher: rate-limited, shape-checked calls to the embedding endpoint.

One call to ``embed_fn`` per batch. The estimated token cost of the batch is
acquired from the worker's TokenBucket first. Failures surface as
``EmbeddingError`` and are never retried here.
"""

from __future__ import annotations

import numbers
from typing import Callable

import structlog

from qualflow import llm_client
from qualflow.errors import EmbeddingError
from qualflow.ingest.chunker import estimate_tokens
from qualflow.ingest.rate_limiter import TokenBucket

EmbedFn = Callable[[list[str], str], list[list[float]]]

DEFAULT_BATCH_SIZE = 10


class EmbeddingBatcher:
    """Embed texts in batches through a shared rate limiter.

    Args:
        limiter: Token bucket owned by the current worker invocation.
        model: LiteLLM embedding model string (provider/model format).
        batch_size: Texts per endpoint call in ``embed_all``.
        embed_fn: ``(texts, model) -> vectors``. Defaults to ``llm_client.embed_texts``.
        acquire_timeout: Optional cap on the wait for rate-limit tokens.
    """

    def __init__(
        self,
        limiter: TokenBucket,
        model: str,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        embed_fn: EmbedFn | None = None,
        acquire_timeout: float | None = None,
        logger=None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._limiter = limiter
        self.model = model
        self.batch_size = batch_size
        self._embed_fn = embed_fn or llm_client.embed_texts
        self._acquire_timeout = acquire_timeout
        self._log = logger or structlog.get_logger(__name__)

    def embed_batch(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        """Embed *texts* with a single endpoint call.

        Returns:
            Vectors aligned index-for-index with *texts*.

        Raises:
            EmbeddingError: Endpoint failure or malformed response.
            RateLimitTimeout: Waiting for tokens exceeded ``acquire_timeout``.
        """
        if not texts:
            return []
        model = model or self.model

        cost = min(sum(estimate_tokens(t) for t in texts), self._limiter.capacity)
        self._limiter.acquire(cost, timeout=self._acquire_timeout)

        try:
            vectors = self._embed_fn(texts, model)
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(getattr(exc, "status_code", None), str(exc)) from exc

        _check_shape(vectors, len(texts))
        self._log.debug("embedding_batch", model=model, size=len(texts), cost=cost)
        return [[float(x) for x in v] for v in vectors]

    def embed_all(
        self,
        texts: list[str],
        on_batch: Callable[[int, int], None] | None = None,
    ) -> list[list[float]]:
        """Embed *texts* in ``batch_size`` slices, in order.

        Args:
            on_batch: Called after each batch with ``(embedded_so_far, total)``.
        """
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            vectors.extend(self.embed_batch(texts[start : start + self.batch_size]))
            if on_batch is not None:
                on_batch(len(vectors), len(texts))
        return vectors


def _check_shape(vectors: object, expected: int) -> None:
    if not isinstance(vectors, list) or len(vectors) != expected:
        got = len(vectors) if isinstance(vectors, list) else type(vectors).__name__
        raise EmbeddingError(None, f"expected {expected} vectors, got {got}")

    dimension = None
    for i, vector in enumerate(vectors):
        if not isinstance(vector, (list, tuple)) or not vector:
            raise EmbeddingError(None, f"vector {i} is not a non-empty list")
        if not all(isinstance(x, numbers.Real) and not isinstance(x, bool) for x in vector):
            raise EmbeddingError(None, f"vector {i} contains non-numeric values")
        if dimension is None:
            dimension = len(vector)
        elif len(vector) != dimension:
            raise EmbeddingError(None, f"vector {i} has dimension {len(vector)}, expected {dimension}")
