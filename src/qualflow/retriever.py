"""Dense retrieval over a project's chunks (sqlite-vec).

The query is embedded through the same EmbeddingBatcher path as ingest, so it
is rate-limited and shape-checked the same way.
"""

from __future__ import annotations

from dataclasses import dataclass

from qualflow.db.models import Chunk
from qualflow.db.repository import Repository
from qualflow.ingest.embedding_batcher import EmbeddingBatcher


@dataclass
class ScoredChunk:
    """A retrieved chunk with its vector distance (lower = closer) and 1-based rank."""

    chunk: Chunk
    distance: float
    rank: int

    def to_dict(self) -> dict:
        return {
            "rank": self.rank,
            "distance": self.distance,
            "chunk_id": self.chunk.id,
            "doc_id": self.chunk.doc_id,
            "chunk_index": self.chunk.chunk_index,
            "participant_id": self.chunk.participant_id,
            "text": self.chunk.text,
        }


def search(
    repo: Repository,
    batcher: EmbeddingBatcher,
    project_id: str,
    query: str,
    top_k: int = 10,
) -> list[ScoredChunk]:
    """Return the project's *top_k* nearest chunks to *query*, best-first."""
    if not query.strip():
        return []
    [vector] = batcher.embed_batch([query])
    hits = repo.search_vec(project_id, batcher.model, vector, limit=top_k)
    return [ScoredChunk(chunk=chunk, distance=distance, rank=i) for i, (chunk, distance) in enumerate(hits, start=1)]
