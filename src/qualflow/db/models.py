"""Domain models for the qualflow database layer."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Union


def utc_now() -> str:
    """ISO-8601 UTC timestamp with microseconds; sorts lexically in time order."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobKind(str, Enum):
    INGEST = "ingest"
    ANALYSIS = "analysis"


class IngestPhase(str, Enum):
    CHUNKING = "chunking"
    EMBEDDING = "embedding"


@dataclass
class Project:
    id: str
    name: str
    guide_context: str | None = None
    created_at: str | None = None


@dataclass
class Document:
    id: str
    project_id: str
    name: str
    content: str | None = None
    storage_path: str | None = None
    respondent_name: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def version_hash(self) -> str:
        """Revision marker: changes whenever the document's content is replaced."""
        return version_hash(self.id, self.updated_at or "")


def version_hash(document_id: str, updated_at: str) -> str:
    """16-char fingerprint of a document revision."""
    return hashlib.sha256(f"{document_id}:{updated_at}".encode()).hexdigest()[:16]


@dataclass
class Chunk:
    project_id: str
    doc_id: str
    chunk_index: int
    text: str
    start_offset: int
    end_offset: int
    token_count: int
    version_hash: str = ""
    speaker: str | None = None
    participant_id: str | None = None
    keywords: list[str] = field(default_factory=list)
    language: str = "en"
    id: int | None = None  # set after insert; None for unsaved chunks


@dataclass
class Embedding:
    chunk_id: int
    model_id: str
    vector: list[float]

    @property
    def dimension(self) -> int:
        return len(self.vector)


@dataclass
class IngestProgress:
    phase: IngestPhase | None = None
    chunks_created: int = 0
    chunks_total: int = 0

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value if self.phase else None,
            "chunks_created": self.chunks_created,
            "chunks_total": self.chunks_total,
        }

    @classmethod
    def from_dict(cls, data: dict) -> IngestProgress:
        phase = data.get("phase")
        return cls(
            phase=IngestPhase(phase) if phase else None,
            chunks_created=int(data.get("chunks_created", 0)),
            chunks_total=int(data.get("chunks_total", 0)),
        )


@dataclass
class IngestJob:
    kind: ClassVar[JobKind] = JobKind.INGEST

    id: str
    project_id: str
    document_id: str
    status: JobStatus = JobStatus.QUEUED
    retry_count: int = 0
    error_message: str | None = None
    progress: IngestProgress = field(default_factory=IngestProgress)
    result: dict = field(default_factory=dict)
    worker_id: str | None = None
    claimed_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


# Shown while an analysis job is running but has not yet counted its documents.
ANALYSIS_PLACEHOLDER_PERCENT = 5


@dataclass
class AnalysisJob:
    kind: ClassVar[JobKind] = JobKind.ANALYSIS

    id: str
    project_id: str
    status: JobStatus = JobStatus.QUEUED
    batches_total: int = 0
    batches_completed: int = 0
    retry_count: int = 0
    error_message: str | None = None
    result: dict = field(default_factory=dict)
    worker_id: str | None = None
    claimed_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def progress_percent(self) -> int:
        if self.status is JobStatus.COMPLETED:
            return 100
        if self.batches_total > 0:
            return round(100 * self.batches_completed / self.batches_total)
        if self.status is JobStatus.RUNNING:
            return ANALYSIS_PLACEHOLDER_PERCENT
        return 0


Job = Union[IngestJob, AnalysisJob]


@dataclass
class ProjectIngestMetadata:
    project_id: str
    chunk_token_size: int
    overlap_tokens: int
    embedding_model: str
    status: str = "queued"
    total_documents: int = 0
    jobs_total: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    first_error: str | None = None
    estimated_completion: str | None = None
    processing_started_at: str | None = None
    processing_completed_at: str | None = None
    updated_at: str | None = None


@dataclass
class AnalysisResult:
    project_id: str
    question_id: str
    respondent: str
    question_text: str
    section: str = ""
    quote: str = ""
    summary: str = ""
    theme: str = ""
    confidence: int = 0
    degraded: bool = False
    document_id: str | None = None
    updated_at: str | None = None
