"""Exception taxonomy for the ingestion pipeline and job queues.

Four families, matching how a failure is handled:

  ValidationError  bad input to an enqueue call; no job is created, never retried.
  RemoteError      embedding/chat endpoint or rate-limit failure; the job fails and
                   an operator re-enqueue is expected to succeed (retryable).
  DataError        the job's inputs are broken (missing document, empty content);
                   re-running fails identically until upstream data changes.
  ExtractionError  one analysis question could not be parsed; recorded as a
                   degraded result row, never fails a job.
"""

from __future__ import annotations


class QualflowError(Exception):
    """Base class for all qualflow errors."""

    retryable: bool = False


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(QualflowError):
    """Invalid request: surfaced immediately, job never created."""

    code: str = "VALIDATION_ERROR"


class MissingProjectIdError(ValidationError):
    code = "MISSING_PROJECT_ID"

    def __init__(self) -> None:
        super().__init__("project_id is required")


class ProjectNotFoundError(ValidationError):
    code = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


# ---------------------------------------------------------------------------
# Remote (retryable)
# ---------------------------------------------------------------------------


class RemoteError(QualflowError):
    """A call to an external endpoint failed."""

    retryable = True


class EmbeddingError(RemoteError):
    """Embedding endpoint returned an error or a malformed payload."""

    def __init__(self, status: int | None, body: str) -> None:
        super().__init__(f"Embedding API error: {status} {body}")
        self.status = status
        self.body = body


class ChatError(RemoteError):
    """Chat/extraction endpoint returned an error."""

    def __init__(self, status: int | None, body: str) -> None:
        super().__init__(f"Chat API error: {status} {body}")
        self.status = status
        self.body = body


class RateLimitTimeout(RemoteError):
    """Waited longer than the caller allowed for rate-limit tokens."""

    def __init__(self, cost: float, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:.1f}s waiting for {cost:g} rate-limit tokens")
        self.cost = cost
        self.timeout = timeout


# ---------------------------------------------------------------------------
# Data (not retryable)
# ---------------------------------------------------------------------------


class DataError(QualflowError):
    """The job's input data is missing or unusable."""


class DocumentNotFoundError(DataError):
    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document not found: {document_id}")
        self.document_id = document_id


class EmptyDocumentError(DataError):
    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document has no content: {document_id}")
        self.document_id = document_id


class GuideNotFoundError(DataError):
    def __init__(self, project_id: str) -> None:
        super().__init__(f"No guide context found for project {project_id}")
        self.project_id = project_id


class NoDocumentsError(DataError):
    def __init__(self, project_id: str) -> None:
        super().__init__(f"No documents found for project {project_id}")
        self.project_id = project_id


# ---------------------------------------------------------------------------
# Per-question analysis
# ---------------------------------------------------------------------------


class ExtractionError(QualflowError):
    """Chat response did not contain a parseable JSON object."""
