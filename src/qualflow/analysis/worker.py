"""Analysis worker: claim one analysis job and extract answers per document and question.

One "batch" is one document. Progress (``batches_completed``) is written after
each document, and each answered question renews the claim lease. A chat or
parse failure on one question is recorded as a degraded result row and does
not fail the job; anything that escapes the per-document loop fails it.
"""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from pathlib import Path

import structlog

from qualflow.analysis.extractor import ChatFn, Extractor
from qualflow.analysis.guide import Question, parse_guide
from qualflow.config import QualflowConfig
from qualflow.db.jobs import JobStore
from qualflow.db.models import AnalysisJob, AnalysisResult, Document, JobKind
from qualflow.db.repository import Repository
from qualflow.errors import (
    ChatError,
    ExtractionError,
    GuideNotFoundError,
    NoDocumentsError,
    ProjectNotFoundError,
)
from qualflow.ingest.blob_store import LocalBlobStore
from qualflow.ingest.worker import new_worker_id

DEGRADED_SUMMARY = "Error occurred during analysis"


@dataclass
class AnalysisRunResult:
    success: bool
    status: str
    job_id: str | None = None
    results_count: int = 0
    questions_processed: int = 0
    documents_processed: int = 0
    degraded_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class AnalysisWorker:
    """Process one claimed analysis job per ``run_once()`` call."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        extractor: Extractor,
        blob_store: LocalBlobStore | None = None,
        lease_seconds: int = 900,
        worker_id: str | None = None,
        logger=None,
    ) -> None:
        self._repo = Repository(conn)
        self._jobs = JobStore(conn, lease_seconds=lease_seconds)
        self._extractor = extractor
        self._blobs = blob_store
        self.worker_id = worker_id or new_worker_id()
        self._log = (logger or structlog.get_logger(__name__)).bind(worker_id=self.worker_id)

    @classmethod
    def from_config(
        cls,
        conn: sqlite3.Connection,
        cfg: QualflowConfig,
        *,
        base_dir: Path | None = None,
        chat_fn: ChatFn | None = None,
        worker_id: str | None = None,
        logger=None,
    ) -> AnalysisWorker:
        extractor = Extractor(
            cfg.chat.model,
            chat_fn=chat_fn,
            temperature=cfg.chat.temperature,
            max_tokens=cfg.chat.max_tokens,
            document_window=cfg.analysis.document_window,
        )
        blob_root = Path(cfg.storage.blob_root)
        if base_dir is not None and not blob_root.is_absolute():
            blob_root = base_dir / blob_root
        return cls(
            conn,
            extractor=extractor,
            blob_store=LocalBlobStore(blob_root),
            lease_seconds=cfg.queue.lease_seconds,
            worker_id=worker_id,
            logger=logger,
        )

    def run_once(self, job_id: str | None = None) -> AnalysisRunResult:
        job = self.claim(job_id)
        if job is None:
            return AnalysisRunResult(success=True, status="idle")
        return self.process(job)

    def claim(self, job_id: str | None = None) -> AnalysisJob | None:
        if job_id is None:
            job = self._jobs.claim_next(JobKind.ANALYSIS, self.worker_id)
        else:
            job = self._jobs.claim_job(JobKind.ANALYSIS, job_id, self.worker_id)
        if job is None:
            self._log.debug("analysis_queue_idle", job_id=job_id)
        return job

    def process(self, job: AnalysisJob) -> AnalysisRunResult:
        log = self._log.bind(job_id=job.id, project_id=job.project_id)
        log.info("analysis_job_claimed", retry_count=job.retry_count)

        try:
            result = self._process(job, log)
        except Exception as exc:
            self._jobs.fail_job(
                JobKind.ANALYSIS, job.id, str(exc) or type(exc).__name__, worker_id=self.worker_id
            )
            log.error("analysis_job_failed", error=str(exc), exc_info=True)
            raise

        held = self._jobs.complete_job(
            JobKind.ANALYSIS,
            job.id,
            {
                "results_count": result.results_count,
                "questions_processed": result.questions_processed,
                "documents_processed": result.documents_processed,
            },
            worker_id=self.worker_id,
        )
        if not held:
            log.warning("analysis_job_superseded")
            return AnalysisRunResult(success=False, status="superseded", job_id=job.id)
        log.info(
            "analysis_job_completed",
            results_count=result.results_count,
            degraded_count=result.degraded_count,
        )
        return result

    def _process(self, job: AnalysisJob, log) -> AnalysisRunResult:
        project = self._repo.get_project(job.project_id)
        if project is None:
            raise ProjectNotFoundError(job.project_id)

        questions = parse_guide(project.guide_context)
        if not questions:
            raise GuideNotFoundError(job.project_id)

        documents = [(doc, text) for doc in self._repo.list_documents(job.project_id) if (text := self._content(doc))]
        if not documents:
            raise NoDocumentsError(job.project_id)

        self._jobs.update_batches(job.id, 0, len(documents), worker_id=self.worker_id)
        log.info("analysis_started", documents=len(documents), questions=len(questions))

        results_count = 0
        degraded_count = 0
        for i, (doc, text) in enumerate(documents):
            respondent = doc.respondent_name or f"Respondent_{i + 1}"
            for question in questions:
                row = self._answer(job.project_id, doc, text, respondent, question, log)
                self._repo.upsert_analysis_result(row)
                results_count += 1
                degraded_count += int(row.degraded)
                self._jobs.update_batches(job.id, i, worker_id=self.worker_id)
            self._jobs.update_batches(job.id, i + 1, worker_id=self.worker_id)

        return AnalysisRunResult(
            success=True,
            status="completed",
            job_id=job.id,
            results_count=results_count,
            questions_processed=len(questions),
            documents_processed=len(documents),
            degraded_count=degraded_count,
        )

    def _answer(
        self,
        project_id: str,
        doc: Document,
        text: str,
        respondent: str,
        question: Question,
        log,
    ) -> AnalysisResult:
        row = AnalysisResult(
            project_id=project_id,
            question_id=question.id,
            respondent=respondent,
            question_text=question.text,
            section=question.section,
            document_id=doc.id,
        )
        try:
            answer = self._extractor.extract(question, respondent, text)
        except (ChatError, ExtractionError) as exc:
            log.warning(
                "analysis_question_degraded",
                question_id=question.id,
                respondent=respondent,
                error=str(exc),
            )
            row.summary = DEGRADED_SUMMARY
            row.degraded = True
            return row

        row.quote = answer.quote
        row.summary = answer.summary
        row.theme = answer.theme
        row.confidence = answer.confidence
        return row

    def _content(self, doc: Document) -> str:
        text = doc.content or ""
        if not text.strip() and doc.storage_path and self._blobs is not None:
            text = self._blobs.download(doc.storage_path).decode("utf-8", errors="replace")
        return text.strip()
