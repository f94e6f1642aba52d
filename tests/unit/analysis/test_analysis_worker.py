"""Tests for AnalysisWorker."""

from __future__ import annotations

import json

import pytest

from qualflow.analysis.worker import DEGRADED_SUMMARY, AnalysisWorker
from qualflow.config import QualflowConfig
from qualflow.db.jobs import JobStore
from qualflow.db.models import JobKind, JobStatus
from qualflow.db.repository import Repository
from qualflow.errors import ChatError, GuideNotFoundError, NoDocumentsError
from qualflow.ingest.blob_store import LocalBlobStore
from qualflow.queue.enqueue import enqueue_analysis

GUIDE = json.dumps({
    "sections": [
        {"title": "Role", "questions": [{"id": "R1", "text": "Describe your role."}]},
        {"title": "Treatment", "questions": [{"id": "T1", "text": "What drives your choice?"}]},
    ]
})

GOOD_RESPONSE = '{"quote": "It depends", "summary": "Depends on patient", "theme": "Fit", "confidence": 80}'


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


def _chat(response=GOOD_RESPONSE, fail_on=None):
    calls = []

    def chat(model, system_prompt, user_prompt, *, temperature, max_tokens):
        calls.append(user_prompt)
        if fail_on and fail_on in user_prompt:
            raise ChatError(500, "model unavailable")
        return response

    chat.calls = calls
    return chat


def _worker(conn, chat_fn, tmp_path=None):
    return AnalysisWorker.from_config(conn, QualflowConfig(), base_dir=tmp_path, chat_fn=chat_fn, worker_id="a-test")


def test_idle_without_jobs(tmp_db):
    result = _worker(tmp_db, _chat()).run_once()
    assert (result.success, result.status) == (True, "idle")


def test_extracts_every_question_for_every_document(tmp_db, repo):
    project = repo.add_project("Study", guide_context=GUIDE)
    repo.add_document(project.id, "a.txt", content="Interview one.", respondent_name="Dr Lee")
    repo.add_document(project.id, "b.txt", content="Interview two.")
    job = enqueue_analysis(tmp_db, project.id)
    chat = _chat()

    result = _worker(tmp_db, chat).run_once()

    assert result.status == "completed"
    assert result.job_id == job.id
    assert (result.results_count, result.questions_processed, result.documents_processed) == (4, 2, 2)
    assert result.degraded_count == 0
    assert len(chat.calls) == 4

    rows = repo.list_analysis_results(project.id)
    assert {(r.respondent, r.question_id) for r in rows} == {
        ("Dr Lee", "R1"), ("Dr Lee", "T1"), ("Respondent_2", "R1"), ("Respondent_2", "T1"),
    }
    assert all(r.confidence == 80 and r.theme == "Fit" for r in rows)

    stored = JobStore(tmp_db).get_job(JobKind.ANALYSIS, job.id)
    assert stored.status is JobStatus.COMPLETED
    assert (stored.batches_completed, stored.batches_total) == (2, 2)
    assert stored.progress_percent == 100
    assert stored.result == {"results_count": 4, "questions_processed": 2, "documents_processed": 2}


def test_question_failure_is_degraded_not_fatal(tmp_db, repo):
    project = repo.add_project("Study", guide_context=GUIDE)
    repo.add_document(project.id, "a.txt", content="Interview one.")
    enqueue_analysis(tmp_db, project.id)

    result = _worker(tmp_db, _chat(fail_on="What drives your choice?")).run_once()

    assert result.status == "completed"
    assert result.results_count == 2
    assert result.degraded_count == 1
    degraded = [r for r in repo.list_analysis_results(project.id) if r.degraded]
    assert [(r.question_id, r.summary, r.confidence) for r in degraded] == [("T1", DEGRADED_SUMMARY, 0)]


def test_unparseable_response_is_degraded(tmp_db, repo):
    project = repo.add_project("Study", guide_context=GUIDE)
    repo.add_document(project.id, "a.txt", content="Interview one.")
    enqueue_analysis(tmp_db, project.id)
    result = _worker(tmp_db, _chat(response="no json at all")).run_once()
    assert result.degraded_count == 2


def test_missing_guide_fails_job(tmp_db, repo):
    project = repo.add_project("Study")
    repo.add_document(project.id, "a.txt", content="Interview one.")
    job = enqueue_analysis(tmp_db, project.id)

    with pytest.raises(GuideNotFoundError):
        _worker(tmp_db, _chat()).run_once()

    failed = JobStore(tmp_db).get_job(JobKind.ANALYSIS, job.id)
    assert failed.status is JobStatus.FAILED
    assert "No guide context" in failed.error_message


def test_no_documents_fails_job(tmp_db, repo):
    project = repo.add_project("Study", guide_context=GUIDE)
    repo.add_document(project.id, "blank.txt", content="   ")
    enqueue_analysis(tmp_db, project.id)
    with pytest.raises(NoDocumentsError):
        _worker(tmp_db, _chat()).run_once()


def test_blob_documents_are_analysed(tmp_db, tmp_path, repo):
    project = repo.add_project("Study", guide_context=GUIDE)
    LocalBlobStore(tmp_path / "blobs").upload("s/a.txt", b"Stored interview.")
    repo.add_document(project.id, "a.txt", storage_path="s/a.txt")
    enqueue_analysis(tmp_db, project.id)
    chat = _chat()

    result = _worker(tmp_db, chat, tmp_path=tmp_path).run_once()

    assert result.documents_processed == 1
    assert "Stored interview." in chat.calls[0]


def test_inline_and_blob_content_prompt_identically(tmp_db, tmp_path, repo):
    project = repo.add_project("Study", guide_context=GUIDE)
    transcript = "\n\n  Same interview, word for word.  \n"
    repo.add_document(project.id, "inline.txt", content=transcript, respondent_name="Alpha")
    LocalBlobStore(tmp_path / "blobs").upload("s/b.txt", transcript.encode("utf-8"))
    repo.add_document(project.id, "blob.txt", storage_path="s/b.txt", respondent_name="Beta")
    enqueue_analysis(tmp_db, project.id)
    chat = _chat()

    result = _worker(tmp_db, chat, tmp_path=tmp_path).run_once()

    assert result.documents_processed == 2
    inline_prompt, _, blob_prompt, _ = chat.calls
    assert inline_prompt.replace("Alpha", "R") == blob_prompt.replace("Beta", "R")
    assert "  Same interview" not in inline_prompt


def test_run_once_claims_requested_job(tmp_db, repo):
    project = repo.add_project("Study", guide_context=GUIDE)
    repo.add_document(project.id, "a.txt", content="Interview one.")
    job = enqueue_analysis(tmp_db, project.id)

    assert _worker(tmp_db, _chat()).run_once("other-job").status == "idle"
    result = _worker(tmp_db, _chat()).run_once(job.id)

    assert (result.status, result.job_id) == ("completed", job.id)


def test_rerun_replaces_results(tmp_db, repo):
    project = repo.add_project("Study", guide_context=GUIDE)
    repo.add_document(project.id, "a.txt", content="Interview one.")
    enqueue_analysis(tmp_db, project.id)
    _worker(tmp_db, _chat(response="broken")).run_once()

    enqueue_analysis(tmp_db, project.id)
    result = _worker(tmp_db, _chat()).run_once()

    assert result.degraded_count == 0
    rows = repo.list_analysis_results(project.id)
    assert len(rows) == 2
    assert not any(r.degraded for r in rows)
