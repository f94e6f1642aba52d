"""Tests for the queue enqueuer and project status view."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from qualflow.config import QualflowConfig
from qualflow.db.jobs import JobStore
from qualflow.db.models import Chunk, JobKind, JobStatus
from qualflow.db.repository import Repository
from qualflow.errors import MissingProjectIdError, ProjectNotFoundError
from qualflow.queue.aggregate import refresh_ingest_metadata
from qualflow.queue.enqueue import (
    enqueue_analysis,
    enqueue_ingest,
    project_status,
    replace_document,
    requeue_failed,
)


@pytest.fixture
def cfg():
    return QualflowConfig()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def project(repo):
    p = repo.add_project("Study A")
    repo.add_document(p.id, "a.txt", content="First.")
    repo.add_document(p.id, "b.txt", content="Second.")
    return p


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------

@pytest.mark.parametrize("project_id", [None, "", "   "])
def test_missing_project_id(tmp_db, cfg, project_id):
    with pytest.raises(MissingProjectIdError) as excinfo:
        enqueue_ingest(tmp_db, project_id, cfg)
    assert excinfo.value.code == "MISSING_PROJECT_ID"


def test_unknown_project(tmp_db, cfg):
    with pytest.raises(ProjectNotFoundError):
        enqueue_ingest(tmp_db, "nope", cfg)
    assert JobStore(tmp_db).list_ingest_jobs("nope") == []
    assert JobStore(tmp_db).get_metadata("nope") is None


# ------------------------------------------------------------------
# Ingest
# ------------------------------------------------------------------

def test_project_without_documents(tmp_db, repo, cfg):
    empty = repo.add_project("Empty")
    result = enqueue_ingest(tmp_db, empty.id, cfg)
    assert (result.jobs_created, result.total_documents) == (0, 0)
    assert result.estimated_completion is None
    assert JobStore(tmp_db).get_metadata(empty.id) is None


def test_creates_one_job_per_document(tmp_db, project, cfg):
    before = datetime.now(timezone.utc)
    result = enqueue_ingest(tmp_db, project.id, cfg)

    assert (result.jobs_created, result.total_documents) == (2, 2)
    jobs = JobStore(tmp_db)
    assert [j.status for j in jobs.list_ingest_jobs(project.id)] == [JobStatus.QUEUED] * 2

    meta = jobs.get_metadata(project.id)
    assert (meta.status, meta.jobs_total, meta.total_documents) == ("queued", 2, 2)
    assert (meta.chunk_token_size, meta.overlap_tokens) == (1200, 200)
    assert meta.embedding_model == cfg.embedding.model

    eta = datetime.fromisoformat(result.estimated_completion)
    expected = before + timedelta(seconds=cfg.queue.seconds_per_document * 2)
    assert abs((eta - expected).total_seconds()) < 5
    assert meta.estimated_completion == result.estimated_completion


def test_second_enqueue_is_idempotent(tmp_db, project, cfg):
    enqueue_ingest(tmp_db, project.id, cfg)
    again = enqueue_ingest(tmp_db, project.id, cfg)
    assert again.jobs_created == 0
    assert len(JobStore(tmp_db).list_ingest_jobs(project.id)) == 2


def test_new_document_gets_a_job(tmp_db, repo, project, cfg):
    enqueue_ingest(tmp_db, project.id, cfg)
    repo.add_document(project.id, "c.txt", content="Third.")
    result = enqueue_ingest(tmp_db, project.id, cfg)
    assert result.jobs_created == 1
    assert JobStore(tmp_db).get_metadata(project.id).jobs_total == 3


def test_force_requeues_everything_and_drops_chunks(tmp_db, repo, project, cfg):
    enqueue_ingest(tmp_db, project.id, cfg)
    jobs = JobStore(tmp_db)
    done = jobs.claim_next(JobKind.INGEST, "w1")
    jobs.complete_job(JobKind.INGEST, done.id, {})
    doc = repo.list_documents(project.id)[0]
    repo.add_chunks([Chunk(project_id=project.id, doc_id=doc.id, chunk_index=0, text="First.",
                           start_offset=0, end_offset=6, token_count=2)])

    result = enqueue_ingest(tmp_db, project.id, cfg, force=True)

    assert result.jobs_created == 2
    assert repo.count_chunks(project.id) == 0
    assert {j.status for j in jobs.list_ingest_jobs(project.id)} == {JobStatus.QUEUED}
    assert done.id not in {j.id for j in jobs.list_ingest_jobs(project.id)}


def test_enqueue_rolls_back_on_failure(tmp_db, project, cfg, monkeypatch):
    def explode(self, *args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(JobStore, "insert_ingest_job", explode)
    with pytest.raises(RuntimeError):
        enqueue_ingest(tmp_db, project.id, cfg)
    assert JobStore(tmp_db).get_metadata(project.id) is None


def test_enqueue_requeues_completed_job_without_chunks(tmp_db, project, cfg):
    enqueue_ingest(tmp_db, project.id, cfg)
    jobs = JobStore(tmp_db)
    done = jobs.claim_next(JobKind.INGEST, "w1")
    jobs.complete_job(JobKind.INGEST, done.id, {})

    result = enqueue_ingest(tmp_db, project.id, cfg)

    assert (result.jobs_created, result.jobs_requeued) == (0, 1)
    requeued = jobs.get_job(JobKind.INGEST, done.id)
    assert (requeued.status, requeued.retry_count) == (JobStatus.QUEUED, 1)


def test_enqueue_requeues_job_with_stale_chunks(tmp_db, repo, project, cfg):
    enqueue_ingest(tmp_db, project.id, cfg)
    jobs = JobStore(tmp_db)
    done = jobs.claim_next(JobKind.INGEST, "w1")
    doc = repo.get_document(done.document_id)
    repo.add_chunks([Chunk(project_id=project.id, doc_id=doc.id, chunk_index=0, text="Old.",
                           start_offset=0, end_offset=4, token_count=2, version_hash="previous")])
    jobs.complete_job(JobKind.INGEST, done.id, {})

    result = enqueue_ingest(tmp_db, project.id, cfg)

    assert result.jobs_requeued == 1
    assert jobs.get_job(JobKind.INGEST, done.id).status is JobStatus.QUEUED


def test_replace_document_requeues_finished_job(tmp_db, repo, project, cfg):
    enqueue_ingest(tmp_db, project.id, cfg)
    jobs = JobStore(tmp_db)
    done = jobs.claim_next(JobKind.INGEST, "w1")
    jobs.complete_job(JobKind.INGEST, done.id, {})
    refresh_ingest_metadata(jobs, project.id)

    doc = replace_document(tmp_db, done.document_id, "Rewritten.")

    assert doc.content == "Rewritten."
    requeued = jobs.get_job(JobKind.INGEST, done.id)
    assert (requeued.status, requeued.retry_count) == (JobStatus.QUEUED, 1)
    assert jobs.get_metadata(project.id).jobs_completed == 0


def test_replace_document_without_job(tmp_db, repo, project):
    doc = repo.list_documents(project.id)[0]
    replaced = replace_document(tmp_db, doc.id, "Rewritten.")
    assert replaced.version_hash != doc.version_hash
    assert JobStore(tmp_db).get_ingest_job(project.id, doc.id) is None
    assert replace_document(tmp_db, "missing", "x") is None


def test_requeue_failed_refreshes_aggregate(tmp_db, project, cfg):
    enqueue_ingest(tmp_db, project.id, cfg)
    jobs = JobStore(tmp_db)
    job = jobs.claim_next(JobKind.INGEST, "w1")
    jobs.fail_job(JobKind.INGEST, job.id, "boom")

    assert requeue_failed(tmp_db, project.id) == 1
    meta = jobs.get_metadata(project.id)
    assert meta.jobs_failed == 0
    assert meta.first_error is None


# ------------------------------------------------------------------
# Analysis
# ------------------------------------------------------------------

def test_enqueue_analysis_creates_then_returns_active(tmp_db, project):
    first = enqueue_analysis(tmp_db, project.id)
    second = enqueue_analysis(tmp_db, project.id)
    assert first.id == second.id
    assert second.status is JobStatus.QUEUED


def test_enqueue_analysis_rearms_finished_job(tmp_db, project):
    job = enqueue_analysis(tmp_db, project.id)
    jobs = JobStore(tmp_db)
    jobs.claim_next(JobKind.ANALYSIS, "w1")
    jobs.fail_job(JobKind.ANALYSIS, job.id, "boom")

    rearmed = enqueue_analysis(tmp_db, project.id)

    assert rearmed.id == job.id
    assert rearmed.status is JobStatus.QUEUED
    assert rearmed.retry_count == 2
    assert rearmed.error_message is None


def test_enqueue_analysis_unknown_project(tmp_db):
    with pytest.raises(ProjectNotFoundError):
        enqueue_analysis(tmp_db, "nope")


def test_requeue_failed_analysis(tmp_db, project):
    job = enqueue_analysis(tmp_db, project.id)
    jobs = JobStore(tmp_db)
    jobs.claim_next(JobKind.ANALYSIS, "w1")
    jobs.fail_job(JobKind.ANALYSIS, job.id, "boom")
    assert requeue_failed(tmp_db, project.id, JobKind.ANALYSIS) == 1
    assert jobs.get_analysis_job(project.id).status is JobStatus.QUEUED


# ------------------------------------------------------------------
# Status view
# ------------------------------------------------------------------

def test_project_status_before_enqueue(tmp_db, project):
    view = project_status(tmp_db, project.id)
    assert view["name"] == "Study A"
    assert view["documents"] == 2
    assert (view["chunks"], view["embeddings"]) == (0, 0)
    assert view["ingest"] is None
    assert view["analysis"] is None


def test_project_status_with_jobs(tmp_db, project, cfg):
    enqueue_ingest(tmp_db, project.id, cfg)
    enqueue_analysis(tmp_db, project.id)
    jobs = JobStore(tmp_db)
    job = jobs.claim_next(JobKind.INGEST, "w1")
    jobs.fail_job(JobKind.INGEST, job.id, "bad transcript")
    refresh_ingest_metadata(jobs, project.id)

    view = project_status(tmp_db, project.id)

    assert view["ingest"]["status"] == "processing"
    assert view["ingest"]["jobs_failed"] == 1
    assert view["ingest"]["error_message"] == "bad transcript"
    assert view["analysis"]["status"] == "queued"
    assert view["analysis"]["progress_percent"] == 0
