"""Tests for schema constraints that the queue and pipeline rely on."""

from __future__ import annotations

import sqlite3

import pytest

from qualflow.db.schema import initialize


def _table_columns(conn, table: str) -> set[str]:
    return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _insert_project_and_doc(conn):
    conn.execute("INSERT INTO projects (id, name, created_at) VALUES ('p1', 'P', '2024')")
    conn.execute(
        "INSERT INTO documents (id, project_id, name, content, created_at, updated_at) "
        "VALUES ('d1', 'p1', 'doc.txt', 'x', '2024', '2024')"
    )


def _insert_chunk(conn, index=0):
    return conn.execute(
        "INSERT INTO chunks (project_id, doc_id, chunk_index, text, start_offset, end_offset, "
        "token_count, version_hash) VALUES ('p1', 'd1', ?, 'text', 0, 4, 2, 'h')",
        (index,),
    ).lastrowid


def test_initialize_idempotent(tmp_db):
    initialize(tmp_db)
    rows = tmp_db.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert rows == 1


def test_ingest_job_columns(tmp_db):
    cols = _table_columns(tmp_db, "ingest_jobs")
    assert {"status", "retry_count", "error_message", "progress", "result", "worker_id", "claimed_at"} <= cols


def test_chunk_index_unique_per_document(tmp_db):
    _insert_project_and_doc(tmp_db)
    _insert_chunk(tmp_db, 0)
    with pytest.raises(sqlite3.IntegrityError):
        _insert_chunk(tmp_db, 0)


def test_one_ingest_job_per_document(tmp_db):
    sql = (
        "INSERT INTO ingest_jobs (id, project_id, document_id, created_at, updated_at) "
        "VALUES (?, 'p1', 'd1', '2024', '2024')"
    )
    tmp_db.execute(sql, ("j1",))
    with pytest.raises(sqlite3.IntegrityError):
        tmp_db.execute(sql, ("j2",))


def test_one_analysis_job_per_project(tmp_db):
    sql = "INSERT INTO analysis_jobs (id, project_id, created_at, updated_at) VALUES (?, 'p1', '2024', '2024')"
    tmp_db.execute(sql, ("a1",))
    with pytest.raises(sqlite3.IntegrityError):
        tmp_db.execute(sql, ("a2",))


def test_job_status_is_checked(tmp_db):
    with pytest.raises(sqlite3.IntegrityError):
        tmp_db.execute(
            "INSERT INTO ingest_jobs (id, project_id, document_id, status, created_at, updated_at) "
            "VALUES ('j1', 'p1', 'd1', 'paused', '2024', '2024')"
        )


def test_document_delete_cascades_to_chunks_and_embeddings(tmp_db):
    _insert_project_and_doc(tmp_db)
    chunk_id = _insert_chunk(tmp_db)
    tmp_db.execute(
        "INSERT INTO embeddings (chunk_id, model_id, dimension, vector) VALUES (?, 'm', 2, '[0, 1]')",
        (chunk_id,),
    )
    tmp_db.execute("DELETE FROM documents WHERE id = 'd1'")
    tmp_db.commit()
    assert tmp_db.execute("SELECT COUNT(*) FROM chunks").fetchone()[0] == 0
    assert tmp_db.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0] == 0
