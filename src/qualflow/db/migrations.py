"""Forward-only migration runner for the qualflow schema.

Vec tables (vec_chunks_*) are NOT migration-managed: use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS projects (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    guide_context   TEXT,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    id              TEXT PRIMARY KEY,
    project_id      TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name            TEXT NOT NULL,
    content         TEXT,
    storage_path    TEXT,
    respondent_name TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_documents_project ON documents(project_id, created_at);

CREATE TABLE IF NOT EXISTS chunks (
    id              INTEGER PRIMARY KEY,
    project_id      TEXT NOT NULL,
    doc_id          TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    chunk_index     INTEGER NOT NULL,
    text            TEXT NOT NULL,
    start_offset    INTEGER NOT NULL,
    end_offset      INTEGER NOT NULL,
    token_count     INTEGER NOT NULL,
    version_hash    TEXT NOT NULL,
    speaker         TEXT,
    participant_id  TEXT,
    keywords        TEXT NOT NULL DEFAULT '[]',
    language        TEXT NOT NULL DEFAULT 'en',
    created_at      DATETIME NOT NULL DEFAULT (datetime('now')),
    UNIQUE (project_id, doc_id, chunk_index)
);

CREATE TABLE IF NOT EXISTS embeddings (
    chunk_id        INTEGER NOT NULL UNIQUE REFERENCES chunks(id) ON DELETE CASCADE,
    model_id        TEXT NOT NULL,
    dimension       INTEGER NOT NULL,
    vector          TEXT NOT NULL,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS ingest_jobs (
    id              TEXT PRIMARY KEY,
    project_id      TEXT NOT NULL,
    document_id     TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'queued'
                    CHECK (status IN ('queued', 'running', 'completed', 'failed')),
    retry_count     INTEGER NOT NULL DEFAULT 0,
    error_message   TEXT,
    progress        TEXT NOT NULL DEFAULT '{}',
    result          TEXT NOT NULL DEFAULT '{}',
    worker_id       TEXT,
    claimed_at      TEXT,
    started_at      TEXT,
    completed_at    TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    UNIQUE (project_id, document_id)
);
CREATE INDEX IF NOT EXISTS idx_ingest_jobs_claim ON ingest_jobs(status, created_at);

CREATE TABLE IF NOT EXISTS analysis_jobs (
    id                  TEXT PRIMARY KEY,
    project_id          TEXT NOT NULL UNIQUE,
    status              TEXT NOT NULL DEFAULT 'queued'
                        CHECK (status IN ('queued', 'running', 'completed', 'failed')),
    batches_total       INTEGER NOT NULL DEFAULT 0,
    batches_completed   INTEGER NOT NULL DEFAULT 0,
    retry_count         INTEGER NOT NULL DEFAULT 0,
    error_message       TEXT,
    result              TEXT NOT NULL DEFAULT '{}',
    worker_id           TEXT,
    claimed_at          TEXT,
    started_at          TEXT,
    completed_at        TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_analysis_jobs_claim ON analysis_jobs(status, created_at);

CREATE TABLE IF NOT EXISTS project_ingest_metadata (
    project_id              TEXT PRIMARY KEY,
    status                  TEXT NOT NULL DEFAULT 'queued',
    total_documents         INTEGER NOT NULL DEFAULT 0,
    jobs_total              INTEGER NOT NULL DEFAULT 0,
    jobs_completed          INTEGER NOT NULL DEFAULT 0,
    jobs_failed             INTEGER NOT NULL DEFAULT 0,
    chunk_token_size        INTEGER NOT NULL,
    overlap_tokens          INTEGER NOT NULL,
    embedding_model         TEXT NOT NULL,
    first_error             TEXT,
    estimated_completion    TEXT,
    processing_started_at   TEXT,
    processing_completed_at TEXT,
    updated_at              TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS analysis_results (
    project_id      TEXT NOT NULL,
    question_id     TEXT NOT NULL,
    respondent      TEXT NOT NULL,
    document_id     TEXT,
    question_text   TEXT NOT NULL,
    section         TEXT NOT NULL DEFAULT '',
    quote           TEXT NOT NULL DEFAULT '',
    summary         TEXT NOT NULL DEFAULT '',
    theme           TEXT NOT NULL DEFAULT '',
    confidence      INTEGER NOT NULL DEFAULT 0,
    degraded        INTEGER NOT NULL DEFAULT 0,
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (project_id, question_id, respondent)
);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    Vec tables are NOT managed here: use ensure_vec_table() instead.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
