"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib

import pytest
import structlog

from qualflow.db.connection import Database
from qualflow.db.schema import initialize


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "qualflow.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def db_path(tmp_db, tmp_path):
    """Path of the initialized tmp_db file, for tests that open their own connections."""
    return tmp_path / "qualflow.db"


@pytest.fixture(autouse=True)
def _reset_structlog():
    """CLI tests reconfigure structlog against CliRunner's streams; undo that."""
    yield
    structlog.reset_defaults()


def _hash_vector(text: str, dims: int = 4) -> list[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [digest[i] / 255.0 for i in range(dims)]


@pytest.fixture
def fake_embed():
    """Deterministic embed_fn: one 4-dim vector per text derived from its sha256.

    Records every call in ``fake_embed.calls`` as ``(texts, model)``.
    """
    calls: list[tuple[list[str], str]] = []

    def embed(texts: list[str], model: str) -> list[list[float]]:
        calls.append((list(texts), model))
        return [_hash_vector(t) for t in texts]

    embed.calls = calls
    return embed
