"""Tests for per-model sqlite-vec virtual tables."""

from __future__ import annotations

import json

import pytest

from qualflow.db.vectors import ensure_vec_table, list_vec_tables, model_to_slug, vec_table_name


@pytest.mark.parametrize("model,expected", [
    ("openai/text-embedding-3-small", "openai_text_embedding_3_small"),
    ("azure/text-embedding-3-large", "azure_text_embedding_3_large"),
    ("cohere/embed-english-v3.0", "cohere_embed_english_v3_0"),
])
def test_model_to_slug(model, expected):
    assert model_to_slug(model) == expected


def test_vec_table_name():
    slug = model_to_slug("openai/text-embedding-3-small")
    assert vec_table_name(slug) == "vec_chunks_openai_text_embedding_3_small"


def test_ensure_vec_table_idempotent(tmp_db):
    slug = model_to_slug("openai/text-embedding-3-small")
    assert ensure_vec_table(tmp_db, slug, dimensions=4) == ensure_vec_table(tmp_db, slug, dimensions=4)


def test_ensure_vec_table_insert_and_lookup(tmp_db):
    table = ensure_vec_table(tmp_db, "test_model", dimensions=4)
    embedding = json.dumps([0.1, 0.2, 0.3, 0.4])
    tmp_db.execute(f"INSERT INTO {table}(rowid, embedding) VALUES (42, ?)", (embedding,))
    row = tmp_db.execute(
        f"SELECT rowid FROM {table} WHERE embedding MATCH ? ORDER BY distance LIMIT 1",
        (embedding,),
    ).fetchone()
    assert row[0] == 42


def test_list_vec_tables_excludes_shadow_tables(tmp_db):
    ensure_vec_table(tmp_db, "model_a", dimensions=4)
    ensure_vec_table(tmp_db, "model_b", dimensions=8)
    assert sorted(list_vec_tables(tmp_db)) == ["vec_chunks_model_a", "vec_chunks_model_b"]


def test_list_vec_tables_empty(tmp_db):
    assert list_vec_tables(tmp_db) == []


def test_ensure_vec_table_invalid_slug(tmp_db):
    with pytest.raises(ValueError, match="model_slug"):
        ensure_vec_table(tmp_db, "invalid/slug!", dimensions=128)


def test_ensure_vec_table_invalid_dimensions(tmp_db):
    with pytest.raises(ValueError, match="dimensions"):
        ensure_vec_table(tmp_db, "valid_slug", dimensions=0)
