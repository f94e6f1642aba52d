"""Tests for the qualflow config loader."""

from __future__ import annotations

import warnings
from pathlib import Path

import pytest
import yaml

from qualflow.config import ConfigError, QualflowConfig, load_config, write_project_config


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: dict) -> None:
    path.write_text(yaml.dump(data), encoding="utf-8")


@pytest.fixture(autouse=True)
def _no_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("QUALFLOW_EMBEDDING_MODEL", "QUALFLOW_CHAT_MODEL", "QUALFLOW_DB"):
        monkeypatch.delenv(var, raising=False)


def _missing_global(tmp_path: Path) -> Path:
    return tmp_path / "nonexistent" / "config.yaml"


# ---------------------------------------------------------------------------
# Defaults: no config files present
# ---------------------------------------------------------------------------


def test_load_config_defaults_no_files(tmp_path: Path) -> None:
    cfg = load_config(project_dir=tmp_path, global_config_path=_missing_global(tmp_path))

    assert cfg.database == "qualflow.db"
    assert cfg.embedding.model == "openai/text-embedding-3-small"
    assert cfg.embedding.batch_size == 10
    assert cfg.chat.model == "openai/gpt-4o-mini"
    assert (cfg.chunking.chunk_tokens, cfg.chunking.overlap_tokens) == (1_200, 200)
    assert (cfg.rate_limit.capacity, cfg.rate_limit.refill_per_second) == (60_000, 1_000)
    assert cfg.rate_limit.acquire_timeout is None
    assert cfg.queue.lease_seconds == 900
    assert cfg.storage.blob_root == "blobs"


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def test_load_config_global_overrides_defaults(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"chat": {"model": "anthropic/claude-3-5-haiku-20241022"}})

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.chat.model == "anthropic/claude-3-5-haiku-20241022"
    assert cfg.embedding.model == "openai/text-embedding-3-small"


def test_load_config_global_empty_file(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    global_cfg.write_text("", encoding="utf-8")
    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.chat.model == "openai/gpt-4o-mini"


def test_load_config_project_overrides_global(tmp_path: Path) -> None:
    global_cfg = tmp_path / "global.yaml"
    _write_yaml(global_cfg, {"chunking": {"chunk_tokens": 800, "overlap_tokens": 100}})
    _write_yaml(tmp_path / "qualflow.yaml", {"chunking": {"chunk_tokens": 600}})

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.chunking.chunk_tokens == 600
    assert cfg.chunking.overlap_tokens == 100


def test_load_config_rate_limit_and_queue(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "qualflow.yaml", {
        "rate_limit": {"capacity": 5000, "refill_per_second": 50, "acquire_timeout": 30},
        "queue": {"lease_seconds": 60, "seconds_per_document": 5},
        "analysis": {"document_window": 4000},
        "storage": {"blob_root": "/srv/blobs"},
    })
    cfg = load_config(project_dir=tmp_path, global_config_path=_missing_global(tmp_path))
    assert cfg.rate_limit.capacity == 5000
    assert cfg.rate_limit.acquire_timeout == 30.0
    assert (cfg.queue.lease_seconds, cfg.queue.seconds_per_document) == (60, 5)
    assert cfg.analysis.document_window == 4000
    assert cfg.storage.blob_root == "/srv/blobs"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "bad_key",
    ["api_key", "openai_api_key", "API_KEY", "secret", "password", "access_token"],
)
def test_global_config_rejects_api_key_fields(tmp_path: Path, bad_key: str) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {bad_key: "sk-123"})
    with pytest.raises(ConfigError, match="forbidden key"):
        load_config(project_dir=tmp_path, global_config_path=global_cfg)


def test_global_config_rejects_nested_api_key(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {"api_key": "sk-123"}})
    with pytest.raises(ConfigError, match="embedding.api_key"):
        load_config(project_dir=tmp_path, global_config_path=global_cfg)


def test_max_tokens_is_not_an_api_key(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"chat": {"max_tokens": 500}, "chunking": {"chunk_tokens": 900}})
    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.chat.max_tokens == 500


@pytest.mark.parametrize("chunking", [
    {"chunk_tokens": 0},
    {"chunk_tokens": 100, "overlap_tokens": 100},
    {"overlap_tokens": -1},
])
def test_invalid_chunking_rejected(tmp_path: Path, chunking: dict) -> None:
    _write_yaml(tmp_path / "qualflow.yaml", {"chunking": chunking})
    with pytest.raises(ConfigError, match="chunking"):
        load_config(project_dir=tmp_path, global_config_path=_missing_global(tmp_path))


def test_invalid_rate_limit_rejected(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "qualflow.yaml", {"rate_limit": {"capacity": 0}})
    with pytest.raises(ConfigError, match="rate_limit"):
        load_config(project_dir=tmp_path, global_config_path=_missing_global(tmp_path))


def test_unknown_top_level_key_warns(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "qualflow.yaml", {"retrieval": {"top_k": 3}})
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        load_config(project_dir=tmp_path, global_config_path=_missing_global(tmp_path))
    assert any("retrieval" in str(w.message) for w in caught)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def test_env_var_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_yaml(tmp_path / "qualflow.yaml", {"embedding": {"model": "cohere/embed-english-v3.0"}})
    monkeypatch.setenv("QUALFLOW_EMBEDDING_MODEL", "openai/text-embedding-3-large")
    monkeypatch.setenv("QUALFLOW_CHAT_MODEL", "openai/gpt-4o")
    monkeypatch.setenv("QUALFLOW_DB", "/tmp/other.db")

    cfg = load_config(project_dir=tmp_path, global_config_path=_missing_global(tmp_path))
    assert cfg.embedding.model == "openai/text-embedding-3-large"
    assert cfg.chat.model == "openai/gpt-4o"
    assert cfg.database == "/tmp/other.db"


# ---------------------------------------------------------------------------
# write_project_config
# ---------------------------------------------------------------------------


def test_write_project_config_round_trips(tmp_path: Path) -> None:
    path = write_project_config(tmp_path)
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert data["embedding"]["model"] == QualflowConfig().embedding.model
    assert data["chunking"]["chunk_tokens"] == 1_200
    cfg = load_config(project_dir=tmp_path, global_config_path=_missing_global(tmp_path))
    assert cfg.database == "qualflow.db"


def test_write_project_config_keeps_existing(tmp_path: Path) -> None:
    existing = tmp_path / "qualflow.yaml"
    existing.write_text("database: custom.db\n", encoding="utf-8")
    write_project_config(tmp_path)
    assert existing.read_text(encoding="utf-8") == "database: custom.db\n"
