"""qualflow configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site: not in this module)
  2. Environment variables  (QUALFLOW_EMBEDDING_MODEL, QUALFLOW_CHAT_MODEL, QUALFLOW_DB)
  3. Per-project qualflow.yaml  (next to the database)
  4. Global ~/.qualflow/config.yaml  (model defaults only: no API keys)
  5. Hardcoded defaults

The resulting QualflowConfig is built once per process and passed explicitly
into workers, the embedding batcher and the rate limiter.
All YAML reads use yaml.safe_load(): never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".qualflow"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "qualflow.yaml"

DEFAULT_DB: str = "qualflow.db"

# Fields that suggest an API key: forbidden in global config.
# Does NOT match legitimate config keys like chunk_tokens or max_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["database", "embedding", "chat", "chunking", "rate_limit", "queue", "analysis", "storage"]
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (qualflow.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    batch_size: int = 10


@dataclass
class ChatCfg:
    """Chat/extraction model configuration (qualflow.yaml: chat:)."""

    model: str = "openai/gpt-4o-mini"
    temperature: float = 0.3
    max_tokens: int = 1_000


@dataclass
class ChunkingCfg:
    """Transcript chunking (qualflow.yaml: chunking:)."""

    chunk_tokens: int = 1_200
    overlap_tokens: int = 200
    insert_batch_size: int = 50


@dataclass
class RateLimitCfg:
    """Token bucket guarding the embedding endpoint (qualflow.yaml: rate_limit:).

    Defaults allow 60k tokens in a burst, refilling at 1k tokens/second.
    """

    capacity: float = 60_000
    refill_per_second: float = 1_000
    poll_interval: float = 0.1
    acquire_timeout: float | None = None


@dataclass
class QueueCfg:
    """Job queue behaviour (qualflow.yaml: queue:).

    Attributes:
        lease_seconds: A ``running`` job whose claim is older than this is
            considered abandoned by a crashed worker and may be re-claimed.
        seconds_per_document: Baseline used for ``estimated_completion``.
    """

    lease_seconds: int = 900
    seconds_per_document: int = 30


@dataclass
class AnalysisCfg:
    """Per-question extraction (qualflow.yaml: analysis:)."""

    document_window: int = 8_000


@dataclass
class StorageCfg:
    """Blob storage root for documents uploaded by path (qualflow.yaml: storage:)."""

    blob_root: str = "blobs"


@dataclass
class QualflowConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: str = DEFAULT_DB
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    chat: ChatCfg = field(default_factory=ChatCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    rate_limit: RateLimitCfg = field(default_factory=RateLimitCfg)
    queue: QueueCfg = field(default_factory=QueueCfg)
    analysis: AnalysisCfg = field(default_factory=AnalysisCfg)
    storage: StorageCfg = field(default_factory=StorageCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}': ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: QualflowConfig) -> None:
    if cfg.chunking.chunk_tokens < 1:
        raise ConfigError("chunking.chunk_tokens must be >= 1")
    if not 0 <= cfg.chunking.overlap_tokens < cfg.chunking.chunk_tokens:
        raise ConfigError("chunking.overlap_tokens must be in [0, chunk_tokens)")
    if cfg.embedding.batch_size < 1:
        raise ConfigError("embedding.batch_size must be >= 1")
    if cfg.rate_limit.capacity <= 0 or cfg.rate_limit.refill_per_second <= 0:
        raise ConfigError("rate_limit.capacity and rate_limit.refill_per_second must be > 0")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _optional_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _cfg_from_dict(data: dict[str, Any]) -> QualflowConfig:
    """Build a *QualflowConfig* from a merged raw YAML dict."""
    cfg = QualflowConfig()

    if "database" in data:
        cfg.database = str(data["database"])

    if "embedding" in data:
        e = data["embedding"]
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
        )

    if "chat" in data:
        c = data["chat"]
        cfg.chat = ChatCfg(
            model=str(c.get("model", cfg.chat.model)),
            temperature=float(c.get("temperature", cfg.chat.temperature)),
            max_tokens=int(c.get("max_tokens", cfg.chat.max_tokens)),
        )

    if "chunking" in data:
        ch = data["chunking"]
        cfg.chunking = ChunkingCfg(
            chunk_tokens=int(ch.get("chunk_tokens", cfg.chunking.chunk_tokens)),
            overlap_tokens=int(ch.get("overlap_tokens", cfg.chunking.overlap_tokens)),
            insert_batch_size=int(ch.get("insert_batch_size", cfg.chunking.insert_batch_size)),
        )

    if "rate_limit" in data:
        r = data["rate_limit"]
        cfg.rate_limit = RateLimitCfg(
            capacity=float(r.get("capacity", cfg.rate_limit.capacity)),
            refill_per_second=float(r.get("refill_per_second", cfg.rate_limit.refill_per_second)),
            poll_interval=float(r.get("poll_interval", cfg.rate_limit.poll_interval)),
            acquire_timeout=_optional_float(r.get("acquire_timeout", cfg.rate_limit.acquire_timeout)),
        )

    if "queue" in data:
        q = data["queue"]
        cfg.queue = QueueCfg(
            lease_seconds=int(q.get("lease_seconds", cfg.queue.lease_seconds)),
            seconds_per_document=int(q.get("seconds_per_document", cfg.queue.seconds_per_document)),
        )

    if "analysis" in data:
        a = data["analysis"]
        cfg.analysis = AnalysisCfg(
            document_window=int(a.get("document_window", cfg.analysis.document_window)),
        )

    if "storage" in data:
        s = data["storage"]
        cfg.storage = StorageCfg(blob_root=str(s.get("blob_root", cfg.storage.blob_root)))

    return cfg


def _apply_env_overrides(cfg: QualflowConfig) -> QualflowConfig:
    """Apply QUALFLOW_* environment variable overrides."""
    if model := os.environ.get("QUALFLOW_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if model := os.environ.get("QUALFLOW_CHAT_MODEL"):
        cfg.chat.model = model
    if db := os.environ.get("QUALFLOW_DB"):
        cfg.database = db
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> QualflowConfig:
    """Load and return a merged *QualflowConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *qualflow.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *QualflowConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, or the
            chunking / rate-limit values are out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _apply_env_overrides(_cfg_from_dict(merged))
    _validate(cfg)
    return cfg


def write_project_config(project_dir: Path, cfg: QualflowConfig | None = None) -> Path:
    """Write a starter ``qualflow.yaml`` into *project_dir* unless one exists.

    Returns:
        Path to the project config file.
    """
    cfg = cfg or QualflowConfig()
    target = project_dir / _PROJECT_CONFIG_NAME
    if target.exists():
        return target

    content = (
        "# qualflow project configuration.\n"
        "# NEVER store API keys here: use environment variables:\n"
        "#   export OPENAI_API_KEY=sk-...\n"
        "\n"
        f"database: {cfg.database}\n"
        "\n"
        "embedding:\n"
        f"  model: {cfg.embedding.model}\n"
        f"  batch_size: {cfg.embedding.batch_size}\n"
        "\n"
        "chat:\n"
        f"  model: {cfg.chat.model}\n"
        "\n"
        "chunking:\n"
        f"  chunk_tokens: {cfg.chunking.chunk_tokens}\n"
        f"  overlap_tokens: {cfg.chunking.overlap_tokens}\n"
    )
    target.write_text(content, encoding="utf-8")
    return target
