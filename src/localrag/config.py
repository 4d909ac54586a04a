"""localrag configuration loader.

Priority (high → low):
  1. Explicit arguments  (handled at the call site, not in this module)
  2. Environment variables  (LOCALRAG_DB_PATH, LOCALRAG_EMBEDDING_MODEL,
     LOCALRAG_CACHE_DIR)
  3. Per-project localrag.yaml
  4. Global ~/.localrag/config.yaml
  5. Hardcoded defaults

All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".localrag"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "localrag.yaml"

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["storage", "embedding", "pool", "chunking", "retrieval", "ingest", "watch", "jobs"]
)

_GROUPING_MODES: frozenset[str] = frozenset(["similar", "related"])
_WORKER_MODES: frozenset[str] = frozenset(["process", "thread"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class StorageCfg:
    """Database location (localrag.yaml: storage:)."""

    db_path: str = ".localrag/localrag.db"


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (localrag.yaml: embedding:).

    Attributes:
        model: sentence-transformers model identifier.
        dimensions: Expected vector length; any other length is an error.
        batch_size: Number of texts sent to a worker in one task.
        cache_dir: Model cache directory (None = library default).
        worker_mode: 'process' (isolated OS processes) or 'thread'.
    """

    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimensions: int = 384
    batch_size: int = 32
    cache_dir: str | None = None
    worker_mode: str = "process"


@dataclass
class PoolCfg:
    """Embedding worker pool sizing (localrag.yaml: pool:).

    Attributes:
        max_workers: Upper bound on live workers (None = CPU count minus one).
        min_workers: Workers that idle reaping never removes.
        idle_timeout_ms: Idle time before a worker is reaped; 0 disables reaping.
    """

    max_workers: int | None = None
    min_workers: int = 0
    idle_timeout_ms: int = 1_800_000

    def resolved_max_workers(self) -> int:
        if self.max_workers is not None:
            return max(1, self.max_workers)
        return max(1, (os.cpu_count() or 2) - 1)


@dataclass
class ChunkingCfg:
    """Chunk size and overlap, in characters (localrag.yaml: chunking:)."""

    chunk_size: int = 512
    chunk_overlap: int = 100
    min_chunk_length: int = 50


@dataclass
class RetrievalCfg:
    """Search tuning (localrag.yaml: retrieval:).

    Attributes:
        hybrid_weight: Keyword share of the hybrid score. 0.0 = purely
            semantic, 1.0 = purely keyword.
        max_distance: Results with a larger distance are discarded.
        grouping: 'similar', 'related' or None (no relevance-gap cut).
        default_limit: Result count when the caller gives none.
    """

    hybrid_weight: float = 0.6
    max_distance: float | None = None
    grouping: str | None = None
    default_limit: int = 10


@dataclass
class IngestCfg:
    """File ingestion limits (localrag.yaml: ingest:).

    Attributes:
        base_dir: Files outside this directory are rejected (None = CWD).
        max_file_size: Maximum file size in bytes.
    """

    base_dir: str | None = None
    max_file_size: int = 100 * 1024 * 1024


@dataclass
class WatchCfg:
    """File watcher timing (localrag.yaml: watch:)."""

    debounce_ms: int = 5_000
    poll_interval_ms: int = 1_000


@dataclass
class JobsCfg:
    """Periodic maintenance (localrag.yaml: jobs:). Intervals ≤ 0 disable a job."""

    cleanup_interval_ms: int = 0
    optimize_interval_ms: int = 0


@dataclass
class LocalRAGConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    storage: StorageCfg = field(default_factory=StorageCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    pool: PoolCfg = field(default_factory=PoolCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    ingest: IngestCfg = field(default_factory=IngestCfg)
    watch: WatchCfg = field(default_factory=WatchCfg)
    jobs: JobsCfg = field(default_factory=JobsCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}'; ignored.",
                UserWarning,
                stacklevel=4,
            )


def validate_config(cfg: LocalRAGConfig) -> None:
    """Raise ConfigError if *cfg* holds values the engine cannot run with."""
    ch = cfg.chunking
    if ch.chunk_size < 1:
        raise ConfigError(f"chunking.chunk_size must be >= 1, got {ch.chunk_size}")
    if not 0 <= ch.chunk_overlap < ch.chunk_size:
        raise ConfigError(
            f"chunking.chunk_overlap must be in [0, chunk_size), got {ch.chunk_overlap}"
        )
    if not 0.0 <= cfg.retrieval.hybrid_weight <= 1.0:
        raise ConfigError(
            f"retrieval.hybrid_weight must be in [0.0, 1.0], got {cfg.retrieval.hybrid_weight}"
        )
    if cfg.retrieval.grouping is not None and cfg.retrieval.grouping not in _GROUPING_MODES:
        raise ConfigError(
            f"retrieval.grouping must be one of {sorted(_GROUPING_MODES)}, "
            f"got '{cfg.retrieval.grouping}'"
        )
    if cfg.embedding.worker_mode not in _WORKER_MODES:
        raise ConfigError(
            f"embedding.worker_mode must be one of {sorted(_WORKER_MODES)}, "
            f"got '{cfg.embedding.worker_mode}'"
        )
    if cfg.embedding.dimensions < 1 or cfg.embedding.batch_size < 1:
        raise ConfigError("embedding.dimensions and embedding.batch_size must be >= 1")
    if cfg.pool.min_workers < 0 or cfg.pool.idle_timeout_ms < 0:
        raise ConfigError("pool.min_workers and pool.idle_timeout_ms must be >= 0")


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


def _cfg_from_dict(data: dict[str, Any]) -> LocalRAGConfig:
    """Build a *LocalRAGConfig* from a merged raw YAML dict."""
    cfg = LocalRAGConfig()

    if "storage" in data:
        s = data["storage"]
        cfg.storage = StorageCfg(db_path=str(s.get("db_path", cfg.storage.db_path)))

    if "embedding" in data:
        e = data["embedding"]
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
            batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
            cache_dir=e.get("cache_dir") or cfg.embedding.cache_dir,
            worker_mode=str(e.get("worker_mode", cfg.embedding.worker_mode)),
        )

    if "pool" in data:
        p = data["pool"]
        max_workers = p.get("max_workers", cfg.pool.max_workers)
        cfg.pool = PoolCfg(
            max_workers=None if max_workers is None else int(max_workers),
            min_workers=int(p.get("min_workers", cfg.pool.min_workers)),
            idle_timeout_ms=int(p.get("idle_timeout_ms", cfg.pool.idle_timeout_ms)),
        )

    if "chunking" in data:
        c = data["chunking"]
        cfg.chunking = ChunkingCfg(
            chunk_size=int(c.get("chunk_size", cfg.chunking.chunk_size)),
            chunk_overlap=int(c.get("chunk_overlap", cfg.chunking.chunk_overlap)),
            min_chunk_length=int(c.get("min_chunk_length", cfg.chunking.min_chunk_length)),
        )

    if "retrieval" in data:
        r = data["retrieval"]
        cfg.retrieval = RetrievalCfg(
            hybrid_weight=float(r.get("hybrid_weight", cfg.retrieval.hybrid_weight)),
            max_distance=_optional_float(r.get("max_distance", cfg.retrieval.max_distance)),
            grouping=r.get("grouping", cfg.retrieval.grouping),
            default_limit=int(r.get("default_limit", cfg.retrieval.default_limit)),
        )

    if "ingest" in data:
        i = data["ingest"]
        cfg.ingest = IngestCfg(
            base_dir=i.get("base_dir") or cfg.ingest.base_dir,
            max_file_size=int(i.get("max_file_size", cfg.ingest.max_file_size)),
        )

    if "watch" in data:
        w = data["watch"]
        cfg.watch = WatchCfg(
            debounce_ms=int(w.get("debounce_ms", cfg.watch.debounce_ms)),
            poll_interval_ms=int(w.get("poll_interval_ms", cfg.watch.poll_interval_ms)),
        )

    if "jobs" in data:
        j = data["jobs"]
        cfg.jobs = JobsCfg(
            cleanup_interval_ms=int(j.get("cleanup_interval_ms", cfg.jobs.cleanup_interval_ms)),
            optimize_interval_ms=int(j.get("optimize_interval_ms", cfg.jobs.optimize_interval_ms)),
        )

    return cfg


def _apply_env_overrides(cfg: LocalRAGConfig) -> LocalRAGConfig:
    """Apply LOCALRAG_* environment variable overrides."""
    if db_path := os.environ.get("LOCALRAG_DB_PATH"):
        cfg.storage.db_path = db_path
    if model := os.environ.get("LOCALRAG_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if cache_dir := os.environ.get("LOCALRAG_CACHE_DIR"):
        cfg.embedding.cache_dir = cache_dir
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> LocalRAGConfig:
    """Load and return a merged *LocalRAGConfig*.

    Applies layers in order: global → per-project → env vars.

    Args:
        project_dir: Directory to search for *localrag.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged and validated *LocalRAGConfig*.

    Raises:
        ConfigError: If a merged value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    validate_config(cfg)
    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.localrag/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# localrag global configuration.\n"
            "# Per-project overrides live in ./localrag.yaml.\n"
            "\n"
            "embedding:\n"
            "  model: sentence-transformers/all-MiniLM-L6-v2\n"
            "  dimensions: 384\n"
            "\n"
            "retrieval:\n"
            "  hybrid_weight: 0.6\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
