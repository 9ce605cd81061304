"""Lodestone configuration loader.

Priority (high → low):
  1. CLI flags               (handled at call site — not in this module)
  2. Environment variables   (LODESTONE_EMBEDDING_MODEL, LODESTONE_DB, LODESTONE_LOG_LEVEL)
  3. Per-project lodestone.yaml  (current working directory)
  4. Global ~/.lodestone/config.yaml  (model defaults only — no API keys)
  5. Hardcoded defaults

Secrets (provider API keys, LODESTONE_CRON_SECRET, NOTION_API_KEY) are read
from the environment only; a global config containing key-like fields is rejected.
All YAML reads use yaml.safe_load() — never yaml.load().
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

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".lodestone"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "lodestone.yaml"

CRON_SECRET_ENV = "LODESTONE_CRON_SECRET"

# Matches: api_key, apikey, api-key, api_secret, _token (suffix), standalone token,
# standalone secret, _secret (suffix), password, passwd, credential(s).
# Does NOT match legitimate config keys like max_tokens or token_budget.
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
    [
        "database",
        "embedding",
        "chunking",
        "retrieval",
        "rate_limit",
        "retrain",
        "processing",
        "crawl",
    ]
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
class DatabaseCfg:
    """SQLite database location (lodestone.yaml: database:)."""

    path: str = ".lodestone.db"
    busy_timeout: float = 30.0


@dataclass
class EmbeddingCfg:
    """Embedding provider configuration (lodestone.yaml: embedding:).

    Attributes:
        model: LiteLLM embedding model string (provider/model format).
        dimensions: Vector width; constant for every stored chunk.
        batch_size: Maximum inputs per provider call.
        timeout: Seconds before a provider call is abandoned.
        num_retries: Provider-level retries; 0 leaves retry policy to retrains.
    """

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 2048
    timeout: float = 60.0
    num_retries: int = 0


@dataclass
class ChunkingCfg:
    """Paragraph chunker settings, in characters (lodestone.yaml: chunking:)."""

    chunk_size: int = 1000
    overlap: int = 200
    separator: str = "\n\n"


@dataclass
class RetrievalCfg:
    """Similarity query defaults (lodestone.yaml: retrieval:)."""

    top_k: int = 5
    threshold: float = 0.5
    max_top_k: int = 20
    max_query_chars: int = 10_000


@dataclass
class RateLimitCfg:
    """Fixed-window limiter for the public query path (lodestone.yaml: rate_limit:)."""

    max_requests: int = 60
    window_seconds: float = 60.0
    cleanup_interval: float = 60.0


@dataclass
class RetrainCfg:
    """Auto-retrain scheduler policy (lodestone.yaml: retrain:)."""

    cooldown_hours: float = 24.0
    batch_size: int = 50
    allowed_plans: list[str] = field(
        default_factory=lambda: ["starter", "pro", "enterprise"]
    )


@dataclass
class ProcessingCfg:
    """Background processing settings (lodestone.yaml: processing:).

    Attributes:
        sweep_batch_size: Pending sources picked up per sweep.
        max_workers: Threads used for sweeps and fire-and-forget jobs.
        stall_minutes: A source left in ``processing`` longer than this is
            considered abandoned and may be returned to ``pending``.
    """

    sweep_batch_size: int = 10
    max_workers: int = 4
    stall_minutes: float = 30.0


@dataclass
class CrawlCfg:
    """Website fetching limits (lodestone.yaml: crawl:)."""

    max_depth: int = 2
    max_pages: int = 10
    timeout: float = 30.0
    max_bytes: int = 5 * 1024 * 1024


@dataclass
class LodestoneConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: DatabaseCfg = field(default_factory=DatabaseCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    rate_limit: RateLimitCfg = field(default_factory=RateLimitCfg)
    retrain: RetrainCfg = field(default_factory=RetrainCfg)
    processing: ProcessingCfg = field(default_factory=ProcessingCfg)
    crawl: CrawlCfg = field(default_factory=CrawlCfg)


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


def _validate(cfg: LodestoneConfig) -> None:
    """Raise ConfigError for values the pipeline cannot run with."""
    ch = cfg.chunking
    if ch.chunk_size < 1:
        raise ConfigError(f"chunking.chunk_size must be >= 1, got {ch.chunk_size}")
    if not 0 <= ch.overlap < ch.chunk_size:
        raise ConfigError(
            f"chunking.overlap must be in [0, chunk_size), got {ch.overlap} "
            f"(chunk_size={ch.chunk_size})"
        )
    if not ch.separator:
        raise ConfigError("chunking.separator must not be empty")
    if cfg.embedding.dimensions < 1:
        raise ConfigError(
            f"embedding.dimensions must be >= 1, got {cfg.embedding.dimensions}"
        )
    if cfg.embedding.batch_size < 1:
        raise ConfigError(
            f"embedding.batch_size must be >= 1, got {cfg.embedding.batch_size}"
        )
    if cfg.rate_limit.max_requests < 1:
        raise ConfigError(
            f"rate_limit.max_requests must be >= 1, got {cfg.rate_limit.max_requests}"
        )


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


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


def _cfg_from_dict(data: dict[str, Any]) -> LodestoneConfig:
    """Build a *LodestoneConfig* from a merged raw YAML dict."""
    cfg = LodestoneConfig()

    if "database" in data:
        d = data["database"] or {}
        cfg.database = DatabaseCfg(
            path=str(d.get("path", cfg.database.path)),
            busy_timeout=float(d.get("busy_timeout", cfg.database.busy_timeout)),
        )

    if "embedding" in data:
        e = data["embedding"] or {}
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
            batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
            timeout=float(e.get("timeout", cfg.embedding.timeout)),
            num_retries=int(e.get("num_retries", cfg.embedding.num_retries)),
        )

    if "chunking" in data:
        c = data["chunking"] or {}
        cfg.chunking = ChunkingCfg(
            chunk_size=int(c.get("chunk_size", cfg.chunking.chunk_size)),
            overlap=int(c.get("overlap", cfg.chunking.overlap)),
            separator=str(c.get("separator", cfg.chunking.separator)),
        )

    if "retrieval" in data:
        r = data["retrieval"] or {}
        cfg.retrieval = RetrievalCfg(
            top_k=int(r.get("top_k", cfg.retrieval.top_k)),
            threshold=float(r.get("threshold", cfg.retrieval.threshold)),
            max_top_k=int(r.get("max_top_k", cfg.retrieval.max_top_k)),
            max_query_chars=int(
                r.get("max_query_chars", cfg.retrieval.max_query_chars)
            ),
        )

    if "rate_limit" in data:
        rl = data["rate_limit"] or {}
        cfg.rate_limit = RateLimitCfg(
            max_requests=int(rl.get("max_requests", cfg.rate_limit.max_requests)),
            window_seconds=float(
                rl.get("window_seconds", cfg.rate_limit.window_seconds)
            ),
            cleanup_interval=float(
                rl.get("cleanup_interval", cfg.rate_limit.cleanup_interval)
            ),
        )

    if "retrain" in data:
        rt = data["retrain"] or {}
        cfg.retrain = RetrainCfg(
            cooldown_hours=float(rt.get("cooldown_hours", cfg.retrain.cooldown_hours)),
            batch_size=int(rt.get("batch_size", cfg.retrain.batch_size)),
            allowed_plans=[
                str(p) for p in rt.get("allowed_plans", cfg.retrain.allowed_plans)
            ],
        )

    if "processing" in data:
        p = data["processing"] or {}
        cfg.processing = ProcessingCfg(
            sweep_batch_size=int(
                p.get("sweep_batch_size", cfg.processing.sweep_batch_size)
            ),
            max_workers=int(p.get("max_workers", cfg.processing.max_workers)),
            stall_minutes=float(p.get("stall_minutes", cfg.processing.stall_minutes)),
        )

    if "crawl" in data:
        cr = data["crawl"] or {}
        cfg.crawl = CrawlCfg(
            max_depth=int(cr.get("max_depth", cfg.crawl.max_depth)),
            max_pages=int(cr.get("max_pages", cfg.crawl.max_pages)),
            timeout=float(cr.get("timeout", cfg.crawl.timeout)),
            max_bytes=int(cr.get("max_bytes", cfg.crawl.max_bytes)),
        )

    return cfg


def _apply_env_overrides(cfg: LodestoneConfig) -> LodestoneConfig:
    """Apply LODESTONE_* environment variable overrides."""
    if model := os.environ.get("LODESTONE_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if db_path := os.environ.get("LODESTONE_DB"):
        cfg.database.path = db_path
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> LodestoneConfig:
    """Load and return a merged *LodestoneConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *lodestone.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *LodestoneConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, or if
            chunking/embedding values are out of range.
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


def write_project_config(project_dir: Path, cfg: LodestoneConfig | None = None) -> Path:
    """Write a starter ``lodestone.yaml`` into *project_dir* if none exists.

    Returns:
        Path to the project config file (existing or newly written).
    """
    cfg = cfg or LodestoneConfig()
    target = project_dir / _PROJECT_CONFIG_NAME
    if target.exists():
        return target

    content = (
        "# Lodestone project configuration.\n"
        "# Secrets belong in environment variables:\n"
        "#   export OPENAI_API_KEY=sk-...\n"
        f"#   export {CRON_SECRET_ENV}=...\n"
        "\n"
        "database:\n"
        f"  path: {cfg.database.path}\n"
        "\n"
        "embedding:\n"
        f"  model: {cfg.embedding.model}\n"
        f"  dimensions: {cfg.embedding.dimensions}\n"
        "\n"
        "chunking:\n"
        f"  chunk_size: {cfg.chunking.chunk_size}\n"
        f"  overlap: {cfg.chunking.overlap}\n"
        "\n"
        "retrieval:\n"
        f"  top_k: {cfg.retrieval.top_k}\n"
        f"  threshold: {cfg.retrieval.threshold}\n"
    )
    target.write_text(content, encoding="utf-8")
    return target
