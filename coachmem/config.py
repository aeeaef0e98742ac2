"""
Engine configuration.

Values are resolved in this order (later wins):
1. Dataclass defaults below
2. ~/.coachmem/config/engine.yaml (or an explicit path)
3. COACHMEM_<SECTION>_<FIELD> environment variables
4. An overrides dict passed by the caller (tests use this)

Example YAML:

    dedup:
      exact_threshold: 0.97
    retrieval:
      weights:
        semantic: 0.4
"""

import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Optional

import yaml

from coachmem.errors import ConfigError
from coachmem.log import get_logger

logger = get_logger("coachmem.config")

DEFAULT_CONFIG_PATH = Path.home() / ".coachmem" / "config" / "engine.yaml"
ENV_PREFIX = "COACHMEM"


@dataclass
class ProviderConfig:
    """External providers (embedding model, text analysis LLM)."""
    embedding_model: str = "all-MiniLM-L6-v2"
    embedding_dimension: int = 384
    analyzer_base_url: str = "http://localhost:11434"
    analyzer_model: str = "llama3.2"
    analyzer_timeout: float = 8.0
    embed_timeout: float = 10.0


@dataclass
class DetectionConfig:
    max_content_length: int = 2000
    min_importance: float = 0.3     # heuristic results below this are not remembered
    max_keywords: int = 8


@dataclass
class DedupConfig:
    exact_threshold: float = 0.95
    high_threshold: float = 0.85
    related_threshold: float = 0.70
    top_k: int = 50


@dataclass
class CacheConfig:
    embedding_max_size: int = 1000
    embedding_ttl: float = 3600.0
    retrieval_max_size: int = 256
    retrieval_ttl: float = 120.0
    cleanup_interval: float = 300.0     # how often a cleanup task is queued


@dataclass
class QueueConfig:
    interval: float = 5.0
    batch_size: int = 10
    task_timeout: float = 10.0
    max_retries: int = 3
    backoff_base: float = 2.0
    max_depth: int = 500
    failure_threshold: int = 5
    failure_window: float = 60.0
    cooldown: float = 30.0


@dataclass
class RankingWeights:
    """Relative weights of the retrieval score. Normalised at scoring time."""
    semantic: float = 0.35
    temporal: float = 0.25
    importance: float = 0.25
    access: float = 0.15


@dataclass
class RetrievalConfig:
    candidate_k: int = 75
    keyword_limit: int = 25
    max_per_category: int = 3
    max_results: int = 10
    exploratory_threshold: float = 0.25
    precise_threshold: float = 0.35
    precise_min_terms: int = 3
    recent_days: float = 7.0
    stale_days: float = 90.0
    stale_discount: float = 0.5
    half_life_days: float = 30.0
    access_saturation: int = 20
    degraded_factor: float = 0.5
    timeout: float = 2.0
    query_embed_timeout: float = 1.0
    weights: RankingWeights = field(default_factory=RankingWeights)


@dataclass
class RelationshipConfig:
    candidate_k: int = 10
    min_confidence: float = 0.35
    contradiction_min_overlap: float = 0.3
    supersede_similarity: float = 0.6
    support_similarity: float = 0.7
    support_overlap: float = 0.5
    related_similarity: float = 0.5
    related_overlap: float = 0.2
    temporal_window_days: float = 30.0
    semantic_weight: float = 0.5
    structural_weight: float = 0.3
    temporal_weight: float = 0.2


@dataclass
class EngineConfig:
    """Root configuration object passed to MemoryEngine."""
    data_dir: str = str(Path.home() / ".coachmem" / "data")
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    relationships: RelationshipConfig = field(default_factory=RelationshipConfig)


def _coerce(value: Any, current: Any, name: str) -> Any:
    """Cast a raw YAML/env value to the type of the current default."""
    try:
        if isinstance(current, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r} ({e})")


def _merge(obj: Any, data: dict, path: str) -> Any:
    """Return a copy of dataclass `obj` with values from `data` applied."""
    changes = {}
    known = {f.name: f for f in fields(obj)}
    for key, value in data.items():
        if key not in known:
            raise ConfigError(f"Unknown config key: {path}{key}")
        current = getattr(obj, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ConfigError(f"Expected a mapping for {path}{key}")
            changes[key] = _merge(current, value, f"{path}{key}.")
        else:
            changes[key] = _coerce(value, current, f"{path}{key}")
    return replace(obj, **changes)


def _env_overrides(obj: Any, prefix: str) -> dict:
    """Collect COACHMEM_* variables that match dataclass fields."""
    found = {}
    for f in fields(obj):
        current = getattr(obj, f.name)
        env_name = f"{prefix}_{f.name.upper()}"
        if is_dataclass(current):
            nested = _env_overrides(current, env_name)
            if nested:
                found[f.name] = nested
        elif env_name in os.environ:
            found[f.name] = os.environ[env_name]
    return found


def validate_config(config: EngineConfig) -> EngineConfig:
    """Reject values that would break the engine's invariants."""
    d = config.dedup
    for name in ("exact_threshold", "high_threshold", "related_threshold"):
        value = getattr(d, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"dedup.{name} must be in [0, 1], got {value}")
    if not d.exact_threshold >= d.high_threshold >= d.related_threshold:
        raise ConfigError("dedup bands must satisfy exact >= high >= related")

    w = config.retrieval.weights
    weights = [w.semantic, w.temporal, w.importance, w.access]
    if any(x < 0 for x in weights) or sum(weights) <= 0:
        raise ConfigError("retrieval.weights must be non-negative with a positive sum")

    r = config.relationships
    if min(r.semantic_weight, r.structural_weight, r.temporal_weight) < 0:
        raise ConfigError("relationship weights must be non-negative")

    positive = [
        ("providers.embedding_dimension", config.providers.embedding_dimension),
        ("detection.max_content_length", config.detection.max_content_length),
        ("dedup.top_k", d.top_k),
        ("cache.embedding_max_size", config.cache.embedding_max_size),
        ("cache.retrieval_max_size", config.cache.retrieval_max_size),
        ("queue.batch_size", config.queue.batch_size),
        ("queue.max_depth", config.queue.max_depth),
        ("queue.failure_threshold", config.queue.failure_threshold),
        ("retrieval.max_results", config.retrieval.max_results),
        ("retrieval.max_per_category", config.retrieval.max_per_category),
    ]
    for name, value in positive:
        if value <= 0:
            raise ConfigError(f"{name} must be positive, got {value}")
    if config.queue.max_retries < 0:
        raise ConfigError("queue.max_retries must be >= 0")

    return config


def load_config(
    path: Optional[Path] = None,
    overrides: Optional[dict] = None,
) -> EngineConfig:
    """Load the engine configuration.

    Args:
        path: YAML file to read. Defaults to ~/.coachmem/config/engine.yaml
        overrides: Nested dict applied last (highest precedence)

    Returns:
        A validated EngineConfig

    Raises:
        ConfigError: If any value is unknown or out of range
    """
    config = EngineConfig()

    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {config_path}: {e}")
        if not isinstance(file_config, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        config = _merge(config, file_config, "")
        logger.debug(f"Loaded config file {config_path}")

    env = _env_overrides(config, ENV_PREFIX)
    if env:
        config = _merge(config, env, "")

    if overrides:
        config = _merge(config, overrides, "")

    return validate_config(config)
