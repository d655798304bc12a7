"""Configuration constants and loading for statlake.

Values come from (lowest to highest precedence) the dataclass defaults, an
optional YAML file, and ``STATLAKE_*`` environment variables.
"""
from __future__ import annotations
import os
import yaml
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Dict, List, Optional
from enum import Enum

from .exceptions import ConfigurationError


ENV_PREFIX = "STATLAKE_"


class EventKind(Enum):
    """Kinds of raw events recorded for a site."""
    PAGE_VIEW = "page_view"
    CUSTOM_EVENT = "custom_event"


class ImportStatus(Enum):
    """Lifecycle of an import job."""
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    DISPATCHING_CHUNKS = "dispatching_chunks"
    PROCESSING_CHUNKS = "processing_chunks"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def terminal_values(cls) -> list[str]:
        return [cls.COMPLETED.value, cls.FAILED.value]


@dataclass
class RetentionConfig:
    """Days to keep data at each level before cleanup."""
    page_views: int = 7
    events: int = 7
    hourly: int = 7
    daily: int = 365
    monthly: int = 1825  # 5 years


@dataclass
class CleanupConfig:
    enabled: bool = True
    rollups: bool = True
    batch_size: int = 1000


@dataclass
class CacheConfig:
    enabled: bool = True
    ttl_hourly: int = 300
    ttl_daily: int = 1800
    ttl_monthly: int = 3600


@dataclass
class AggregationConfig:
    top_k_hourly: int = 10
    top_k_daily: int = 20
    top_k_monthly: int = 50
    settle_hours: int = 24
    max_tracked_values: int = 10000
    site_batch_pause_seconds: float = 0.0


@dataclass
class ImportConfig:
    batch_size: int = 1000
    statements_per_chunk: int = 10
    stagger_seconds: float = 2.0
    delete_file_on_finish: bool = True
    analyze_line_limit: int = 0  # 0 scans the whole file


@dataclass
class JobConfig:
    tries: int = 3
    backoff: List[int] = field(default_factory=lambda: [60, 300, 600])
    chunk_timeout_seconds: int = 300
    import_timeout_seconds: int = 3600
    max_workers: int = 4


@dataclass
class AnalyticsConfig:
    database: str = "statlake.duckdb"
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    imports: ImportConfig = field(default_factory=ImportConfig)
    jobs: JobConfig = field(default_factory=JobConfig)

    def top_k(self, tier: str) -> int:
        return getattr(self.aggregation, f"top_k_{tier}")

    def cache_ttl(self, tier: str) -> int:
        return getattr(self.cache, f"ttl_{tier}", self.cache.ttl_daily)


def load_yaml_config(cfg_path: Path) -> Dict:
    with cfg_path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _coerce(value, current):
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
        raise ConfigurationError(f"Invalid boolean value: {value!r}")
    if isinstance(current, list):
        if isinstance(value, str):
            return [int(v) for v in value.split(",") if v.strip()]
        return [int(v) for v in value]
    try:
        return type(current)(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value {value!r}: {e}")


def _apply_mapping(target, data: Dict, path: str = "") -> None:
    for f in fields(target):
        if f.name not in data:
            continue
        current = getattr(target, f.name)
        value = data[f.name]
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ConfigurationError(f"Section '{path}{f.name}' must be a mapping")
            _apply_mapping(current, value, f"{path}{f.name}.")
        else:
            setattr(target, f.name, _coerce(value, current))


def _apply_env(target, environ: Dict[str, str], prefix: str = ENV_PREFIX) -> None:
    for f in fields(target):
        current = getattr(target, f.name)
        name = f"{prefix}{f.name.upper()}"
        if is_dataclass(current):
            _apply_env(current, environ, name + "_")
        elif name in environ:
            setattr(target, f.name, _coerce(environ[name], current))


def load_config(cfg_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> AnalyticsConfig:
    """Build the effective configuration.

    ``STATLAKE_RETENTION_PAGE_VIEWS=14`` overrides ``retention.page_views``;
    ``STATLAKE_CONFIG`` names the YAML file when ``cfg_path`` is not given.
    """
    environ = dict(os.environ if environ is None else environ)
    cfg = AnalyticsConfig()
    if cfg_path is None and environ.get(f"{ENV_PREFIX}CONFIG"):
        cfg_path = Path(environ[f"{ENV_PREFIX}CONFIG"])
    if cfg_path is not None:
        if not cfg_path.exists():
            raise ConfigurationError(f"Config file not found: {cfg_path}")
        _apply_mapping(cfg, load_yaml_config(cfg_path))
    _apply_env(cfg, environ)
    validate_config(cfg)
    return cfg


def validate_config(cfg: AnalyticsConfig) -> None:
    for f in fields(cfg.retention):
        if getattr(cfg.retention, f.name) < 0:
            raise ConfigurationError(f"Invalid retention value for {f.name}")
    for tier in ("hourly", "daily", "monthly"):
        if cfg.top_k(tier) <= 0:
            raise ConfigurationError(f"top_k_{tier} must be positive")
    if cfg.imports.batch_size <= 0 or cfg.imports.statements_per_chunk <= 0:
        raise ConfigurationError("Import batch size and chunk size must be positive")
    if cfg.jobs.tries < 1:
        raise ConfigurationError("jobs.tries must be at least 1")
