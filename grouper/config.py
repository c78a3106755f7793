"""Grouping service configuration.

Loads from config.yaml if present, with environment variable overrides.
Environment variables use the pattern: GROUPER_<SECTION>_<KEY> (uppercase).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


def _default_status_pairs() -> list[list[str]]:
    return [["open", "in_progress"], ["resolved", "closed"], ["duplicate", "merged"]]


@dataclass
class GroupingConfig:
    text_similarity_threshold: float = 0.7
    proximity_radius_meters: float = 100.0
    category_match_weight: float = 0.3
    text_similarity_weight: float = 0.4
    proximity_weight: float = 0.3
    min_confidence_threshold: float = 0.6
    max_group_size: int = 10
    temporal_window_days: float = 30.0
    enable_auto_grouping: bool = True
    require_human_review: bool = False
    # Recommendation cut-offs.
    auto_group_score: float = 0.85
    auto_group_confidence: float = 0.8
    review_confidence: float = 0.6
    # Statuses in the same pair count as consistent (equal statuses always do).
    compatible_statuses: list[list[str]] = field(default_factory=_default_status_pairs)
    # Priorities at most this many steps apart count as aligned.
    max_priority_gap: int = 1


@dataclass
class BatchConfig:
    enable_auto_detection: bool = True
    enable_async_processing: bool = True
    batch_processing_delay_ms: int = 5000
    max_batch_size: int = 10
    # "empty": analyze against no candidates; "propagate": fail and re-queue the batch.
    fetch_failure_policy: str = "empty"


@dataclass
class RetryConfig:
    max_retries: int = 3
    retry_delay_ms: int = 1000
    enable_retry: bool = True
    enable_fallback: bool = True
    max_log_entries: int = 1000


@dataclass
class GeoConfig:
    high_accuracy_below_m: float = 10.0
    medium_accuracy_below_m: float = 100.0


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    env: str = "dev"  # "dev" or "prod"


@dataclass
class LoggingConfig:
    level: str = "info"
    format: str = "console"  # "console" or "json"


@dataclass
class AppConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    grouping: GroupingConfig = field(default_factory=GroupingConfig)
    batching: BatchConfig = field(default_factory=BatchConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    geo: GeoConfig = field(default_factory=GeoConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS = ("server", "grouping", "batching", "retry", "geo", "logging")


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _coerce(current: object, raw: str) -> object:
    """Convert an environment string to the type of the current value."""
    if isinstance(current, bool):
        return _parse_bool(raw)
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, list):
        # "open:in_progress,resolved:closed"
        return [pair.split(":") for pair in raw.split(",") if pair]
    return raw


def _apply_env_overrides(config: AppConfig) -> None:
    """Override config values from environment variables."""
    for section_name in _SECTIONS:
        section = getattr(config, section_name)
        for key in list(vars(section)):
            env_key = f"GROUPER_{section_name.upper()}_{key.upper()}"
            val = os.environ.get(env_key)
            if val is not None:
                setattr(section, key, _coerce(getattr(section, key), val))
    # Short alias kept for parity with other services.
    level = os.environ.get("GROUPER_LOG_LEVEL")
    if level is not None:
        config.logging.level = level


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load configuration from YAML file + environment overrides."""
    config = AppConfig()

    # Try to load YAML
    if config_path is None:
        config_path = Path(os.environ.get("GROUPER_CONFIG", "config.yaml"))
    else:
        config_path = Path(config_path)

    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

        for section_name in _SECTIONS:
            section = getattr(config, section_name)
            for k, v in (raw.get(section_name) or {}).items():
                if hasattr(section, k):
                    setattr(section, k, v)

    # Environment overrides always win
    _apply_env_overrides(config)
    return config
