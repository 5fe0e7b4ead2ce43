"""
Configuration management and loading.

Handles application settings from a YAML file and environment variables.
"""

import os
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from usage_meter.core.aggregator import ReferenceDateStrategy
from usage_meter.core.clock import local_timezone
from usage_meter.core.limits import SpendingLimits

CONFIG_ENV_VAR = "USAGE_METER_CONFIG"
DEFAULT_DATA_DIR = "~/.claude"
DEFAULT_SNAPSHOT_PATH = "~/.cache/usage-meter/snapshot.db"

WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}


@dataclass(frozen=True)
class DataConfig:
    """Where usage logs live and how much history the hourly view covers."""
    data_dir: str = DEFAULT_DATA_DIR
    hours_limit: int = 24

    def __post_init__(self):
        """Validate data settings."""
        if not self.data_dir:
            raise ValueError("data_dir cannot be empty")
        if self.hours_limit <= 0:
            raise ValueError("hours_limit must be > 0")

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()


@dataclass(frozen=True)
class IngestionConfig:
    """Batching, debouncing and read policies for log ingestion."""
    debounce_ms: int = 500
    batch_size: int = 10
    read_timeout_s: float = 5.0
    read_retries: int = 1
    poll_interval_s: float = 1.0
    stability_threshold_s: float = 2.0

    def __post_init__(self):
        """Validate ingestion values."""
        if self.debounce_ms < 0:
            raise ValueError("debounce_ms cannot be negative")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if self.read_timeout_s <= 0:
            raise ValueError("read_timeout_s must be > 0")
        if self.read_retries < 0:
            raise ValueError("read_retries cannot be negative")
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be > 0")
        if self.stability_threshold_s < 0:
            raise ValueError("stability_threshold_s cannot be negative")


@dataclass(frozen=True)
class DisplayConfig:
    """Calendar policies used when building summaries."""
    reference_date_strategy: ReferenceDateStrategy = ReferenceDateStrategy.MOST_RECENT_DATA_DATE
    week_start: int = WEEKDAYS["sunday"]
    timezone: Optional[str] = None

    def __post_init__(self):
        """Validate display values."""
        if not 0 <= self.week_start <= 6:
            raise ValueError("week_start must be a weekday number between 0 and 6")
        if self.timezone is not None:
            try:
                ZoneInfo(self.timezone)
            except (ZoneInfoNotFoundError, ValueError):
                raise ValueError(f"Unknown timezone: {self.timezone}")

    @property
    def tz(self) -> tzinfo:
        """Configured time zone, or the system's local zone."""
        if self.timezone is None:
            return local_timezone()
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class SnapshotConfig:
    """Persisted summary snapshot settings."""
    path: Optional[str] = DEFAULT_SNAPSHOT_PATH
    ttl_hours: float = 24.0

    def __post_init__(self):
        """Validate snapshot values."""
        if self.ttl_hours <= 0:
            raise ValueError("ttl_hours must be > 0")


@dataclass(frozen=True)
class MonitorConfig:
    """Complete application configuration."""
    data: DataConfig = field(default_factory=DataConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    limits: SpendingLimits = field(default_factory=SpendingLimits)


_SECTIONS = {
    "data": {"data_dir", "hours_limit"},
    "ingestion": {
        "debounce_ms", "batch_size", "read_timeout_s",
        "read_retries", "poll_interval_s", "stability_threshold_s",
    },
    "display": {"reference_date_strategy", "week_start", "timezone"},
    "snapshot": {"path", "ttl_hours"},
    "limits": {"daily", "weekly", "monthly", "warn_ratio"},
}


def default_config_path() -> Optional[str]:
    """Config path named by the USAGE_METER_CONFIG environment variable."""
    return os.environ.get(CONFIG_ENV_VAR) or None


def load_config(path: Optional[str] = None) -> MonitorConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown
    sections and keys are rejected rather than ignored.

    Args:
        path: Path to YAML configuration file; None returns the defaults

    Returns:
        Validated MonitorConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return MonitorConfig()

    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return MonitorConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTIONS}

    return MonitorConfig(
        data=_parse_data(sections["data"]),
        ingestion=_parse_ingestion(sections["ingestion"]),
        display=_parse_display(sections["display"]),
        snapshot=_parse_snapshot(sections["snapshot"]),
        limits=_parse_limits(sections["limits"]),
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Fetch one section and reject unknown keys inside it."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTIONS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _number(data: Dict[str, Any], key: str, path: str, integer: bool = False):
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    if integer:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"'{key}' in {path} must be an integer")
        return int(value)
    return float(value)


def _parse_data(data: Dict[str, Any]) -> DataConfig:
    kwargs = {}
    if "data_dir" in data:
        if not isinstance(data["data_dir"], str):
            raise ValueError("'data_dir' in data must be a string")
        kwargs["data_dir"] = data["data_dir"]
    if "hours_limit" in data:
        kwargs["hours_limit"] = _number(data, "hours_limit", "data", integer=True)
    return DataConfig(**kwargs)


def _parse_ingestion(data: Dict[str, Any]) -> IngestionConfig:
    integers = {"debounce_ms", "batch_size", "read_retries"}
    kwargs = {
        key: _number(data, key, "ingestion", integer=key in integers)
        for key in data
    }
    return IngestionConfig(**kwargs)


def _parse_display(data: Dict[str, Any]) -> DisplayConfig:
    kwargs = {}

    if "reference_date_strategy" in data:
        strategy = data["reference_date_strategy"]
        if not isinstance(strategy, str):
            raise ValueError("'reference_date_strategy' in display must be a string")
        try:
            kwargs["reference_date_strategy"] = ReferenceDateStrategy(strategy.lower())
        except ValueError:
            valid = [s.value for s in ReferenceDateStrategy]
            raise ValueError(f"'reference_date_strategy' in display must be one of: {valid}")

    if "week_start" in data:
        week_start = data["week_start"]
        if not isinstance(week_start, str) or week_start.lower() not in WEEKDAYS:
            raise ValueError(f"'week_start' in display must be one of: {list(WEEKDAYS)}")
        kwargs["week_start"] = WEEKDAYS[week_start.lower()]

    if "timezone" in data and data["timezone"] is not None:
        if not isinstance(data["timezone"], str):
            raise ValueError("'timezone' in display must be a string")
        kwargs["timezone"] = data["timezone"]

    return DisplayConfig(**kwargs)


def _parse_snapshot(data: Dict[str, Any]) -> SnapshotConfig:
    kwargs = {}
    if "path" in data:
        # null disables the snapshot store
        if data["path"] is not None and not isinstance(data["path"], str):
            raise ValueError("'path' in snapshot must be a string or null")
        kwargs["path"] = data["path"]
    if "ttl_hours" in data:
        kwargs["ttl_hours"] = _number(data, "ttl_hours", "snapshot")
    return SnapshotConfig(**kwargs)


def _parse_limits(data: Dict[str, Any]) -> SpendingLimits:
    kwargs = {}
    for key in ("daily", "weekly", "monthly"):
        if data.get(key) is not None:
            kwargs[key] = _number(data, key, "limits")
    if "warn_ratio" in data:
        kwargs["warn_ratio"] = _number(data, "warn_ratio", "limits")
    return SpendingLimits(**kwargs)
