"""
Configuration management and loading.

Loads refresh, storage, pricing, activity and provider settings from YAML.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict

import yaml

from tokentop.core.activity import ActivityConfig
from tokentop.storage.db import DEFAULT_DB_PATH

DEFAULT_CONFIG_PATH = "~/.config/tokentop/config.yaml"


@dataclass(frozen=True)
class RefreshConfig:
    """Refresh loop timing, in milliseconds."""
    interval_ms: int = 60_000
    active_threshold_ms: int = 120_000
    snapshot_interval_ms: int = 60_000
    tick_interval_ms: int = 1_000

    def __post_init__(self):
        for name in ("interval_ms", "active_threshold_ms", "snapshot_interval_ms", "tick_interval_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"refresh.{name} must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = DEFAULT_DB_PATH
    bucket_minutes: float = 5

    def __post_init__(self):
        if not self.db_path:
            raise ValueError("storage.db_path cannot be empty")
        if self.bucket_minutes <= 0:
            raise ValueError("storage.bucket_minutes must be > 0")


@dataclass(frozen=True)
class PricingConfig:
    live: bool = True
    ttl_seconds: float = 3600
    timeout_seconds: float = 10

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("pricing.ttl_seconds must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("pricing.timeout_seconds must be > 0")


@dataclass(frozen=True)
class ProviderConfig:
    """Polling settings for one provider."""
    enabled: bool = True
    timeout_seconds: float = 15
    max_retries: int = 2

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    activity: ActivityConfig = field(default_factory=ActivityConfig)
    providers: Dict[str, ProviderConfig] = field(default_factory=dict)

    def get_provider_config(self, provider_id: str) -> ProviderConfig:
        """Settings for a provider, using defaults if not configured."""
        return self.providers.get(provider_id, ProviderConfig())


def load_app_config(path: str = DEFAULT_CONFIG_PATH, missing_ok: bool = False) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Unknown keys are rejected so a typo never silently falls back to a
    default.

    Args:
        path: Path to YAML configuration file
        missing_ok: Return defaults instead of raising when the file is absent

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist and missing_ok is False
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path).expanduser()
    if not config_path.exists():
        if missing_ok:
            return AppConfig()
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return AppConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    return parse_app_config(raw_config)


def parse_app_config(raw_config: Dict[str, Any]) -> AppConfig:
    """Validate an already-parsed configuration mapping."""
    allowed_top_keys = {'refresh', 'storage', 'pricing', 'activity', 'providers'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    providers_data = raw_config.get('providers') or {}
    if not isinstance(providers_data, dict):
        raise ValueError("'providers' must be a dictionary")

    providers = {}
    for provider_id, provider_data in providers_data.items():
        providers[provider_id] = _parse_section(
            ProviderConfig, provider_data or {}, f"providers.{provider_id}"
        )

    return AppConfig(
        refresh=_parse_section(RefreshConfig, raw_config.get('refresh') or {}, 'refresh'),
        storage=_parse_section(StorageConfig, raw_config.get('storage') or {}, 'storage'),
        pricing=_parse_section(PricingConfig, raw_config.get('pricing') or {}, 'pricing'),
        activity=_parse_section(ActivityConfig, raw_config.get('activity') or {}, 'activity'),
        providers=providers,
    )


def _parse_section(cls: Any, data: Any, path: str) -> Any:
    """Build a config dataclass from a mapping, checking keys and types.

    Args:
        cls: Dataclass to build
        data: Raw section data
        path: Path for error messages

    Returns:
        Validated dataclass instance

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    types = {f.name: f.type for f in fields(cls)}
    unknown_keys = set(data.keys()) - set(types)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        values[key] = _coerce(value, types[key], f"{path}.{key}")

    try:
        return cls(**values)
    except ValueError as e:
        raise ValueError(f"Invalid {path}: {e}")


def _coerce(value: Any, expected: Any, path: str) -> Any:
    if expected in (bool, 'bool'):
        if not isinstance(value, bool):
            raise ValueError(f"'{path}' must be a boolean")
        return value
    if expected in (int, 'int'):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"'{path}' must be an integer")
        return value
    if expected in (float, 'float'):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{path}' must be a number")
        return float(value)
    if expected in (str, 'str'):
        if not isinstance(value, str):
            raise ValueError(f"'{path}' must be a string")
        return value
    return value