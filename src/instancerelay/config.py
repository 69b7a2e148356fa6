"""Configuration utilities for environment variable overrides.

Supports loading config from YAML and overriding with environment variables.
"""

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml

DEFAULT_CONFIG: Dict[str, Any] = {
    "host": "0.0.0.0",
    "port": 3000,
    "min_value": 3000000,
    "max_entries": 100,
    "ttl_seconds": 3600,
    "sweep_interval_seconds": 300,
    "default_limit": 50,
    "max_limit": 100,
    "cors_origins": ["*"],
    "log_dir": None,
    "log_level": "INFO",
}

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "configs" / "default.yaml"

Number = Union[int, float]


def get_env_number(key: str, default: Optional[Number], cast: Callable[[str], Number] = int) -> Optional[Number]:
    """Read a numeric setting; unset or unparsable values keep the default.

    Args:
        key: Environment variable name
        default: Value used when the variable is missing or malformed
        cast: int or float
    """
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        return default


def get_env_list(key: str, default: List[str]) -> List[str]:
    """Get comma-separated list from environment variable."""
    value = os.getenv(key)
    if value is None:
        return default
    items = [v.strip() for v in value.split(",") if v.strip()]
    return items or default


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides to config.

    Supported environment variables:
    - HOST: Bind address
    - PORT: Listening port
    - RELAY_MIN_VALUE: Admission threshold for item value
    - RELAY_MAX_ENTRIES: Maximum cached instances
    - RELAY_TTL_SECONDS: Instance time-to-live
    - RELAY_SWEEP_INTERVAL_SECONDS: Expiry sweep period
    - RELAY_DEFAULT_LIMIT: Default page size for /api/instances
    - RELAY_MAX_LIMIT: Upper bound for the limit query parameter
    - CORS_ORIGINS: Comma-separated allowed origins
    - LOG_DIR: JSONL event log directory
    - LOG_LEVEL: Python logging level name

    Args:
        config: Base configuration dict

    Returns:
        Configuration with env var overrides applied
    """
    # Create a copy to avoid mutating original
    config = config.copy()

    # Network
    if os.getenv("HOST"):
        config["host"] = os.getenv("HOST")

    config["port"] = get_env_number("PORT", config.get("port", 3000))

    # Cache settings
    config["min_value"] = get_env_number("RELAY_MIN_VALUE", config.get("min_value", 3000000), float)

    config["max_entries"] = get_env_number("RELAY_MAX_ENTRIES", config.get("max_entries", 100))

    config["ttl_seconds"] = get_env_number("RELAY_TTL_SECONDS", config.get("ttl_seconds", 3600), float)

    config["sweep_interval_seconds"] = get_env_number(
        "RELAY_SWEEP_INTERVAL_SECONDS", config.get("sweep_interval_seconds", 300), float
    )

    # Query settings
    config["default_limit"] = get_env_number("RELAY_DEFAULT_LIMIT", config.get("default_limit", 50))

    config["max_limit"] = get_env_number("RELAY_MAX_LIMIT", config.get("max_limit", 100))

    config["cors_origins"] = get_env_list("CORS_ORIGINS", config.get("cors_origins", ["*"]))

    # Observability
    if os.getenv("LOG_DIR"):
        config["log_dir"] = os.getenv("LOG_DIR")

    if os.getenv("LOG_LEVEL"):
        config["log_level"] = os.getenv("LOG_LEVEL").upper()

    return config


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load YAML config (if present) on top of defaults, then env overrides.

    入力：YAML パス（省略時は configs/default.yaml）
    出力：設定 dict
    副作用：なし
    失敗モード：YAML 不正時は ValueError
    """
    config = dict(DEFAULT_CONFIG)
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        with open(config_path) as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Expected mapping at top level in {config_path}")
        config.update(data)
    return apply_env_overrides(config)
