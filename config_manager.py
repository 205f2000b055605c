"""
Configuration management module for the finance tracker.

Loads config.yaml, merges it over built-in defaults and exposes typed
accessors for the encryption and preference sections.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from exceptions import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE = 'config.yaml'

# Default configuration values
DEFAULT_CONFIG: Dict[str, Any] = {
    'database': {
        'data_dir': 'data',
        'path': 'finance.db',
    },
    'logging': {
        'level': 'INFO',
        'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    },
    'encryption': {
        'key_cache_size': 256,
        'key_cache_ttl_seconds': 900,
        'balance_retry_limit': 3,
    },
    'preferences': {
        'defaults': {'currency': 'INR'},
    },
}


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge overrides into a copy of defaults."""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to config.yaml (defaults to ./config.yaml)

    Returns:
        Configuration dictionary with defaults for missing values

    Raises:
        ConfigError: If the file exists but is not valid YAML
    """
    config_path = Path(config_path or CONFIG_FILE)
    if not config_path.exists():
        logger.info("Config file %s not found; using defaults", config_path)
        return copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            loaded = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(
            "Config file is not valid YAML",
            details={"config_path": str(config_path)},
            original_error=e,
        ) from e

    if not isinstance(loaded, dict):
        raise ConfigError(
            "Config file must contain a mapping",
            details={"config_path": str(config_path)},
        )

    logger.info("Configuration loaded from %s", config_path)
    return _merge(DEFAULT_CONFIG, loaded)


def save_config(config: Dict[str, Any], config_path: Optional[Path] = None) -> None:
    """
    Save configuration to a YAML file, preserving keys not present in config.

    Args:
        config: Configuration dictionary to save
        config_path: Destination path (defaults to ./config.yaml)
    """
    config_path = Path(config_path or CONFIG_FILE)

    existing_config: Dict[str, Any] = {}
    if config_path.exists():
        with open(config_path, 'r', encoding='utf-8') as f:
            existing_config = yaml.safe_load(f) or {}

    existing_config = _merge(existing_config, config)

    with open(config_path, 'w', encoding='utf-8') as f:
        yaml.safe_dump(existing_config, f, default_flow_style=False, sort_keys=True)

    logger.info("Configuration saved to %s", config_path)


def get_encryption_settings(config: Dict[str, Any]) -> Dict[str, Any]:
    """Return the encryption section with defaults filled in."""
    return _merge(DEFAULT_CONFIG['encryption'], config.get('encryption') or {})


def get_default_preferences(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return the fallback preferences used when stored ones cannot be read."""
    section = (config or {}).get('preferences') or {}
    defaults = section.get('defaults') or DEFAULT_CONFIG['preferences']['defaults']
    return dict(defaults)
