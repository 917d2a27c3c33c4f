"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
Every threshold the engine uses (strategy order, confidences, scoring
weights, fallbacks) comes through here.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def get_source_config(source: str) -> Dict[str, Any]:
    """
    Returns the config block for one external source.

    Raises:
        KeyError: If the source is not configured.
    """
    sources = load_config()["sources"]
    if source not in sources:
        raise KeyError(
            f"No source config for '{source}'. "
            f"Available: {list(sources.keys())}"
        )
    return sources[source]


def get_all_sources() -> list[str]:
    """Returns all configured source names."""
    return list(load_config()["sources"].keys())


def get_matching_config() -> Dict[str, Any]:
    """Returns the matching block."""
    return load_config()["matching"]


def get_confidence_config() -> Dict[str, Any]:
    """Returns the per-entity confidence block."""
    return load_config()["confidence"]


def get_scoring_config() -> Dict[str, Any]:
    """Returns the opportunity scoring block."""
    return load_config()["scoring"]


def get_drift_monitoring_config() -> Dict[str, Any]:
    """Returns drift monitoring config."""
    return load_config()["drift_monitoring"]


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
