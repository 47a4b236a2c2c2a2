"""
Resource Scheduler: Environment Config Loader

Layered configuration loading:
  1. Base YAML file (pools, scheduler tunables, workflow definitions)
  2. Per-environment overlay files (config/{RS_ENV}.yaml merged over base)
  3. Environment variable overrides (RS_ prefixed)

Usage:
    from runtime.config import load_config, get_config_value

    cfg = load_config(base_path="config/scheduler.yaml", env="prod")
    ceiling = get_config_value("scheduler.max_concurrent", cfg, default=8)

Environment variables:
    RS_ENV         active profile (dev, staging, prod)
    RS_CONFIG_DIR  directory for overlay files (default: config/)
    RS_*           nested overrides, ``__`` separates levels
                   (e.g. RS_SCHEDULER__MAX_CONCURRENT=4)
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from scheduling.errors import ConfigError

logger = logging.getLogger("resource_scheduler.config")

ENV_PREFIX = "RS_"

# Meta settings read directly by other modules, never merged into the config
_META_VARS = {"RS_ENV", "RS_CONFIG_DIR", "RS_EXECUTOR", "RS_VERSION", "RS_LOG_LEVEL"}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: Any):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    d[keys[-1]] = value


def _parse_scalar(value: str) -> Any:
    # YAML parsing turns "4" into 4, "true" into True, "[a, b]" into a list
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


# ═══════════════════════════════════════════════════════════════════
# Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for config/{env}.yaml or {config_dir}/{env}.yaml.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("RS_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("RS_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            overlay = _read_yaml(path)
            logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
            return overlay

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Load RS_ prefixed environment variables as config overrides.

    Naming convention:
      RS_SECTION__KEY=value → {"section": {"key": value}}
      RS_KEY=value          → {"key": value}

    Values are YAML-parsed (numbers, booleans, lists). Meta variables
    (RS_ENV, RS_CONFIG_DIR, RS_EXECUTOR, RS_VERSION, RS_LOG_LEVEL) are
    excluded.
    """
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in _META_VARS:
            continue
        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if not path:
            continue
        _set_nested(overrides, path, _parse_scalar(value))

    if overrides:
        logger.debug("Loaded %d env var override section(s)", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "config/scheduler.yaml",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load configuration with layered merging.

    Priority (highest wins):
      1. Environment variable overrides (RS_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file

    Args:
        base_path: Path to base YAML config
        env: Environment name (overrides RS_ENV)
        config_dir: Overlay directory (overrides RS_CONFIG_DIR)
        include_env_vars: Whether to check RS_* env vars

    Returns:
        Merged configuration dict
    """
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        config = _read_yaml(Path(base_path))
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    # Stamp active profile into config for observability
    config["_active_env"] = env or os.environ.get("RS_ENV", "default")
    config["_config_source"] = base_path

    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """
    Get a nested config value by dotted path.

    Example:
        get_config_value("scheduler.tick_interval_seconds", cfg, 2.0)
    """
    if config is None:
        config = load_config()

    current = config
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return default
    return current
