"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < project config < env vars

The settings file (settings.json) is loaded separately by load_settings();
it is owned by the dashboard and is only ever read here.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .models import Settings, StoryloopConfig

logger = logging.getLogger(__name__)

TRUTHY = {"1", "true", "yes", "on"}

# Global cache to avoid reloading config multiple times per session
_config_cache: StoryloopConfig | None = None


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_state_dir() -> Path:
    """
    Global state directory for storyloop.

    Holds config.json, settings.json, learning.jsonl and quotas.json.
    STORYLOOP_HOME overrides the XDG location.
    """
    if home := os.environ.get("STORYLOOP_HOME"):
        return Path(home)
    return get_xdg_config_home() / "storyloop"


def get_user_config_path() -> Path:
    """Path to ~/.config/storyloop/config.json (or STORYLOOP_HOME equivalent)."""
    return get_state_dir() / "config.json"


def get_settings_path() -> Path:
    return get_state_dir() / "settings.json"


def get_project_config_path(cwd: Path | None = None) -> Path:
    """
    Get path to project configuration file.

    Args:
        cwd: Project directory (defaults to current directory)

    Returns:
        Path to .storyloop.json in the project root
    """
    if cwd is None:
        cwd = Path.cwd()
    return cwd / ".storyloop.json"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`. Nested
    dicts are merged, not replaced.

    Example:
        >>> deep_merge({"a": 1, "b": {"x": 10}}, {"b": {"y": 20}})
        {'a': 1, 'b': {'x': 10, 'y': 20}}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON file, returning None if it doesn't exist or is invalid.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON as dict, or None if file doesn't exist or can't be parsed
    """
    if not path.exists():
        return None

    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            return None
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to parse config at %s: %s", path, e)
        return None


def _set_section(result: dict[str, Any], section: str, key: str, value: Any) -> None:
    result.setdefault(section, {})
    result[section][key] = value


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Supported env vars:
        STORYLOOP_MODE - overrides routing.mode
        STORYLOOP_HEALTH_TIMEOUT - overrides cli.health_timeout_seconds
        STORYLOOP_VERIFY_TIMEOUT - overrides verify.timeout_seconds
        STORYLOOP_VERIFY_PARALLEL - overrides verify.max_parallel
        STORYLOOP_ATTEMPT_TIMEOUT - overrides process.attempt_timeout_minutes
        LM_STUDIO_URL - overrides quota.lm_studio_url
        STORYLOOP_IGNORE_API_STATUS - overrides quota.ignore_api_status

    Invalid numeric values are logged and ignored.
    """
    result = config_dict.copy()

    if mode := os.environ.get("STORYLOOP_MODE"):
        _set_section(result, "routing", "mode", mode)

    numeric = [
        ("STORYLOOP_HEALTH_TIMEOUT", "cli", "health_timeout_seconds", float),
        ("STORYLOOP_VERIFY_TIMEOUT", "verify", "timeout_seconds", float),
        ("STORYLOOP_VERIFY_PARALLEL", "verify", "max_parallel", int),
        ("STORYLOOP_ATTEMPT_TIMEOUT", "process", "attempt_timeout_minutes", int),
    ]
    for env_name, section, key, cast in numeric:
        raw = os.environ.get(env_name)
        if not raw:
            continue
        try:
            _set_section(result, section, key, cast(raw))
        except ValueError:
            logger.warning("Invalid %s value '%s', ignoring", env_name, raw)

    if lm_url := os.environ.get("LM_STUDIO_URL"):
        _set_section(result, "quota", "lm_studio_url", lm_url)

    raw_ignore = os.environ.get("STORYLOOP_IGNORE_API_STATUS")
    if raw_ignore:
        _set_section(
            result, "quota", "ignore_api_status", raw_ignore.strip().lower() in TRUTHY
        )

    return result


def load_config(project_dir: Path | None = None, use_cache: bool = True) -> StoryloopConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (STORYLOOP_*)
        2. Project config (.storyloop.json)
        3. User config (~/.config/storyloop/config.json)
        4. Built-in defaults

    Args:
        project_dir: Project directory to load .storyloop.json from (defaults to cwd)
        use_cache: If True, return cached config from previous load

    Raises:
        ValidationError: If the merged config fails Pydantic validation
    """
    global _config_cache

    if use_cache and _config_cache is not None:
        return _config_cache

    merged: dict[str, Any] = {}

    if user_config := load_json_file(get_user_config_path()):
        merged = deep_merge(merged, user_config)

    if project_config := load_json_file(get_project_config_path(project_dir)):
        merged = deep_merge(merged, project_config)

    merged = apply_env_overrides(merged)

    config = StoryloopConfig(**merged)
    _config_cache = config
    return config


def clear_cache() -> None:
    """
    Clear the cached configuration.

    Useful for testing or when config files change during execution.
    """
    global _config_cache
    _config_cache = None


def load_settings(path: Path | None = None) -> Settings:
    """
    Load the process-wide settings file.

    A missing or invalid settings file yields default Settings; the file is
    never rewritten from here.
    """
    if path is None:
        path = get_settings_path()
    data = load_json_file(path)
    if data is None:
        return Settings()
    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        logger.warning("Ignoring invalid settings at %s: %s", path, e)
        return Settings()
