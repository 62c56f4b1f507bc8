"""Configuration loading utilities."""

import json
import os
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from errand.config.schema import Config
from errand.utils.helpers import atomic_write_text, get_data_path

# Environment variables that override the matching config value
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "ERRAND_OPENROUTER_API_KEY": ("providers", "openrouter", "api_key"),
    "ERRAND_ANTHROPIC_API_KEY": ("providers", "anthropic", "api_key"),
    "ERRAND_OPENAI_API_KEY": ("providers", "openai", "api_key"),
    "ERRAND_DEEPSEEK_API_KEY": ("providers", "deepseek", "api_key"),
    "ERRAND_GEMINI_API_KEY": ("providers", "gemini", "api_key"),
    "ERRAND_VLLM_API_BASE": ("providers", "vllm", "api_base"),
    "ERRAND_BRAVE_API_KEY": ("tools", "web", "search", "api_key"),
    "ERRAND_MODEL": ("agents", "defaults", "model"),
    "ERRAND_WORKSPACE": ("agents", "defaults", "workspace"),
    "ERRAND_LOG_LEVEL": ("logging", "level"),
}


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return get_data_path() / "config.json"


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    A missing or invalid file falls back to defaults. ``ERRAND_*``
    environment variables are applied on top.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = Path(config_path) if config_path else get_config_path()

    data: dict[str, Any] = {}
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top-level JSON value must be an object")
        except (OSError, ValueError) as e:
            logger.warning("Failed to load config from {}: {}", path, e)
            logger.warning("Using default configuration.")
            data = {}

    _apply_env_overrides(data)

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        logger.warning("Invalid config in {}: {}", path, e)
        logger.warning("Using default configuration.")
        fallback: dict[str, Any] = {}
        _apply_env_overrides(fallback)
        return Config.model_validate(fallback)


def save_config(config: Config, config_path: Path | None = None) -> None:
    """
    Save configuration to file (camelCase keys).

    Args:
        config: Configuration to save.
        config_path: Optional path to save to. Uses default if not provided.
    """
    path = Path(config_path) if config_path else get_config_path()
    data = config.model_dump(by_alias=True)
    atomic_write_text(path, json.dumps(data, indent=2))


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Set values from ERRAND_* environment variables (snake_case keys)."""
    for var, keys in ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if not value:
            continue
        node = data
        for key in keys[:-1]:
            camel = _camel(key)
            if camel in node and key not in node:
                key = camel
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        leaf = keys[-1]
        node.pop(_camel(leaf), None)
        node[leaf] = value


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.capitalize() for part in rest)
