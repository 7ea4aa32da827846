"""YAML configuration loader with environment variable overrides.

Configuration is layered (later layers win):

  1. Built-in defaults in the services that consume each section
  2. ``config/config.yaml`` -- tier table, analyzer thresholds
  3. ``.env`` / environment variables via :class:`Settings`

``_deep_merge`` merges dictionaries recursively, so the environment layer
adds the ``limits`` section without touching the YAML tier table::

    base      = {"ingestion": {"tiers": [...]}}
    overrides = {"ingestion": {"limits": {"hard_token_limit": 8000}}}
    result    = {"ingestion": {"tiers": [...], "limits": {...}}}
"""

from pathlib import Path
from typing import Any

import yaml

from docpipe.config.settings import Settings
from docpipe.utils.errors import ConfigurationError

_DEFAULT_CONFIG_PATH = "config/config.yaml"


def load_config(
    path: str = _DEFAULT_CONFIG_PATH,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Load YAML config and merge with environment-based Settings.

    Args:
        path: Path to the YAML configuration file.  A missing file yields
            an empty base layer.
        settings: Pre-built settings; a fresh :class:`Settings` is read
            from the environment when omitted.

    Returns:
        Fully resolved configuration dictionary.

    Raises:
        ConfigurationError: If the YAML file exists but cannot be parsed or
            does not hold a mapping at the top level.
    """
    config_path = Path(path)
    yaml_config: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse {config_path}: {exc}") from exc
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(f"{config_path} must contain a mapping at the top level")
        yaml_config = loaded or {}

    settings = settings or Settings()
    env_overrides = {
        "app": {
            "host": settings.app_host,
            "port": settings.app_port,
            "env": settings.app_env,
        },
        "embedding": {
            "model": settings.openai_embedding_model or "text-embedding-3-small",
            "base_url": settings.openai_base_url,
            "configured": bool(settings.openai_api_key),
        },
        "ingestion": {
            "limits": {
                "max_file_size_bytes": settings.max_file_size_bytes,
                "max_text_length": settings.max_text_length,
                "max_chunks_per_document": settings.max_chunks_per_document,
                "hard_token_limit": settings.hard_token_limit,
            },
        },
        "analyzer": {
            "sample_chars": settings.analyzer_sample_chars,
        },
        "logging": {
            "level": settings.log_level,
        },
    }

    _deep_merge(yaml_config, env_overrides)
    return yaml_config


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge overrides into base dict, mutating base in place."""
    for key, value in overrides.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
