"""Configuration: env-backed :class:`Settings` plus the YAML loader."""

from docpipe.config.loader import load_config
from docpipe.config.settings import Settings

__all__ = ["Settings", "load_config"]
