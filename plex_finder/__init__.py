"""Core utilities for the Plex account finder."""

from __future__ import annotations

from typing import Any

from .config import ConfigurationError, FinderConfig, load_config, resolve_config_path
from .manager import PlexAccountManager


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the tool API application."""

    from .service import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "ConfigurationError",
    "FinderConfig",
    "PlexAccountManager",
    "create_app",
    "load_config",
    "resolve_config_path",
]
