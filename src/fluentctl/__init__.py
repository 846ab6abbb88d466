"""fluentctl package bootstrap.

This module exposes lightweight metadata that other modules (and packaging
machinery) rely upon. ``APPLICATION_VERSION`` is the Fluent Manager release
whose images this build of the tool deploys by default.
"""
from __future__ import annotations

__all__ = ["APPLICATION_VERSION", "__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "25.0.0.2"

APPLICATION_VERSION = "25.0.0.2"


def get_version() -> str:
    """Return the current package version."""
    return __version__
