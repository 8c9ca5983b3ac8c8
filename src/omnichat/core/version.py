"""
Version helpers for OmniChat.

Provides a single function get_version() that returns the installed package version.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Final

DEFAULT_VERSION: Final[str] = "0.0.0+local"


def get_version() -> str:
    """
    Resolve the package version.

    Falls back to "0.0.0+local" when running from a source tree that was
    never installed.
    """
    try:
        return pkg_version("omnichat")
    except PackageNotFoundError:
        return DEFAULT_VERSION


__all__ = ["get_version", "DEFAULT_VERSION"]
