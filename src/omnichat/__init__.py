"""
OmniChat provider core.

This package contains the backend adapters, the provider registry and the
accounting services (cost, quota usage, key rotation) used by OmniChat.
"""

from .core.version import get_version

__version__ = get_version()

__all__ = ["__version__", "get_version"]
