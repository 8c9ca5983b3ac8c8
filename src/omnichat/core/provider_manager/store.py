"""
JSON persistence for provider configurations.

Only configuration lives here; secrets stay in the credential store.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from loguru import logger

from ..config import ensure_config_dir
from .types import ProviderConfiguration

STORE_VERSION = 1


class ProviderStore:
    """Loads and saves the ordered provider list as ``providers.json``."""

    def __init__(self, path: Optional[Path] = None):
        self._path = path

    @property
    def path(self) -> Path:
        if self._path is None:
            self._path = ensure_config_dir() / "providers.json"
        return self._path

    def load(self) -> List[ProviderConfiguration]:
        """
        Read the stored providers.

        A missing or unreadable file gives an empty list; entries that fail
        to parse are skipped with a warning.
        """
        path = self.path
        if not path.exists():
            return []
        try:
            with path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read provider store {path}: {e}")
            return []

        entries = raw.get("providers", []) if isinstance(raw, dict) else raw
        providers: List[ProviderConfiguration] = []
        for index, entry in enumerate(entries if isinstance(entries, list) else []):
            try:
                providers.append(ProviderConfiguration.from_dict(entry))
            except (TypeError, ValueError, KeyError) as e:
                logger.warning(f"Skipping invalid provider entry #{index} in {path}: {e}")
        logger.debug(f"Loaded {len(providers)} providers from {path}")
        return providers

    def save(self, providers: List[ProviderConfiguration]) -> None:
        """Write the list atomically (temp file, then replace)."""
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {"version": STORE_VERSION, "providers": [p.to_dict() for p in providers]}

        fd, tmp_name = tempfile.mkstemp(prefix=".providers-", suffix=".json", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        logger.debug(f"Saved {len(providers)} providers to {path}")


__all__ = ["ProviderStore", "STORE_VERSION"]
