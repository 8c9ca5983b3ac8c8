"""
Round-robin API key rotation.

Several keys can be stored for one provider. Each key carries a token
counter; the key with the lowest counter is used for the next adapter,
which spreads usage evenly across keys. The key list lives in the
credential store as a base64-encoded JSON array.
"""

import base64
import binascii
import json
import threading
from typing import Callable, Dict, List, Optional

from loguru import logger

from .credentials import CredentialStore, CredentialStoreError, SecretKeys
from .provider_manager.types import APIKeyEntry


class KeyRotator:
    """Selects and accounts keys; every read-modify-write holds a per-provider lock."""

    def __init__(self, credential_store: CredentialStore):
        self._store = credential_store
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._listeners: List[Callable[[str], None]] = []

    def _lock_for(self, provider_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(provider_id)
            if lock is None:
                lock = self._locks[provider_id] = threading.RLock()
            return lock

    def subscribe(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(provider_id)`` after keys are added, removed, replaced or re-validated."""
        self._listeners.append(listener)

    def _notify(self, provider_id: str) -> None:
        for listener in list(self._listeners):
            listener(provider_id)

    def load_keys(self, provider_id: str) -> List[APIKeyEntry]:
        """
        Load the stored key list.

        Raises:
            CredentialStoreError: If the stored list cannot be decoded.
        """
        raw = self._store.read(SecretKeys.api_keys(provider_id))
        if not raw:
            return []
        try:
            items = json.loads(base64.b64decode(raw.encode("ascii"), validate=True))
            return [APIKeyEntry.from_dict(item) for item in items]
        except (binascii.Error, UnicodeError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Stored key list for provider {provider_id} is corrupt: {e}")
            raise CredentialStoreError(f"Failed to decode stored keys for provider {provider_id}") from e

    def save_keys(self, provider_id: str, entries: List[APIKeyEntry]) -> None:
        """Replace the stored list; an empty list removes it."""
        with self._lock_for(provider_id):
            self._write_keys(provider_id, entries)
        self._notify(provider_id)

    def _write_keys(self, provider_id: str, entries: List[APIKeyEntry]) -> None:
        key = SecretKeys.api_keys(provider_id)
        if not entries:
            self._store.delete(key)
            return
        encoded = json.dumps([entry.to_dict() for entry in entries]).encode("utf-8")
        self._store.save(key, base64.b64encode(encoded).decode("ascii"))

    def add_key(self, provider_id: str, label: str, key: str) -> APIKeyEntry:
        with self._lock_for(provider_id):
            entries = self.load_keys(provider_id)
            entry = APIKeyEntry(label=label, key=key, is_active=not entries)
            entries.append(entry)
            self._write_keys(provider_id, entries)
        logger.info(f"Added key '{label}' for provider {provider_id} ({len(entries)} stored)")
        self._notify(provider_id)
        return entry

    def remove_key(self, provider_id: str, entry_id: str) -> bool:
        """Remove one key. Returns False when no entry has that id."""
        with self._lock_for(provider_id):
            entries = self.load_keys(provider_id)
            remaining = [entry for entry in entries if entry.id != entry_id]
            if len(remaining) == len(entries):
                return False
            self._write_keys(provider_id, remaining)
        logger.info(f"Removed key {entry_id} from provider {provider_id}")
        self._notify(provider_id)
        return True

    def has_multiple_keys(self, provider_id: str) -> bool:
        return len(self.load_keys(provider_id)) > 1

    def active_key(self, provider_id: str) -> Optional[APIKeyEntry]:
        for entry in self.load_keys(provider_id):
            if entry.is_active:
                return entry
        return None

    def select_key(self, provider_id: str) -> Optional[APIKeyEntry]:
        """
        Pick the key with the fewest tokens used and mark it active.

        Ties go to the key stored first. Keys known to be invalid are only
        chosen when no other key is left.

        Returns:
            The selected entry, or None when no keys are stored.
        """
        with self._lock_for(provider_id):
            entries = self.load_keys(provider_id)
            if not entries:
                return None
            candidates = [entry for entry in entries if entry.is_valid is not False] or entries
            selected = min(candidates, key=lambda entry: entry.token_count)
            for entry in entries:
                entry.is_active = entry.id == selected.id
            self._write_keys(provider_id, entries)
        logger.debug(f"Selected key '{selected.label}' for provider {provider_id} ({selected.token_count} tokens used)")
        return selected

    def record_usage(self, provider_id: str, entry_id: str, tokens: int) -> APIKeyEntry:
        """
        Add ``tokens`` to a key's counter.

        Raises:
            KeyError: If no entry has ``entry_id``.
        """
        with self._lock_for(provider_id):
            entries = self.load_keys(provider_id)
            for entry in entries:
                if entry.id == entry_id:
                    entry.token_count += max(0, int(tokens))
                    self._write_keys(provider_id, entries)
                    return entry
        raise KeyError(entry_id)

    def mark_validity(self, provider_id: str, entry_id: str, valid: bool) -> None:
        with self._lock_for(provider_id):
            entries = self.load_keys(provider_id)
            matched = next((entry for entry in entries if entry.id == entry_id), None)
            if matched is None:
                raise KeyError(entry_id)
            matched.is_valid = valid
            self._write_keys(provider_id, entries)
        self._notify(provider_id)


__all__ = ["KeyRotator"]
