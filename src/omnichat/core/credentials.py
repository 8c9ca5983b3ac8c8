"""
Secret storage for provider credentials.

This module contains:
- SecretKeys for building namespaced credential-store keys
- CredentialStore, the interface plus key/token convenience helpers
- KeyringCredentialStore backed by the OS keychain via keyring
- InMemoryCredentialStore for tests and embedding

Secrets never appear in provider configuration files or in logs.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional, Tuple

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from loguru import logger


class CredentialStoreError(Exception):
    """Raised when the credential store cannot complete an operation."""


class SecretKeys:
    """Namespaced credential-store keys for a provider."""

    PREFIX = "omnichat.provider"

    @classmethod
    def api_key(cls, provider_id: str) -> str:
        return f"{cls.PREFIX}.{provider_id}.apikey"

    @classmethod
    def api_keys(cls, provider_id: str) -> str:
        return f"{cls.PREFIX}.{provider_id}.apikeys"

    @classmethod
    def oauth_access(cls, provider_id: str) -> str:
        return f"{cls.PREFIX}.{provider_id}.oauth.access"

    @classmethod
    def oauth_refresh(cls, provider_id: str) -> str:
        return f"{cls.PREFIX}.{provider_id}.oauth.refresh"

    @classmethod
    def oauth_expiry(cls, provider_id: str) -> str:
        return f"{cls.PREFIX}.{provider_id}.oauth.expiry"

    @classmethod
    def all_for(cls, provider_id: str) -> Tuple[str, ...]:
        return (
            cls.api_key(provider_id),
            cls.oauth_access(provider_id),
            cls.oauth_refresh(provider_id),
            cls.oauth_expiry(provider_id),
            cls.api_keys(provider_id),
        )


class CredentialStore(ABC):
    """Key/value secret store. Implementations only provide save, read and delete."""

    @abstractmethod
    def save(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any existing item."""

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        """Return the stored value, or None when absent."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the item. Removing an absent item is not an error."""

    def exists(self, key: str) -> bool:
        return self.read(key) is not None

    # -- API keys -----------------------------------------------------

    def save_api_key(self, provider_id: str, api_key: str) -> None:
        self.save(SecretKeys.api_key(provider_id), api_key)

    def read_api_key(self, provider_id: str) -> Optional[str]:
        return self.read(SecretKeys.api_key(provider_id))

    def delete_api_key(self, provider_id: str) -> None:
        self.delete(SecretKeys.api_key(provider_id))

    # -- OAuth tokens -------------------------------------------------

    def save_oauth_tokens(
        self,
        provider_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        """Store an OAuth token set. Missing refresh token or expiry clears the stored one."""
        self.save(SecretKeys.oauth_access(provider_id), access_token)
        if refresh_token:
            self.save(SecretKeys.oauth_refresh(provider_id), refresh_token)
        else:
            self.delete(SecretKeys.oauth_refresh(provider_id))
        if expires_at is not None:
            self.save(SecretKeys.oauth_expiry(provider_id), expires_at.isoformat())
        else:
            self.delete(SecretKeys.oauth_expiry(provider_id))

    def read_oauth_tokens(self, provider_id: str) -> Optional[Tuple[str, Optional[str], Optional[datetime]]]:
        """
        Read the stored OAuth token set.

        Returns:
            ``(access_token, refresh_token, expires_at)`` or None when no
            access token is stored. An unparseable expiry reads as None.
        """
        access = self.read(SecretKeys.oauth_access(provider_id))
        if access is None:
            return None
        refresh = self.read(SecretKeys.oauth_refresh(provider_id))
        expiry_raw = self.read(SecretKeys.oauth_expiry(provider_id))
        expires_at = None
        if expiry_raw:
            try:
                expires_at = datetime.fromisoformat(expiry_raw)
            except ValueError:
                logger.warning(f"Ignoring malformed OAuth expiry for provider {provider_id}")
        return access, refresh, expires_at

    def delete_oauth_tokens(self, provider_id: str) -> None:
        self.delete(SecretKeys.oauth_access(provider_id))
        self.delete(SecretKeys.oauth_refresh(provider_id))
        self.delete(SecretKeys.oauth_expiry(provider_id))

    def delete_all_secrets(self, provider_id: str) -> None:
        """Remove every secret stored for a provider."""
        for key in SecretKeys.all_for(provider_id):
            self.delete(key)
        logger.debug(f"Deleted all secrets for provider {provider_id}")


def _check_key(key: str) -> None:
    if not key or not key.strip():
        raise CredentialStoreError("The key string is empty or invalid.")


class KeyringCredentialStore(CredentialStore):
    """Credential store backed by the system keychain."""

    def __init__(self, service: str = "omnichat"):
        self.service = service

    def save(self, key: str, value: str) -> None:
        _check_key(key)
        try:
            keyring.set_password(self.service, key, value)
        except KeyringError as e:
            logger.error(f"Failed to save '{key}' to keyring: {e}")
            raise CredentialStoreError(f"Failed to save '{key}': {e}") from e
        logger.debug(f"Saved '{key}' to keyring")

    def read(self, key: str) -> Optional[str]:
        _check_key(key)
        try:
            return keyring.get_password(self.service, key)
        except KeyringError as e:
            logger.error(f"Failed to load '{key}' from keyring: {e}")
            raise CredentialStoreError(f"Failed to read '{key}': {e}") from e

    def delete(self, key: str) -> None:
        _check_key(key)
        try:
            keyring.delete_password(self.service, key)
            logger.debug(f"Deleted '{key}' from keyring")
        except PasswordDeleteError:
            # Not stored; nothing to do
            pass
        except KeyringError as e:
            logger.error(f"Failed to delete '{key}' from keyring: {e}")
            raise CredentialStoreError(f"Failed to delete '{key}': {e}") from e


class InMemoryCredentialStore(CredentialStore):
    """Thread-safe dict-backed store."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def save(self, key: str, value: str) -> None:
        _check_key(key)
        with self._lock:
            self._items[key] = value

    def read(self, key: str) -> Optional[str]:
        _check_key(key)
        with self._lock:
            return self._items.get(key)

    def delete(self, key: str) -> None:
        _check_key(key)
        with self._lock:
            self._items.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


__all__ = [
    "CredentialStoreError",
    "SecretKeys",
    "CredentialStore",
    "KeyringCredentialStore",
    "InMemoryCredentialStore",
]
