"""
Provider registry for OmniChat.

This module provides the ProviderManager class which owns the ordered list
of provider configurations and a cache of adapters built from them.
"""

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

import httpx
from loguru import logger

from .. import rotation
from ..config import Settings, get_settings
from ..credentials import CredentialStore
from .errors import ProviderError
from .factory import create_adapter
from .store import ProviderStore
from .types import APIKeyEntry, AuthMethod, BackendFamily, ModelDescriptor, ProviderConfiguration


def _not_found(provider_id: str) -> ProviderError:
    return ProviderError.provider_error(f"Provider not found: {provider_id}")


class ProviderManager:
    """
    Owns provider configurations and the adapters built from them.

    Adapters are cached per provider id. Any change to a provider's
    configuration or secret evicts its cached adapter, so the next
    ``adapter_for`` call builds a fresh one with the current settings.
    Evicted adapters are not cancelled; streams already running on them
    finish normally.

    All adapters share one httpx client owned by the manager.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        settings: Optional[Settings] = None,
        store: Optional[ProviderStore] = None,
        key_rotator: Optional["rotation.KeyRotator"] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the manager.

        Args:
            credential_store: Where API keys and OAuth tokens are kept.
            settings: Application settings; the global settings by default.
            store: Optional JSON store. When given, providers are loaded from
                it now and saved to it after every change.
            key_rotator: Rotation helper; built on ``credential_store`` by default.
            client: Optional shared httpx client for all adapters.
        """
        self._credentials = credential_store
        self._settings = settings or get_settings()
        self._store = store
        self._rotator = key_rotator or rotation.KeyRotator(credential_store)
        self._client = client
        self._owns_client = client is None
        self._lock = threading.RLock()
        self._providers: List[ProviderConfiguration] = []
        self._adapters: Dict[str, object] = {}
        # Rotation entry whose key the cached adapter was built with
        self._active_entries: Dict[str, str] = {}
        self._rotator.subscribe(self._on_keys_changed)

        if self._store is not None:
            self.reload_providers()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def key_rotator(self) -> "rotation.KeyRotator":
        """Rotation helper. Key changes made through it evict the cached adapter."""
        return self._rotator

    @property
    def client(self) -> httpx.AsyncClient:
        with self._lock:
            if self._client is None:
                self._client = httpx.AsyncClient()
            return self._client

    # -- provider list ------------------------------------------------

    @property
    def providers(self) -> List[ProviderConfiguration]:
        with self._lock:
            return list(self._providers)

    @property
    def enabled_providers(self) -> List[ProviderConfiguration]:
        with self._lock:
            return [p for p in self._providers if p.is_enabled]

    def get_provider(self, provider_id: str) -> Optional[ProviderConfiguration]:
        with self._lock:
            for provider in self._providers:
                if provider.id == provider_id:
                    return provider
            return None

    def providers_of_family(self, family: BackendFamily) -> List[ProviderConfiguration]:
        family = BackendFamily(family)
        with self._lock:
            return [p for p in self._providers if p.family is family]

    @property
    def default_provider(self) -> Optional[ProviderConfiguration]:
        """The provider flagged default, else the first one, else None."""
        with self._lock:
            for provider in self._providers:
                if provider.is_default:
                    return provider
            return self._providers[0] if self._providers else None

    def set_default(self, config: ProviderConfiguration) -> None:
        """Flag one provider as default and clear the flag on all others."""
        with self._lock:
            if self._index_of(config.id) is None:
                raise _not_found(config.id)
            for provider in self._providers:
                flagged = provider.id == config.id
                if provider.is_default != flagged:
                    provider.is_default = flagged
                    provider.touch()
            config.is_default = True
            self._persist()
        logger.info(f"Default provider set to '{config.name}'")

    # -- CRUD ---------------------------------------------------------

    def create_provider(self, config: ProviderConfiguration) -> ProviderConfiguration:
        with self._lock:
            if self._index_of(config.id) is not None:
                raise ProviderError.provider_error(f"Provider already exists: {config.id}")
            if not config.sort_order:
                config.sort_order = len(self._providers)
            self._providers.append(config)
            if config.is_default:
                for provider in self._providers:
                    if provider.id != config.id:
                        provider.is_default = False
            self._persist()
        logger.info(f"Created provider '{config.name}' ({config.family.value})")
        return config

    def update_provider(self, config: ProviderConfiguration) -> ProviderConfiguration:
        """Replace a stored configuration and evict its cached adapter."""
        with self._lock:
            index = self._index_of(config.id)
            if index is None:
                raise _not_found(config.id)
            config.touch()
            self._providers[index] = config
            if config.is_default:
                for provider in self._providers:
                    if provider.id != config.id:
                        provider.is_default = False
            self._evict(config.id)
            self._persist()
        logger.info(f"Updated provider '{config.name}'")
        return config

    def delete_provider(self, config: ProviderConfiguration) -> None:
        """Remove every stored secret, then the configuration and its cached adapter."""
        with self._lock:
            index = self._index_of(config.id)
            if index is None:
                raise _not_found(config.id)
            self._credentials.delete_all_secrets(config.id)
            adapter = self._adapters.get(config.id)
            if adapter is not None:
                adapter.cancel()
            self._evict(config.id)
            del self._providers[index]
            self._persist()
        logger.info(f"Deleted provider '{config.name}'")

    def reload_providers(self) -> None:
        """Reload configurations from the attached store and drop all cached adapters."""
        if self._store is None:
            return
        providers = self._store.load()
        with self._lock:
            self._providers = providers
            self._adapters.clear()
            self._active_entries.clear()
        logger.info(f"Loaded {len(providers)} providers")

    # -- secrets ------------------------------------------------------

    def save_api_key(self, provider_id: str, api_key: str) -> None:
        with self._lock:
            self._credentials.save_api_key(provider_id, api_key.strip())
            self._evict(provider_id)
        logger.info(f"API key saved for provider {provider_id}")

    def delete_api_key(self, provider_id: str) -> None:
        with self._lock:
            self._credentials.delete_api_key(provider_id)
            self._evict(provider_id)
        logger.info(f"API key deleted for provider {provider_id}")

    def save_oauth_tokens(
        self,
        provider_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> None:
        with self._lock:
            self._credentials.save_oauth_tokens(provider_id, access_token, refresh_token, expires_at)
            self._evict(provider_id)

    def add_rotation_key(self, provider_id: str, label: str, api_key: str) -> APIKeyEntry:
        """Store one more key for rotation; the cached adapter is evicted."""
        with self._lock:
            return self._rotator.add_key(provider_id, label, api_key.strip())

    def remove_rotation_key(self, provider_id: str, entry_id: str) -> bool:
        with self._lock:
            return self._rotator.remove_key(provider_id, entry_id)

    def mark_key_validity(self, provider_id: str, entry_id: str, valid: bool) -> None:
        """
        Record a validation result for a rotation key.

        Raises:
            KeyError: If no entry has ``entry_id``.
        """
        with self._lock:
            self._rotator.mark_validity(provider_id, entry_id, valid)

    def has_credentials(self, provider_id: str) -> bool:
        config = self.get_provider(provider_id)
        if config is not None and config.auth_method is AuthMethod.NONE:
            return True
        if config is not None and config.auth_method is AuthMethod.OAUTH:
            return self._credentials.read_oauth_tokens(provider_id) is not None
        return bool(self._credentials.read_api_key(provider_id)) or bool(self._rotator.load_keys(provider_id))

    def _resolve_secret(self, config: ProviderConfiguration) -> str:
        """
        Secret for a new adapter.

        Raises:
            CredentialStoreError: If the credential store fails.
        """
        if self._settings.key_rotation_enabled and self._rotator.has_multiple_keys(config.id):
            entry = self._rotator.select_key(config.id)
            if entry is not None:
                self._active_entries[config.id] = entry.id
                return entry.key.strip()
        return self.current_secret(config)

    def current_secret(self, config: ProviderConfiguration) -> str:
        """Stored OAuth access token or API key, without touching key rotation."""
        if config.auth_method is AuthMethod.OAUTH:
            tokens = self._credentials.read_oauth_tokens(config.id)
            if tokens is not None:
                access_token, _, expires_at = tokens
                if expires_at is not None:
                    aware = expires_at if expires_at.tzinfo else expires_at.replace(tzinfo=timezone.utc)
                    if aware <= datetime.now(timezone.utc):
                        logger.warning(f"OAuth token for '{config.name}' has expired")
                return access_token.strip()

        api_key = self._credentials.read_api_key(config.id)
        if api_key is None:
            if config.auth_method is not AuthMethod.NONE:
                logger.warning(f"No API key stored for provider '{config.name}'")
            return ""
        return api_key.strip()

    # -- adapters -----------------------------------------------------

    def adapter_for(self, config: ProviderConfiguration):
        """
        Return the cached adapter for a provider, building it on first use.

        Raises:
            CredentialStoreError: If the secret cannot be read.
        """
        with self._lock:
            adapter = self._adapters.get(config.id)
            if adapter is not None:
                return adapter
            secret = self._resolve_secret(config)
            adapter = create_adapter(config.snapshot(), secret, self._settings, self.client)
            self._adapters[config.id] = adapter
        logger.debug(f"Built {type(adapter).__name__} for provider '{config.name}'")
        return adapter

    def adapter_for_id(self, provider_id: str):
        config = self.get_provider(provider_id)
        if config is None:
            raise _not_found(provider_id)
        return self.adapter_for(config)

    def clear_adapter_cache(self, provider_id: Optional[str] = None) -> None:
        with self._lock:
            if provider_id is None:
                self._adapters.clear()
                self._active_entries.clear()
            else:
                self._evict(provider_id)

    @property
    def cached_adapter_count(self) -> int:
        with self._lock:
            return len(self._adapters)

    async def validate_credentials(self, provider_id: str) -> bool:
        return await self.adapter_for_id(provider_id).validate_credentials()

    async def fetch_models(self, provider_id: str) -> List[ModelDescriptor]:
        return await self.adapter_for_id(provider_id).fetch_models()

    # -- rotation -----------------------------------------------------

    def record_usage(self, provider_id: str, input_tokens: int, output_tokens: int) -> Optional[APIKeyEntry]:
        """
        Charge a completed exchange to the key that served it.

        Only applies while rotation is active for the provider. The cached
        adapter is evicted so the next request selects a key again.

        Returns:
            The updated key entry, or None when rotation was not used.
        """
        if not self._settings.key_rotation_enabled:
            return None
        with self._lock:
            entry_id = self._active_entries.get(provider_id)
            if entry_id is None:
                return None
            try:
                entry = self._rotator.record_usage(provider_id, entry_id, input_tokens + output_tokens)
            except KeyError:
                logger.warning(f"Active key {entry_id} of provider {provider_id} no longer exists")
                entry = None
            self._evict(provider_id)
        return entry

    # -- lifecycle ----------------------------------------------------

    async def shutdown(self) -> None:
        """Cancel in-flight requests, drop cached adapters and close the shared client."""
        with self._lock:
            adapters = list(self._adapters.values())
            self._adapters.clear()
            self._active_entries.clear()
            client, self._client = self._client, None
        for adapter in adapters:
            adapter.cancel()
            await adapter.aclose()
        if client is not None and self._owns_client:
            await client.aclose()
        logger.info("Provider manager shut down")

    # -- internals ----------------------------------------------------

    def _index_of(self, provider_id: str) -> Optional[int]:
        for index, provider in enumerate(self._providers):
            if provider.id == provider_id:
                return index
        return None

    def _on_keys_changed(self, provider_id: str) -> None:
        # Rotation keys changed outside record_usage; the cached secret may be gone
        with self._lock:
            self._evict(provider_id)

    def _evict(self, provider_id: str) -> None:
        if self._adapters.pop(provider_id, None) is not None:
            logger.debug(f"Evicted cached adapter for provider {provider_id}")
        self._active_entries.pop(provider_id, None)

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save(self._providers)


__all__ = ["ProviderManager"]
