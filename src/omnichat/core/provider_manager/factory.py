"""
Adapter construction, dispatched on BackendFamily.

Every family maps to exactly one builder; a family without a builder is
caught when this module is imported.
"""

from typing import Callable, Dict, Optional

import httpx

from ..config import Settings
from .types import BackendFamily, ProviderSnapshot

AdapterBuilder = Callable[[ProviderSnapshot, str, Settings, Optional[httpx.AsyncClient]], object]


def _build_anthropic(snapshot, api_key, settings, client):
    from ...providers.anthropic_adapter import AnthropicAdapter

    return AnthropicAdapter(
        snapshot,
        api_key,
        client=client,
        timeout=settings.request_timeout,
        connect_timeout=settings.connect_timeout,
        max_tokens=settings.anthropic_max_tokens,
        max_data_length=settings.sse_max_data_length,
    )


def _build_openai_compatible(snapshot, api_key, settings, client):
    from ...providers.openai_adapter import OpenAICompatibleAdapter

    return OpenAICompatibleAdapter(
        snapshot,
        api_key,
        client=client,
        timeout=settings.request_timeout,
        connect_timeout=settings.connect_timeout,
        max_data_length=settings.sse_max_data_length,
        app_referer=settings.app_referer,
        app_title=settings.app_title,
    )


def _build_ollama(snapshot, api_key, settings, client):
    from ...providers.ollama_adapter import OllamaAdapter

    return OllamaAdapter(
        snapshot,
        api_key,
        client=client,
        timeout=settings.request_timeout,
        connect_timeout=settings.connect_timeout,
        max_data_length=settings.sse_max_data_length,
    )


def _build_custom(snapshot, api_key, settings, client):
    from ...providers.custom_adapter import CustomAdapter

    return CustomAdapter(
        snapshot,
        api_key,
        client=client,
        timeout=settings.request_timeout,
        connect_timeout=settings.connect_timeout,
        max_tokens=settings.anthropic_max_tokens,
        max_data_length=settings.sse_max_data_length,
    )


BUILDERS: Dict[BackendFamily, AdapterBuilder] = {
    BackendFamily.ANTHROPIC: _build_anthropic,
    BackendFamily.ZHIPU_ANTHROPIC: _build_anthropic,
    BackendFamily.OLLAMA: _build_ollama,
    BackendFamily.CUSTOM: _build_custom,
    **{family: _build_openai_compatible for family in BackendFamily if family.is_openai_compatible},
}

_missing = [family.value for family in BackendFamily if family not in BUILDERS]
if _missing:
    raise RuntimeError(f"No adapter builder for backend families: {', '.join(_missing)}")


def create_adapter(
    snapshot: ProviderSnapshot,
    api_key: str,
    settings: Settings,
    client: Optional[httpx.AsyncClient] = None,
):
    """
    Construct the adapter for a snapshot's backend family.

    Args:
        snapshot: Immutable provider configuration.
        api_key: Resolved secret, possibly empty.
        settings: Timeouts and limits passed on to the adapter.
        client: Optional shared httpx client.

    Returns:
        An object implementing ProviderAdapter.
    """
    return BUILDERS[snapshot.family](snapshot, api_key, settings, client)


__all__ = ["BUILDERS", "create_adapter"]
