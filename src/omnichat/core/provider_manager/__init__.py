"""
Provider manager package for OmniChat.

Provides the shared data model, the error taxonomy, adapter construction
and the ProviderManager registry. There is no process-wide instance;
callers construct a ProviderManager and pass it to whoever needs it.
"""

from .types import (
    APIFormat,
    APIKeyEntry,
    AttachmentPayload,
    AuthMethod,
    BackendFamily,
    ChatMessage,
    MessageRole,
    ModelDescriptor,
    ProviderConfiguration,
    ProviderSnapshot,
    RequestOptions,
    StreamEvent,
    StreamEventKind,
    StreamingFormat,
    UsageRecord,
    UsageSnapshot,
    UsageWindow,
)
from .errors import ProviderError, ProviderErrorKind, classify_error, retry_on_transient
from .store import ProviderStore
from .factory import create_adapter
from .registry import ProviderManager

__all__ = [
    "APIFormat",
    "APIKeyEntry",
    "AttachmentPayload",
    "AuthMethod",
    "BackendFamily",
    "ChatMessage",
    "MessageRole",
    "ModelDescriptor",
    "ProviderConfiguration",
    "ProviderSnapshot",
    "RequestOptions",
    "StreamEvent",
    "StreamEventKind",
    "StreamingFormat",
    "UsageRecord",
    "UsageSnapshot",
    "UsageWindow",
    "ProviderError",
    "ProviderErrorKind",
    "classify_error",
    "retry_on_transient",
    "ProviderStore",
    "create_adapter",
    "ProviderManager",
]
