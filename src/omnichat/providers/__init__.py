"""
Backend adapters and the wire decoders they share.
"""

from .anthropic_adapter import AnthropicAdapter
from .base import HTTPTransport, ProviderAdapter
from .custom_adapter import CustomAdapter
from .ollama_adapter import OllamaAdapter
from .openai_adapter import VENDOR_PROFILES, OpenAICompatibleAdapter, VendorProfile
from .streaming import EventStream
from .wire import NDJSONDecoder, SSEDecoder, SSEEvent, WireFormatError

__all__ = [
    "ProviderAdapter",
    "HTTPTransport",
    "EventStream",
    "AnthropicAdapter",
    "OpenAICompatibleAdapter",
    "VendorProfile",
    "VENDOR_PROFILES",
    "OllamaAdapter",
    "CustomAdapter",
    "SSEDecoder",
    "SSEEvent",
    "NDJSONDecoder",
    "WireFormatError",
]
