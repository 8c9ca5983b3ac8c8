"""
Type definitions for the provider manager package.

This module contains the data types shared by adapters, the registry and
the accounting code:
- BackendFamily, AuthMethod, APIFormat, StreamingFormat enums
- ModelDescriptor and ProviderConfiguration / ProviderSnapshot
- ChatMessage, AttachmentPayload and RequestOptions for outbound requests
- StreamEvent, the unit of every response stream
- UsageRecord, UsageWindow, UsageSnapshot and APIKeyEntry for accounting
"""

import base64
import time
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


class BackendFamily(str, Enum):
    """Known backend families. Dispatch to an adapter happens on this value."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OLLAMA = "ollama"
    ZHIPU = "zhipu"
    ZHIPU_CODING = "zhipu_coding"
    ZHIPU_ANTHROPIC = "zhipu_anthropic"
    GROQ = "groq"
    CEREBRAS = "cerebras"
    MISTRAL = "mistral"
    DEEPSEEK = "deepseek"
    TOGETHER = "together"
    FIREWORKS = "fireworks"
    OPENROUTER = "openrouter"
    SILICONFLOW = "siliconflow"
    XAI = "xai"
    PERPLEXITY = "perplexity"
    GOOGLE = "google"
    KILO = "kilo"
    CUSTOM = "custom"

    @property
    def default_base_url(self) -> Optional[str]:
        return _DEFAULT_BASE_URLS.get(self)

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def is_openai_compatible(self) -> bool:
        return self not in (
            BackendFamily.ANTHROPIC,
            BackendFamily.ZHIPU_ANTHROPIC,
            BackendFamily.OLLAMA,
            BackendFamily.CUSTOM,
        )

    @property
    def uses_subscription_billing(self) -> bool:
        """Families billed by plan rather than by token."""
        return self in (BackendFamily.ZHIPU, BackendFamily.ZHIPU_CODING, BackendFamily.ZHIPU_ANTHROPIC)


_DEFAULT_BASE_URLS: Dict[BackendFamily, str] = {
    BackendFamily.ANTHROPIC: "https://api.anthropic.com",
    BackendFamily.OPENAI: "https://api.openai.com",
    BackendFamily.OLLAMA: "http://localhost:11434",
    BackendFamily.ZHIPU: "https://api.z.ai/api/paas/v4",
    BackendFamily.ZHIPU_CODING: "https://api.z.ai/api/coding/paas/v4",
    BackendFamily.ZHIPU_ANTHROPIC: "https://api.z.ai/api/anthropic",
    BackendFamily.GROQ: "https://api.groq.com/openai",
    BackendFamily.CEREBRAS: "https://api.cerebras.ai/v1",
    BackendFamily.MISTRAL: "https://api.mistral.ai/v1",
    BackendFamily.DEEPSEEK: "https://api.deepseek.com",
    BackendFamily.TOGETHER: "https://api.together.xyz/v1",
    BackendFamily.FIREWORKS: "https://api.fireworks.ai/inference/v1",
    BackendFamily.OPENROUTER: "https://openrouter.ai/api/v1",
    BackendFamily.SILICONFLOW: "https://api.siliconflow.cn/v1",
    BackendFamily.XAI: "https://api.x.ai/v1",
    BackendFamily.PERPLEXITY: "https://api.perplexity.ai",
    BackendFamily.GOOGLE: "https://generativelanguage.googleapis.com/v1beta/openai",
    BackendFamily.KILO: "https://api.kilo.ai/api/gateway",
}

_DISPLAY_NAMES: Dict[BackendFamily, str] = {
    BackendFamily.ANTHROPIC: "Anthropic",
    BackendFamily.OPENAI: "OpenAI",
    BackendFamily.OLLAMA: "Ollama",
    BackendFamily.ZHIPU: "Z.AI",
    BackendFamily.ZHIPU_CODING: "Z.AI Coding Plan",
    BackendFamily.ZHIPU_ANTHROPIC: "Z.AI (Anthropic API)",
    BackendFamily.GROQ: "Groq",
    BackendFamily.CEREBRAS: "Cerebras",
    BackendFamily.MISTRAL: "Mistral",
    BackendFamily.DEEPSEEK: "DeepSeek",
    BackendFamily.TOGETHER: "Together AI",
    BackendFamily.FIREWORKS: "Fireworks AI",
    BackendFamily.OPENROUTER: "OpenRouter",
    BackendFamily.SILICONFLOW: "SiliconFlow",
    BackendFamily.XAI: "xAI",
    BackendFamily.PERPLEXITY: "Perplexity",
    BackendFamily.GOOGLE: "Google Gemini",
    BackendFamily.KILO: "Kilo Code",
    BackendFamily.CUSTOM: "Custom",
}


class AuthMethod(str, Enum):
    """How a provider authenticates requests."""

    API_KEY = "api_key"
    OAUTH = "oauth"
    BEARER = "bearer"
    NONE = "none"


class APIFormat(str, Enum):
    """Request/response shape used by a custom endpoint."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"

    @property
    def default_path(self) -> str:
        if self is APIFormat.ANTHROPIC:
            return "/v1/messages"
        return "/v1/chat/completions"


class StreamingFormat(str, Enum):
    """Streaming wire format of a custom endpoint."""

    SSE = "sse"
    NDJSON = "ndjson"
    NONE = "none"

    @property
    def supports_streaming(self) -> bool:
        return self is not StreamingFormat.NONE


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ModelDescriptor:
    """A model offered by a provider. Costs are per million tokens."""

    id: str
    display_name: str
    context_window: Optional[int] = None
    supports_vision: bool = False
    supports_streaming: bool = True
    input_cost_per_million: Optional[float] = None
    output_cost_per_million: Optional[float] = None

    @property
    def has_pricing(self) -> bool:
        return self.input_cost_per_million is not None and self.output_cost_per_million is not None

    @property
    def is_free(self) -> bool:
        return self.has_pricing and self.input_cost_per_million == 0 and self.output_cost_per_million == 0

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ModelDescriptor":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ProviderConfiguration:
    """
    Mutable provider configuration owned by the ProviderManager.

    Adapters never see this object; they receive a ProviderSnapshot built
    from it at construction time.
    """

    name: str
    family: BackendFamily
    id: str = field(default_factory=_new_id)
    is_enabled: bool = True
    is_default: bool = False
    sort_order: int = 0
    base_url: Optional[str] = None
    auth_method: AuthMethod = AuthMethod.API_KEY
    custom_headers: Dict[str, str] = field(default_factory=dict)
    oauth_client_id: Optional[str] = None
    oauth_authorize_url: Optional[str] = None
    oauth_token_url: Optional[str] = None
    oauth_scopes: List[str] = field(default_factory=list)
    models: List[ModelDescriptor] = field(default_factory=list)
    default_model_id: Optional[str] = None
    cost_per_input_token: Optional[float] = None
    cost_per_output_token: Optional[float] = None
    # Custom endpoint settings
    api_format: APIFormat = APIFormat.OPENAI
    streaming_format: StreamingFormat = StreamingFormat.SSE
    api_path: Optional[str] = None
    api_key_header: Optional[str] = None
    api_key_prefix: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self.family = BackendFamily(self.family)
        self.auth_method = AuthMethod(self.auth_method)
        self.api_format = APIFormat(self.api_format)
        self.streaming_format = StreamingFormat(self.streaming_format)

    def touch(self) -> None:
        """Record a modification."""
        self.updated_at = datetime.now()

    @property
    def effective_base_url(self) -> Optional[str]:
        base = (self.base_url or "").strip() or self.family.default_base_url
        return base.rstrip("/") if base else None

    @property
    def effective_api_path(self) -> str:
        path = (self.api_path or "").strip()
        if not path:
            return self.api_format.default_path
        return path if path.startswith("/") else f"/{path}"

    def snapshot(self) -> "ProviderSnapshot":
        """Build an immutable copy safe to hand to an adapter."""
        return ProviderSnapshot(
            id=self.id,
            name=self.name,
            family=self.family,
            base_url=self.effective_base_url,
            api_path=self.effective_api_path,
            auth_method=self.auth_method,
            custom_headers=MappingProxyType(dict(self.custom_headers)),
            models=tuple(self.models),
            default_model_id=self.default_model_id,
            api_format=self.api_format,
            streaming_format=self.streaming_format,
            api_key_header=self.api_key_header,
            api_key_prefix=self.api_key_prefix,
            cost_per_input_token=self.cost_per_input_token,
            cost_per_output_token=self.cost_per_output_token,
            oauth_client_id=self.oauth_client_id,
            oauth_authorize_url=self.oauth_authorize_url,
            oauth_token_url=self.oauth_token_url,
            oauth_scopes=tuple(self.oauth_scopes),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible primitives (no secrets live here)."""
        return {
            "id": self.id,
            "name": self.name,
            "family": self.family.value,
            "is_enabled": self.is_enabled,
            "is_default": self.is_default,
            "sort_order": self.sort_order,
            "base_url": self.base_url,
            "auth_method": self.auth_method.value,
            "custom_headers": dict(self.custom_headers),
            "oauth_client_id": self.oauth_client_id,
            "oauth_authorize_url": self.oauth_authorize_url,
            "oauth_token_url": self.oauth_token_url,
            "oauth_scopes": list(self.oauth_scopes),
            "models": [m.to_dict() for m in self.models],
            "default_model_id": self.default_model_id,
            "cost_per_input_token": self.cost_per_input_token,
            "cost_per_output_token": self.cost_per_output_token,
            "api_format": self.api_format.value,
            "streaming_format": self.streaming_format.value,
            "api_path": self.api_path,
            "api_key_header": self.api_key_header,
            "api_key_prefix": self.api_key_prefix,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProviderConfiguration":
        payload = dict(data)
        payload["models"] = [ModelDescriptor.from_dict(m) for m in payload.get("models") or []]
        for key in ("created_at", "updated_at"):
            if isinstance(payload.get(key), str):
                payload[key] = datetime.fromisoformat(payload[key])
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in payload.items() if k in known})


@dataclass(frozen=True)
class ProviderSnapshot:
    """Immutable view of a ProviderConfiguration."""

    id: str
    name: str
    family: BackendFamily
    base_url: Optional[str]
    api_path: str
    auth_method: AuthMethod
    custom_headers: Mapping[str, str]
    models: Tuple[ModelDescriptor, ...]
    default_model_id: Optional[str] = None
    api_format: APIFormat = APIFormat.OPENAI
    streaming_format: StreamingFormat = StreamingFormat.SSE
    api_key_header: Optional[str] = None
    api_key_prefix: Optional[str] = None
    cost_per_input_token: Optional[float] = None
    cost_per_output_token: Optional[float] = None
    oauth_client_id: Optional[str] = None
    oauth_authorize_url: Optional[str] = None
    oauth_token_url: Optional[str] = None
    oauth_scopes: Tuple[str, ...] = ()

    @property
    def has_cost_override(self) -> bool:
        return self.cost_per_input_token is not None or self.cost_per_output_token is not None

    @property
    def default_model(self) -> Optional[ModelDescriptor]:
        """Configured default model, else the first listed one."""
        if self.default_model_id:
            for model in self.models:
                if model.id == self.default_model_id:
                    return model
        return self.models[0] if self.models else None

    def find_model(self, model_id: str) -> Optional[ModelDescriptor]:
        for model in self.models:
            if model.id == model_id:
                return model
        return None


@dataclass(frozen=True)
class AttachmentPayload:
    """Raw attachment bytes sent along with a message."""

    data: bytes
    mime_type: str
    file_name: str = "attachment"

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64_data}"

    def __repr__(self) -> str:
        return f"AttachmentPayload(file_name={self.file_name!r}, mime_type={self.mime_type!r}, size={len(self.data)})"


@dataclass(frozen=True)
class ChatMessage:
    role: MessageRole
    content: str
    attachments: Tuple[AttachmentPayload, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "role", MessageRole(self.role))
        object.__setattr__(self, "attachments", tuple(self.attachments))

    @property
    def image_attachments(self) -> List[AttachmentPayload]:
        return [a for a in self.attachments if a.is_image]


@dataclass
class RequestOptions:
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stream: bool = True
    timeout: Optional[float] = None  # seconds; None uses the adapter default


class StreamEventKind(str, Enum):
    TEXT_DELTA = "text_delta"
    INPUT_TOKENS = "input_tokens"
    OUTPUT_TOKENS = "output_tokens"
    MODEL_USED = "model_used"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """One event of a response stream. DONE and ERROR are terminal."""

    kind: StreamEventKind
    text: Optional[str] = None
    tokens: Optional[int] = None
    model: Optional[str] = None
    error: Optional[Exception] = None

    @classmethod
    def text_delta(cls, text: str) -> "StreamEvent":
        return cls(StreamEventKind.TEXT_DELTA, text=text)

    @classmethod
    def input_tokens(cls, count: int) -> "StreamEvent":
        return cls(StreamEventKind.INPUT_TOKENS, tokens=int(count))

    @classmethod
    def output_tokens(cls, count: int) -> "StreamEvent":
        return cls(StreamEventKind.OUTPUT_TOKENS, tokens=int(count))

    @classmethod
    def model_used(cls, model: str) -> "StreamEvent":
        return cls(StreamEventKind.MODEL_USED, model=model)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(StreamEventKind.DONE)

    @classmethod
    def failed(cls, error: Exception) -> "StreamEvent":
        return cls(StreamEventKind.ERROR, error=error)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (StreamEventKind.DONE, StreamEventKind.ERROR)


@dataclass(frozen=True)
class UsageRecord:
    """Token usage and cost of one completed exchange."""

    provider_id: str
    model_id: str
    conversation_id: str
    message_id: str
    input_tokens: int
    output_tokens: int
    cost: float
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=_new_id)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class UsageWindow:
    """A quota window; used_percent is clamped to [0, 100]."""

    label: str
    used_percent: float
    reset_at: Optional[int] = None  # epoch milliseconds

    def __post_init__(self):
        object.__setattr__(self, "used_percent", min(100.0, max(0.0, float(self.used_percent))))

    @property
    def remaining_percent(self) -> float:
        return max(0.0, 100.0 - self.used_percent)

    def reset_time_display(self, now: Optional[float] = None) -> str:
        """Human readable time until reset, e.g. '2h 5m'."""
        if self.reset_at is None:
            return ""
        now = time.time() if now is None else now
        interval = self.reset_at / 1000 - now
        if interval <= 0:
            return "Resets soon"
        hours = int(interval // 3600)
        minutes = int((interval % 3600) // 60)
        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"


@dataclass(frozen=True)
class UsageSnapshot:
    provider: str
    display_name: str
    windows: Tuple[UsageWindow, ...] = ()
    plan: Optional[str] = None
    error: Optional[str] = None
    fetched_at: float = field(default_factory=time.time)

    @property
    def primary_window(self) -> Optional[UsageWindow]:
        return self.windows[0] if self.windows else None

    @property
    def has_data(self) -> bool:
        return bool(self.windows) and self.error is None


@dataclass
class APIKeyEntry:
    """One of several API keys stored for a provider."""

    label: str
    key: str = field(repr=False)
    id: str = field(default_factory=_new_id)
    token_count: int = 0
    is_active: bool = False
    is_valid: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "key": self.key,
            "token_count": self.token_count,
            "is_active": self.is_active,
            "is_valid": self.is_valid,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "APIKeyEntry":
        return cls(
            id=str(data["id"]),
            label=str(data.get("label", "")),
            key=str(data["key"]),
            token_count=int(data.get("token_count") or 0),
            is_active=bool(data.get("is_active", False)),
            is_valid=data.get("is_valid"),
        )


__all__ = [
    "BackendFamily",
    "AuthMethod",
    "APIFormat",
    "StreamingFormat",
    "MessageRole",
    "ModelDescriptor",
    "ProviderConfiguration",
    "ProviderSnapshot",
    "AttachmentPayload",
    "ChatMessage",
    "RequestOptions",
    "StreamEventKind",
    "StreamEvent",
    "UsageRecord",
    "UsageWindow",
    "UsageSnapshot",
    "APIKeyEntry",
]
