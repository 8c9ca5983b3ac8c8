"""
Cost estimation for model usage.

Prices are USD per million tokens. Lookup for a model id, case-insensitive:
1. exact match in the pricing table
2. pricing carried by the caller's ModelDescriptor
3. known local models (``llama3.2:latest``) are free
4. a dated or suffixed variant of a table entry (``gpt-4o-2024-11-20``)
5. family patterns: opus, sonnet, haiku, gpt-4o, gpt-4, o1
6. zero

Subscription-billed families are always zero. A provider's own per-token
prices apply when the caller's ModelDescriptor carries none.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .provider_manager.types import BackendFamily, ModelDescriptor, ProviderSnapshot, UsageRecord


@dataclass(frozen=True)
class ModelPricing:
    input_cost_per_million: float
    output_cost_per_million: float
    currency: str = "USD"

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        input_tokens = max(0, input_tokens)
        output_tokens = max(0, output_tokens)
        return (
            input_tokens * self.input_cost_per_million / 1_000_000
            + output_tokens * self.output_cost_per_million / 1_000_000
        )


FREE = ModelPricing(0.0, 0.0)

_OPUS = ModelPricing(15.0, 75.0)
_SONNET = ModelPricing(3.0, 15.0)
_HAIKU_3_5 = ModelPricing(0.80, 4.0)
_HAIKU_3 = ModelPricing(0.25, 1.25)
_GPT_4O = ModelPricing(2.50, 10.0)
_GPT_4O_MINI = ModelPricing(0.15, 0.60)
_GPT_4_TURBO = ModelPricing(10.0, 30.0)
_GPT_4 = ModelPricing(30.0, 60.0)
_GPT_4_32K = ModelPricing(60.0, 120.0)
_O1 = ModelPricing(15.0, 60.0)
_O1_MINI = ModelPricing(1.50, 6.0)

PRICING: Dict[str, ModelPricing] = {
    # Anthropic
    "claude-opus-4-20250514": _OPUS,
    "claude-opus-4": _OPUS,
    "claude-sonnet-4-5-20250929": _SONNET,
    "claude-sonnet-4-5": _SONNET,
    "claude-sonnet-4-20250514": _SONNET,
    "claude-4-sonnet": _SONNET,
    "claude-3-5-sonnet-20241022": _SONNET,
    "claude-3-5-sonnet-20240620": _SONNET,
    "claude-3-5-sonnet-latest": _SONNET,
    "claude-3.5-sonnet": _SONNET,
    "claude-3-5-haiku-20241022": _HAIKU_3_5,
    "claude-3-5-haiku-latest": _HAIKU_3_5,
    "claude-3.5-haiku": _HAIKU_3_5,
    "claude-3-opus-20240229": _OPUS,
    "claude-3-opus-latest": _OPUS,
    "claude-3-opus": _OPUS,
    "claude-3-haiku-20240307": _HAIKU_3,
    "claude-3-haiku-latest": _HAIKU_3,
    "claude-3-haiku": _HAIKU_3,
    # OpenAI
    "gpt-4o": _GPT_4O,
    "gpt-4o-2024-11-20": _GPT_4O,
    "gpt-4o-2024-08-06": _GPT_4O,
    "gpt-4o-2024-05-13": ModelPricing(5.0, 15.0),
    "gpt-4o-mini": _GPT_4O_MINI,
    "gpt-4o-mini-2024-07-18": _GPT_4O_MINI,
    "gpt-4-turbo": _GPT_4_TURBO,
    "gpt-4-turbo-2024-04-09": _GPT_4_TURBO,
    "gpt-4-turbo-preview": _GPT_4_TURBO,
    "gpt-4-0125-preview": _GPT_4_TURBO,
    "gpt-4-1106-preview": _GPT_4_TURBO,
    "gpt-4": _GPT_4,
    "gpt-4-0613": _GPT_4,
    "gpt-4-0314": _GPT_4,
    "gpt-4-32k": _GPT_4_32K,
    "gpt-4-32k-0613": _GPT_4_32K,
    "o1": _O1,
    "o1-2024-12-17": _O1,
    "o1-preview": _O1,
    "o1-preview-2024-09-12": _O1,
    "o1-mini": _O1_MINI,
    "o1-mini-2024-09-12": _O1_MINI,
    "gpt-3.5-turbo": ModelPricing(0.50, 1.50),
    "gpt-3.5-turbo-0125": ModelPricing(0.50, 1.50),
    "gpt-3.5-turbo-1106": ModelPricing(1.0, 2.0),
    "gpt-3.5-turbo-16k": ModelPricing(3.0, 4.0),
}

# Local models, matched with or without an Ollama ":tag".
LOCAL_FREE_MODELS = frozenset(
    {"llama3.2", "llama3.1", "llama3", "llama2", "mistral", "codellama", "phi3", "gemma2", "llava"}
)

# Checked in order; first substring hit wins.
_FAMILY_PATTERNS: Tuple[Tuple[str, ModelPricing], ...] = (
    ("opus", _OPUS),
    ("sonnet", _SONNET),
    ("haiku", _HAIKU_3_5),
    ("gpt-4o", _GPT_4O),
    ("gpt-4", _GPT_4_TURBO),
    ("o1", _O1),
)

_SUBSCRIPTION_FAMILIES = frozenset(
    {BackendFamily.ZHIPU, BackendFamily.ZHIPU_CODING, BackendFamily.ZHIPU_ANTHROPIC}
)


def _variant_of_known(model_id: str) -> Optional[ModelPricing]:
    best: Optional[str] = None
    for key in PRICING:
        if model_id.startswith(key + "-") and (best is None or len(key) > len(best)):
            best = key
    return PRICING[best] if best is not None else None


def provider_pricing(provider: Optional[ProviderSnapshot]) -> Optional[ModelPricing]:
    """Per-million pricing from a provider's per-token overrides, or None when unset."""
    if provider is None or not provider.has_cost_override:
        return None
    return ModelPricing(
        (provider.cost_per_input_token or 0.0) * 1_000_000,
        (provider.cost_per_output_token or 0.0) * 1_000_000,
    )


def pricing_for(model_id: str, descriptor: Optional[ModelDescriptor] = None) -> ModelPricing:
    """
    Resolve pricing for a model id.

    Args:
        model_id: Model identifier, any case.
        descriptor: Optional descriptor whose own prices override everything
            but an exact table match.

    Returns:
        The resolved pricing; FREE for unknown models.
    """
    normalized = model_id.strip().lower()

    exact = PRICING.get(normalized)
    if exact is not None:
        return exact

    if descriptor is not None and descriptor.has_pricing:
        return ModelPricing(descriptor.input_cost_per_million, descriptor.output_cost_per_million)

    local_name = normalized.split(":", 1)[0]
    if local_name in LOCAL_FREE_MODELS:
        return FREE

    variant = _variant_of_known(normalized)
    if variant is not None:
        return variant

    for pattern, pricing in _FAMILY_PATTERNS:
        if pattern in normalized:
            return pricing
    return FREE


def is_subscription_billing(family: Optional[BackendFamily] = None, model_id: Optional[str] = None) -> bool:
    """True for plan-billed families and GLM model ids."""
    if family is not None and BackendFamily(family) in _SUBSCRIPTION_FAMILIES:
        return True
    if model_id:
        lowered = model_id.lower()
        return "glm-" in lowered or lowered.startswith("glm")
    return False


def calculate_cost(
    model_id: str,
    input_tokens: int,
    output_tokens: int,
    descriptor: Optional[ModelDescriptor] = None,
    family: Optional[BackendFamily] = None,
    provider: Optional[ProviderSnapshot] = None,
) -> float:
    """
    Estimated USD cost of one exchange. Never negative.

    Args:
        model_id: Model that served the exchange.
        input_tokens: Prompt tokens.
        output_tokens: Completion tokens.
        descriptor: Model descriptor with its own prices, if known.
        family: Backend family; taken from ``provider`` when omitted.
        provider: Snapshot whose per-token overrides apply when the
            descriptor has no prices.
    """
    if family is None and provider is not None:
        family = provider.family
    if is_subscription_billing(family, model_id):
        return 0.0
    if descriptor is None or not descriptor.has_pricing:
        override = provider_pricing(provider)
        if override is not None:
            return override.cost(input_tokens, output_tokens)
    return pricing_for(model_id, descriptor).cost(input_tokens, output_tokens)


def format_cost(cost: float) -> str:
    if cost < 0.01:
        return f"${cost:.6f}"
    if cost < 1.0:
        return f"${cost:.4f}"
    return f"${cost:.2f}"


def format_token_count(tokens: int) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.1f}M"
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}K"
    return str(tokens)


def make_usage_record(
    provider_id: str,
    model_id: str,
    conversation_id: str,
    message_id: str,
    input_tokens: int,
    output_tokens: int,
    descriptor: Optional[ModelDescriptor] = None,
    family: Optional[BackendFamily] = None,
    provider: Optional[ProviderSnapshot] = None,
) -> UsageRecord:
    """Build a UsageRecord with its cost filled in."""
    input_tokens = max(0, input_tokens)
    output_tokens = max(0, output_tokens)
    return UsageRecord(
        provider_id=provider_id,
        model_id=model_id,
        conversation_id=conversation_id,
        message_id=message_id,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost=calculate_cost(model_id, input_tokens, output_tokens, descriptor, family, provider),
    )


__all__ = [
    "ModelPricing",
    "FREE",
    "PRICING",
    "LOCAL_FREE_MODELS",
    "provider_pricing",
    "pricing_for",
    "is_subscription_billing",
    "calculate_cost",
    "format_cost",
    "format_token_count",
    "make_usage_record",
]
