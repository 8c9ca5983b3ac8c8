"""
Built-in model lists for backends without (or with unreliable) model listing.
"""

from typing import Dict, List, Optional, Tuple

from ..core.provider_manager.types import ModelDescriptor

ANTHROPIC_MODELS: Tuple[ModelDescriptor, ...] = (
    ModelDescriptor("claude-opus-4-20250514", "Claude Opus 4", 200_000, True, True, 15.0, 75.0),
    ModelDescriptor("claude-sonnet-4-20250514", "Claude Sonnet 4", 200_000, True, True, 3.0, 15.0),
    ModelDescriptor("claude-3-5-sonnet-20241022", "Claude 3.5 Sonnet", 200_000, True, True, 3.0, 15.0),
    ModelDescriptor("claude-3-5-haiku-20241022", "Claude 3.5 Haiku", 200_000, True, True, 0.80, 4.0),
    ModelDescriptor("claude-3-opus-20240229", "Claude 3 Opus", 200_000, True, True, 15.0, 75.0),
    ModelDescriptor("claude-3-haiku-20240307", "Claude 3 Haiku", 200_000, True, True, 0.25, 1.25),
)

# Subscription billed: no per-token prices.
ZHIPU_MODELS: Tuple[ModelDescriptor, ...] = (
    ModelDescriptor("glm-5", "GLM-5", 128_000, True, True),
    ModelDescriptor("glm-4.7", "GLM-4.7", 128_000, True, True),
)

OLLAMA_DEFAULT_MODELS: Tuple[ModelDescriptor, ...] = (
    ModelDescriptor("llama3.2:latest", "Llama 3.2", None, False, True, 0.0, 0.0),
    ModelDescriptor("llama3.1:latest", "Llama 3.1", None, False, True, 0.0, 0.0),
    ModelDescriptor("mistral:latest", "Mistral", None, False, True, 0.0, 0.0),
    ModelDescriptor("codellama:latest", "Code Llama", None, False, True, 0.0, 0.0),
    ModelDescriptor("phi3:latest", "Phi-3", None, False, True, 0.0, 0.0),
    ModelDescriptor("gemma2:latest", "Gemma 2", None, False, True, 0.0, 0.0),
    ModelDescriptor("llava:latest", "LLaVA", None, True, True, 0.0, 0.0),
    ModelDescriptor("llama3.2-vision:latest", "Llama 3.2 Vision", None, True, True, 0.0, 0.0),
)

OLLAMA_VISION_MARKERS: Tuple[str, ...] = ("llava", "bakllava", "moondream", "llama3.2-vision", "minicpm-v")

# Longest matching prefix wins.
OPENAI_CONTEXT_WINDOWS: Dict[str, int] = {
    "gpt-4o": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4-32k": 32_768,
    "gpt-4": 8_192,
    "gpt-3.5-turbo-16k": 16_385,
    "gpt-3.5-turbo": 16_385,
    "o1-mini": 128_000,
    "o1": 200_000,
    "o3": 200_000,
}

OPENAI_DISPLAY_NAMES: Dict[str, str] = {
    "gpt-4o": "GPT-4o",
    "gpt-4o-mini": "GPT-4o Mini",
    "gpt-4-turbo": "GPT-4 Turbo",
    "gpt-4": "GPT-4",
    "gpt-3.5-turbo": "GPT-3.5 Turbo",
    "o1": "o1",
    "o1-mini": "o1 Mini",
    "o1-preview": "o1 Preview",
}


def openai_context_window(model_id: str) -> Optional[int]:
    for prefix in sorted(OPENAI_CONTEXT_WINDOWS, key=len, reverse=True):
        if model_id.startswith(prefix):
            return OPENAI_CONTEXT_WINDOWS[prefix]
    return None


def openai_supports_vision(model_id: str) -> bool:
    return model_id.startswith(("gpt-4o", "gpt-4-turbo", "gpt-4.1", "gpt-5", "o1", "o3"))


def display_name_from_id(model_id: str) -> str:
    """Readable name for ids like 'anthropic/claude-sonnet-4.5' or 'gpt-4o-mini'."""
    if model_id in OPENAI_DISPLAY_NAMES:
        return OPENAI_DISPLAY_NAMES[model_id]
    name = model_id.split("/", 1)[1] if "/" in model_id else model_id
    if "/" in model_id:
        return " ".join(part.capitalize() for part in name.replace("-", " ").split())
    return name


def ollama_supports_vision(model_id: str) -> bool:
    lowered = model_id.lower()
    return any(marker in lowered for marker in OLLAMA_VISION_MARKERS)


def free_first(models: List[ModelDescriptor]) -> List[ModelDescriptor]:
    """Sort free models (':free' suffix, zero input price or the free router) first, then by name."""

    def is_free(model: ModelDescriptor) -> bool:
        return (
            model.id == "openrouter/free"
            or model.id.endswith(":free")
            or model.input_cost_per_million == 0
        )

    return sorted(models, key=lambda m: (not is_free(m), m.id != "openrouter/free", m.display_name.lower()))


__all__ = [
    "ANTHROPIC_MODELS",
    "ZHIPU_MODELS",
    "OLLAMA_DEFAULT_MODELS",
    "OLLAMA_VISION_MARKERS",
    "openai_context_window",
    "openai_supports_vision",
    "display_name_from_id",
    "ollama_supports_vision",
    "free_first",
]
