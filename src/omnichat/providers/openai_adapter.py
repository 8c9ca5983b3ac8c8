"""
OpenAI-compatible chat completions adapter.

One adapter class serves every backend that speaks the chat completions
protocol. Vendor differences (URL paths, attribution headers, model list
shape and filtering) live in a VendorProfile table keyed by BackendFamily.
"""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Literal, Optional, Sequence, Tuple, Union

import httpx
from loguru import logger
from pydantic import ValidationError

from ..core.provider_manager.errors import ProviderError
from ..core.provider_manager.types import (
    AttachmentPayload,
    AuthMethod,
    BackendFamily,
    ChatMessage,
    ModelDescriptor,
    ProviderSnapshot,
    RequestOptions,
    StreamEvent,
)
from .base import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_TIMEOUT,
    HTTPTransport,
    WireModel,
    attachments_by_message,
    is_unauthorized,
    merge_headers,
)
from .catalog import (
    ZHIPU_MODELS,
    display_name_from_id,
    free_first,
    openai_context_window,
    openai_supports_vision,
)
from .streaming import EventStream
from .wire import DEFAULT_MAX_DATA_LENGTH, SSEDecoder

DONE_SENTINEL = "[DONE]"


# -- request bodies ----------------------------------------------------------


class OpenAIImageURL(WireModel):
    url: str


class OpenAITextPart(WireModel):
    type: Literal["text"] = "text"
    text: str


class OpenAIImagePart(WireModel):
    type: Literal["image_url"] = "image_url"
    image_url: OpenAIImageURL


class OpenAIMessage(WireModel):
    role: str
    content: Union[str, List[Union[OpenAITextPart, OpenAIImagePart]]]


class OpenAIStreamOptions(WireModel):
    include_usage: bool = True


class OpenAIRequest(WireModel):
    model: str
    messages: List[OpenAIMessage]
    stream: Optional[bool] = None
    stream_options: Optional[OpenAIStreamOptions] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None


# -- response bodies ---------------------------------------------------------


class _Content(WireModel):
    content: Optional[str] = None


class _Choice(WireModel):
    delta: Optional[_Content] = None
    message: Optional[_Content] = None
    finish_reason: Optional[str] = None


class _Usage(WireModel):
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


class _APIError(WireModel):
    message: Optional[str] = None
    code: Optional[Union[int, str]] = None


class OpenAIChunk(WireModel):
    """A streamed chunk or a complete non-streaming response."""

    model: Optional[str] = None
    choices: List[_Choice] = []
    usage: Optional[_Usage] = None
    error: Optional[_APIError] = None


class _Pricing(WireModel):
    prompt: Optional[Union[str, float]] = None
    completion: Optional[Union[str, float]] = None


class _Architecture(WireModel):
    input_modalities: List[str] = []
    modality: Optional[str] = None


class OpenAIModelEntry(WireModel):
    id: str
    name: Optional[str] = None
    context_length: Optional[int] = None
    architecture: Optional[_Architecture] = None
    pricing: Optional[_Pricing] = None


class OpenAIModelList(WireModel):
    data: List[OpenAIModelEntry] = []


def _error_event(error: _APIError) -> StreamEvent:
    code = error.code
    if isinstance(code, str):
        code = int(code) if code.isdigit() else None
    return StreamEvent.failed(ProviderError.provider_error(error.message or "Unknown API error", code))


class OpenAIStreamParser:
    """
    Stateful mapper from chat completion chunks to stream events.

    The model name is reported once even though every chunk repeats it.
    """

    def __init__(self):
        self._model_reported = False

    def parse(self, data: str) -> List[StreamEvent]:
        if data.strip() == DONE_SENTINEL:
            return [StreamEvent.done()]
        try:
            chunk = OpenAIChunk.model_validate_json(data)
        except ValidationError as e:
            logger.debug(f"Skipping unparseable chat completion chunk: {e.error_count()} errors")
            return []
        return self.events_for(chunk, streaming=True)

    def events_for(self, chunk: OpenAIChunk, streaming: bool) -> List[StreamEvent]:
        if chunk.error is not None:
            return [_error_event(chunk.error)]

        events: List[StreamEvent] = []
        if chunk.model and not self._model_reported:
            self._model_reported = True
            events.append(StreamEvent.model_used(chunk.model))
        if chunk.choices:
            choice = chunk.choices[0]
            part = choice.delta if streaming else choice.message
            if part is not None and part.content:
                events.append(StreamEvent.text_delta(part.content))
        if chunk.usage is not None:
            if chunk.usage.prompt_tokens is not None:
                events.append(StreamEvent.input_tokens(chunk.usage.prompt_tokens))
            if chunk.usage.completion_tokens is not None:
                events.append(StreamEvent.output_tokens(chunk.usage.completion_tokens))
        return events


def parse_openai_completion(payload: Any) -> List[StreamEvent]:
    """Map a non-streaming chat completion onto the event sequence a stream would give."""
    try:
        chunk = OpenAIChunk.model_validate(payload)
    except ValidationError as e:
        raise ProviderError.invalid_response("Unexpected completion format") from e
    events = OpenAIStreamParser().events_for(chunk, streaming=False)
    if not (events and events[-1].is_terminal):
        events.append(StreamEvent.done())
    return events


def build_openai_request(
    messages: Sequence[ChatMessage],
    model: str,
    system_prompt: Optional[str] = None,
    attachments: Sequence[AttachmentPayload] = (),
    options: Optional[RequestOptions] = None,
    include_usage: bool = False,
) -> OpenAIRequest:
    """
    Build a chat completions body; the system prompt goes first.

    ``stream_options`` is only sent for streaming requests with
    ``include_usage`` set.
    """
    options = options or RequestOptions()
    images = attachments_by_message(messages, attachments)

    wire_messages: List[OpenAIMessage] = []
    if system_prompt:
        wire_messages.append(OpenAIMessage(role="system", content=system_prompt))
    for message, message_images in zip(messages, images):
        if message_images:
            parts: List[Union[OpenAITextPart, OpenAIImagePart]] = []
            if message.content:
                parts.append(OpenAITextPart(text=message.content))
            for image in message_images:
                parts.append(OpenAIImagePart(image_url=OpenAIImageURL(url=image.data_url)))
            wire_messages.append(OpenAIMessage(role=message.role.value, content=parts))
        else:
            wire_messages.append(OpenAIMessage(role=message.role.value, content=message.content))

    return OpenAIRequest(
        model=model,
        messages=wire_messages,
        stream=options.stream,
        stream_options=OpenAIStreamOptions() if options.stream and include_usage else None,
        temperature=options.temperature,
        max_tokens=options.max_tokens,
        top_p=options.top_p,
    )


# -- vendor profiles ---------------------------------------------------------


def _per_million(value: Optional[Union[str, float]]) -> Optional[float]:
    if value is None:
        return None
    try:
        per_token = float(value)
    except (TypeError, ValueError):
        return None
    if per_token < 0:
        # OpenRouter marks variable-priced routers with -1
        return None
    return per_token * 1_000_000


def parse_basic_models(entries: Sequence[OpenAIModelEntry]) -> List[ModelDescriptor]:
    return [
        ModelDescriptor(
            id=entry.id,
            display_name=entry.name or display_name_from_id(entry.id),
            context_window=entry.context_length or openai_context_window(entry.id),
            supports_vision=openai_supports_vision(entry.id),
        )
        for entry in entries
    ]


def parse_gateway_models(entries: Sequence[OpenAIModelEntry]) -> List[ModelDescriptor]:
    """Models from gateways listing context length, modalities and per-token pricing."""
    models = []
    for entry in entries:
        architecture = entry.architecture or _Architecture()
        vision = "image" in architecture.input_modalities or "image" in (architecture.modality or "")
        pricing = entry.pricing or _Pricing()
        models.append(
            ModelDescriptor(
                id=entry.id,
                display_name=entry.name or display_name_from_id(entry.id),
                context_window=entry.context_length,
                supports_vision=vision,
                input_cost_per_million=_per_million(pricing.prompt),
                output_cost_per_million=_per_million(pricing.completion),
            )
        )
    return models


def is_openai_chat_model(model_id: str) -> bool:
    return any(marker in model_id for marker in ("gpt", "o1", "o3", "chat"))


@dataclass(frozen=True)
class VendorProfile:
    """Per-vendor differences of the chat completions protocol."""

    chat_path: str = "/chat/completions"
    models_path: Optional[str] = "/models"
    model_filter: Optional[Callable[[str], bool]] = None
    model_parser: Callable[[Sequence[OpenAIModelEntry]], List[ModelDescriptor]] = parse_basic_models
    known_models: Tuple[ModelDescriptor, ...] = ()
    attribution_headers: bool = False
    # Accepts stream_options.include_usage for a trailing usage chunk
    stream_usage: bool = False


_VERSIONED = VendorProfile()
_ZHIPU = VendorProfile(models_path=None, known_models=ZHIPU_MODELS)

VENDOR_PROFILES: Dict[BackendFamily, VendorProfile] = {
    BackendFamily.OPENAI: VendorProfile(
        chat_path="/v1/chat/completions", models_path="/v1/models", model_filter=is_openai_chat_model,
        stream_usage=True,
    ),
    BackendFamily.GROQ: VendorProfile(chat_path="/v1/chat/completions", models_path="/v1/models"),
    BackendFamily.ZHIPU: _ZHIPU,
    BackendFamily.ZHIPU_CODING: _ZHIPU,
    BackendFamily.CEREBRAS: _VERSIONED,
    BackendFamily.MISTRAL: _VERSIONED,
    BackendFamily.DEEPSEEK: VendorProfile(stream_usage=True),
    BackendFamily.TOGETHER: _VERSIONED,
    BackendFamily.FIREWORKS: _VERSIONED,
    BackendFamily.OPENROUTER: VendorProfile(
        model_parser=parse_gateway_models, attribution_headers=True, stream_usage=True
    ),
    BackendFamily.SILICONFLOW: _VERSIONED,
    BackendFamily.XAI: _VERSIONED,
    BackendFamily.PERPLEXITY: VendorProfile(
        models_path=None,
        known_models=(
            ModelDescriptor("sonar", "Sonar", 128_000),
            ModelDescriptor("sonar-pro", "Sonar Pro", 200_000),
        ),
    ),
    BackendFamily.GOOGLE: _VERSIONED,
    BackendFamily.KILO: VendorProfile(model_parser=parse_gateway_models),
}


def profile_for(family: BackendFamily) -> VendorProfile:
    try:
        return VENDOR_PROFILES[family]
    except KeyError:
        raise ProviderError.not_supported(f"Backend family '{family.value}'") from None


class OpenAICompatibleAdapter:
    """Adapter for any chat completions endpoint described by a VendorProfile."""

    def __init__(
        self,
        snapshot: ProviderSnapshot,
        api_key: str = "",
        *,
        profile: Optional[VendorProfile] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_data_length: int = DEFAULT_MAX_DATA_LENGTH,
        app_referer: Optional[str] = None,
        app_title: Optional[str] = None,
    ):
        self.snapshot = snapshot
        self.profile = profile or profile_for(snapshot.family)
        self._api_key = api_key
        self._max_data_length = max_data_length
        self._app_referer = app_referer
        self._app_title = app_title
        self._http = HTTPTransport(client, timeout=timeout, connect_timeout=connect_timeout)

    @property
    def base_url(self) -> str:
        base = self.snapshot.base_url or self.snapshot.family.default_base_url
        if not base:
            raise ProviderError.invalid_response("No base URL configured")
        return base

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}{self.profile.chat_path}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key and self.snapshot.auth_method is not AuthMethod.NONE:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self.profile.attribution_headers:
            if self._app_referer:
                headers["HTTP-Referer"] = self._app_referer
            if self._app_title:
                headers["X-Title"] = self._app_title
        return merge_headers(headers, self.snapshot.custom_headers)

    def _fallback_models(self) -> List[ModelDescriptor]:
        return list(self.snapshot.models) or list(self.profile.known_models)

    async def fetch_models(self) -> List[ModelDescriptor]:
        """
        List the models the endpoint offers.

        Vendors without a listing endpoint return the configured or
        built-in models. Free models are sorted first, then by name.

        Raises:
            ProviderError: If the listing request fails.
        """
        if self.profile.models_path is None:
            return self._fallback_models()

        url = f"{self.base_url}{self.profile.models_path}"
        payload = await self._http.request_json("GET", url, headers=self._headers())
        try:
            listing = OpenAIModelList.model_validate(payload)
        except ValidationError as e:
            raise ProviderError.invalid_response("Unexpected model list format") from e

        entries = listing.data
        if self.profile.model_filter is not None:
            entries = [entry for entry in entries if self.profile.model_filter(entry.id)]
        models = free_first(self.profile.model_parser(entries))
        logger.info(f"Fetched {len(models)} models from {self.snapshot.name}")
        return models

    def send_message(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        system_prompt: Optional[str] = None,
        attachments: Sequence[AttachmentPayload] = (),
        options: Optional[RequestOptions] = None,
    ) -> EventStream:
        options = options or RequestOptions()
        request = build_openai_request(
            messages, model, system_prompt, attachments, options, include_usage=self.profile.stream_usage
        )
        logger.debug(f"Chat completion request to {self.snapshot.name}: model={model}")
        return self._http.open_stream(
            lambda: self._produce(request, options.timeout), label=f"{self.snapshot.name} chat"
        )

    async def _produce(self, request: OpenAIRequest, timeout: Optional[float]) -> AsyncIterator[StreamEvent]:
        if self.snapshot.auth_method is not AuthMethod.NONE and not self._api_key:
            yield StreamEvent.failed(ProviderError.invalid_api_key())
            return

        if not request.stream:
            payload = await self._http.request_json(
                "POST", self.chat_url, headers=self._headers(), json=request.to_payload(), timeout=timeout
            )
            for event in parse_openai_completion(payload):
                yield event
            return

        parser = OpenAIStreamParser()
        decoder = SSEDecoder(self._max_data_length)
        async with self._http.stream(
            "POST", self.chat_url, headers=self._headers(), json=request.to_payload(), timeout=timeout
        ) as response:
            async for data in decoder.decode_data(response.aiter_bytes()):
                for event in parser.parse(data):
                    yield event
                    if event.is_terminal:
                        return

    async def validate_credentials(self) -> bool:
        """
        Check the key with one authenticated request.

        Uses the model listing endpoint when the vendor has one, otherwise a
        one-token completion.
        """
        if self.snapshot.auth_method is not AuthMethod.NONE and not self._api_key:
            return False
        try:
            if self.profile.models_path is not None:
                url = f"{self.base_url}{self.profile.models_path}"
                await self._http.request("GET", url, headers=self._headers())
            else:
                model = self.snapshot.default_model
                fallback = self._fallback_models()
                model_id = model.id if model else (fallback[0].id if fallback else "")
                request = OpenAIRequest(
                    model=model_id,
                    messages=[OpenAIMessage(role="user", content="Hi")],
                    max_tokens=1,
                )
                await self._http.request("POST", self.chat_url, headers=self._headers(), json=request.to_payload())
        except ProviderError as e:
            if is_unauthorized(e):
                logger.warning(f"Credential validation failed for {self.snapshot.name}")
                return False
            raise
        return True

    def cancel(self) -> None:
        self._http.cancel_all()

    async def aclose(self) -> None:
        await self._http.aclose()


__all__ = [
    "DONE_SENTINEL",
    "OpenAIRequest",
    "OpenAIStreamParser",
    "VendorProfile",
    "VENDOR_PROFILES",
    "profile_for",
    "build_openai_request",
    "parse_openai_completion",
    "parse_basic_models",
    "parse_gateway_models",
    "is_openai_chat_model",
    "OpenAICompatibleAdapter",
]
