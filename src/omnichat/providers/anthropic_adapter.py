"""
Anthropic Messages API adapter.

This module contains:
- Typed request bodies for ``POST /v1/messages``
- parse_anthropic_event / parse_anthropic_message, shared with the custom
  adapter for endpoints speaking the Anthropic format
- AnthropicAdapter, used by the anthropic and zhipu_anthropic families
"""

from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Sequence, Union

import httpx
from loguru import logger
from pydantic import ValidationError

from ..core.provider_manager.errors import ProviderError
from ..core.provider_manager.types import (
    AttachmentPayload,
    AuthMethod,
    BackendFamily,
    ChatMessage,
    MessageRole,
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
from .catalog import ANTHROPIC_MODELS, ZHIPU_MODELS
from .streaming import EventStream
from .wire import DEFAULT_MAX_DATA_LENGTH, SSEDecoder

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096
VALIDATION_MODEL = "claude-3-haiku-20240307"


# -- request bodies ----------------------------------------------------------


class AnthropicTextBlock(WireModel):
    type: Literal["text"] = "text"
    text: str


class AnthropicImageSource(WireModel):
    type: Literal["base64"] = "base64"
    media_type: str
    data: str


class AnthropicImageBlock(WireModel):
    type: Literal["image"] = "image"
    source: AnthropicImageSource


class AnthropicMessage(WireModel):
    role: Literal["user", "assistant"]
    content: List[Union[AnthropicTextBlock, AnthropicImageBlock]]


class AnthropicRequest(WireModel):
    model: str
    max_tokens: int
    messages: List[AnthropicMessage]
    system: Optional[str] = None
    stream: Optional[bool] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None


# -- response bodies ---------------------------------------------------------


class _Usage(WireModel):
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None


class _MessageInfo(WireModel):
    model: Optional[str] = None
    usage: Optional[_Usage] = None


class _Delta(WireModel):
    type: Optional[str] = None
    text: Optional[str] = None


class _ErrorBody(WireModel):
    type: Optional[str] = None
    message: Optional[str] = None


class AnthropicStreamEvent(WireModel):
    type: str
    message: Optional[_MessageInfo] = None
    delta: Optional[_Delta] = None
    usage: Optional[_Usage] = None
    error: Optional[_ErrorBody] = None


class _ContentBlock(WireModel):
    type: str
    text: Optional[str] = None


class AnthropicResponse(WireModel):
    type: Optional[str] = None
    model: Optional[str] = None
    content: List[_ContentBlock] = []
    usage: Optional[_Usage] = None
    error: Optional[_ErrorBody] = None


def _content_blocks(
    text: str, images: Sequence[AttachmentPayload]
) -> List[Union[AnthropicTextBlock, AnthropicImageBlock]]:
    blocks: List[Union[AnthropicTextBlock, AnthropicImageBlock]] = []
    if text.strip():
        blocks.append(AnthropicTextBlock(text=text))
    for image in images:
        blocks.append(
            AnthropicImageBlock(source=AnthropicImageSource(media_type=image.mime_type, data=image.base64_data))
        )
    return blocks


def build_anthropic_request(
    messages: Sequence[ChatMessage],
    model: str,
    system_prompt: Optional[str] = None,
    attachments: Sequence[AttachmentPayload] = (),
    options: Optional[RequestOptions] = None,
    default_max_tokens: int = DEFAULT_MAX_TOKENS,
) -> AnthropicRequest:
    """
    Build a Messages API body.

    System-role messages are folded into the top-level ``system`` field
    after the explicit system prompt; the field is omitted when empty.
    Messages with neither text nor images are left out.
    """
    options = options or RequestOptions()
    images = attachments_by_message(messages, attachments)

    system_parts = [system_prompt] if system_prompt else []
    wire_messages: List[AnthropicMessage] = []
    for message, message_images in zip(messages, images):
        if message.role == MessageRole.SYSTEM:
            if message.content:
                system_parts.append(message.content)
            continue
        blocks = _content_blocks(message.content, message_images)
        if not blocks:
            # Blank text blocks are rejected by the API
            logger.debug(f"Skipping empty {message.role.value} message")
            continue
        wire_messages.append(AnthropicMessage(role=message.role.value, content=blocks))

    return AnthropicRequest(
        model=model,
        max_tokens=options.max_tokens or default_max_tokens,
        messages=wire_messages,
        system="\n\n".join(system_parts) or None,
        stream=options.stream,
        temperature=options.temperature,
        top_p=options.top_p,
    )


def parse_anthropic_event(data: str) -> List[StreamEvent]:
    """Map one SSE data payload of a Messages stream onto stream events."""
    try:
        event = AnthropicStreamEvent.model_validate_json(data)
    except ValidationError as e:
        logger.debug(f"Skipping unparseable Anthropic stream event: {e.error_count()} errors")
        return []

    if event.type == "message_start" and event.message is not None:
        events = []
        if event.message.model:
            events.append(StreamEvent.model_used(event.message.model))
        usage = event.message.usage
        if usage is not None and usage.input_tokens is not None:
            events.append(StreamEvent.input_tokens(usage.input_tokens))
        return events
    if event.type == "content_block_delta" and event.delta is not None:
        if event.delta.type == "text_delta" and event.delta.text:
            return [StreamEvent.text_delta(event.delta.text)]
        return []
    if event.type == "message_delta":
        if event.usage is not None and event.usage.output_tokens is not None:
            return [StreamEvent.output_tokens(event.usage.output_tokens)]
        return []
    if event.type == "message_stop":
        return [StreamEvent.done()]
    if event.type == "error":
        message = event.error.message if event.error and event.error.message else "Unknown API error"
        return [StreamEvent.failed(ProviderError.provider_error(message))]
    # ping, content_block_start, content_block_stop
    return []


def parse_anthropic_message(payload: Any) -> List[StreamEvent]:
    """Map a non-streaming Messages response onto the same event sequence a stream would give."""
    try:
        response = AnthropicResponse.model_validate(payload)
    except ValidationError as e:
        raise ProviderError.invalid_response("Unexpected message format") from e

    if response.type == "error" or response.error is not None:
        message = response.error.message if response.error and response.error.message else "Unknown API error"
        return [StreamEvent.failed(ProviderError.provider_error(message))]

    events: List[StreamEvent] = []
    if response.model:
        events.append(StreamEvent.model_used(response.model))
    text = "".join(block.text or "" for block in response.content if block.type == "text")
    if text:
        events.append(StreamEvent.text_delta(text))
    if response.usage is not None:
        if response.usage.input_tokens is not None:
            events.append(StreamEvent.input_tokens(response.usage.input_tokens))
        if response.usage.output_tokens is not None:
            events.append(StreamEvent.output_tokens(response.usage.output_tokens))
    events.append(StreamEvent.done())
    return events


class AnthropicAdapter:
    """
    Adapter for the Anthropic Messages API and Anthropic-compatible gateways.

    Streams are decoded from SSE; ``options.stream = False`` issues a plain
    JSON request and replays it as the same event sequence.
    """

    def __init__(
        self,
        snapshot: ProviderSnapshot,
        api_key: str = "",
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        max_data_length: int = DEFAULT_MAX_DATA_LENGTH,
    ):
        self.snapshot = snapshot
        self._api_key = api_key
        self._max_tokens = max_tokens
        self._max_data_length = max_data_length
        self._http = HTTPTransport(client, timeout=timeout, connect_timeout=connect_timeout)

    @property
    def messages_url(self) -> str:
        base = self.snapshot.base_url or BackendFamily.ANTHROPIC.default_base_url
        return f"{base}/v1/messages"

    def _headers(self) -> Dict[str, str]:
        headers = {
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        if self._api_key:
            if self.snapshot.auth_method in (AuthMethod.OAUTH, AuthMethod.BEARER):
                headers["Authorization"] = f"Bearer {self._api_key}"
            else:
                headers["x-api-key"] = self._api_key
        return merge_headers(headers, self.snapshot.custom_headers)

    def _requires_key(self) -> bool:
        return self.snapshot.auth_method is not AuthMethod.NONE

    def _known_models(self) -> Sequence[ModelDescriptor]:
        if self.snapshot.family is BackendFamily.ZHIPU_ANTHROPIC:
            return ZHIPU_MODELS
        return ANTHROPIC_MODELS

    async def fetch_models(self) -> List[ModelDescriptor]:
        """Configured models, else the built-in list. The API has no listing endpoint we rely on."""
        if self.snapshot.models:
            return list(self.snapshot.models)
        return list(self._known_models())

    def send_message(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        system_prompt: Optional[str] = None,
        attachments: Sequence[AttachmentPayload] = (),
        options: Optional[RequestOptions] = None,
    ) -> EventStream:
        options = options or RequestOptions()
        request = build_anthropic_request(messages, model, system_prompt, attachments, options, self._max_tokens)
        logger.debug(f"Anthropic request to {self.snapshot.name}: model={model}, messages={len(request.messages)}")
        return self._http.open_stream(
            lambda: self._produce(request, options.timeout), label=f"{self.snapshot.name} messages"
        )

    async def _produce(self, request: AnthropicRequest, timeout: Optional[float]) -> AsyncIterator[StreamEvent]:
        if self._requires_key() and not self._api_key:
            yield StreamEvent.failed(ProviderError.invalid_api_key())
            return

        if not request.stream:
            payload = await self._http.request_json(
                "POST", self.messages_url, headers=self._headers(), json=request.to_payload(), timeout=timeout
            )
            for event in parse_anthropic_message(payload):
                yield event
            return

        decoder = SSEDecoder(self._max_data_length)
        async with self._http.stream(
            "POST", self.messages_url, headers=self._headers(), json=request.to_payload(), timeout=timeout
        ) as response:
            async for data in decoder.decode_data(response.aiter_bytes()):
                for event in parse_anthropic_event(data):
                    yield event
                    if event.is_terminal:
                        return

    async def validate_credentials(self) -> bool:
        """
        Send a one-token request.

        Returns:
            False for a missing key or a 401/403 answer, True on success.

        Raises:
            ProviderError: For failures other than rejected credentials.
        """
        if self._requires_key() and not self._api_key:
            return False
        if self.snapshot.family is BackendFamily.ZHIPU_ANTHROPIC:
            model = self.snapshot.default_model_id or ZHIPU_MODELS[0].id
        else:
            model = VALIDATION_MODEL
        request = AnthropicRequest(
            model=model,
            max_tokens=1,
            messages=[AnthropicMessage(role="user", content=[AnthropicTextBlock(text="Hi")])],
        )
        try:
            await self._http.request("POST", self.messages_url, headers=self._headers(), json=request.to_payload())
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
    "ANTHROPIC_VERSION",
    "AnthropicAdapter",
    "AnthropicRequest",
    "build_anthropic_request",
    "parse_anthropic_event",
    "parse_anthropic_message",
]
