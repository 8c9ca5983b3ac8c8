"""
Ollama local server adapter (``/api/chat`` with NDJSON streaming).
"""

from typing import Any, AsyncIterator, List, Optional, Sequence

import httpx
from loguru import logger
from pydantic import ValidationError

from ..core.provider_manager.errors import ProviderError
from ..core.provider_manager.types import (
    AttachmentPayload,
    BackendFamily,
    ChatMessage,
    ModelDescriptor,
    ProviderSnapshot,
    RequestOptions,
    StreamEvent,
)
from .base import DEFAULT_CONNECT_TIMEOUT, DEFAULT_TIMEOUT, HTTPTransport, WireModel, attachments_by_message, merge_headers
from .catalog import OLLAMA_DEFAULT_MODELS, ollama_supports_vision
from .streaming import EventStream
from .wire import DEFAULT_MAX_DATA_LENGTH, NDJSONDecoder


class OllamaMessage(WireModel):
    role: str
    content: str
    images: Optional[List[str]] = None


class OllamaOptions(WireModel):
    num_predict: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None


class OllamaRequest(WireModel):
    model: str
    messages: List[OllamaMessage]
    stream: bool = True
    options: Optional[OllamaOptions] = None


class _RecordMessage(WireModel):
    content: Optional[str] = None


class OllamaRecord(WireModel):
    model: Optional[str] = None
    message: Optional[_RecordMessage] = None
    done: bool = False
    prompt_eval_count: Optional[int] = None
    eval_count: Optional[int] = None
    total_duration: Optional[int] = None
    error: Optional[str] = None


class _TagEntry(WireModel):
    name: str


class OllamaTags(WireModel):
    models: List[_TagEntry] = []


def build_ollama_request(
    messages: Sequence[ChatMessage],
    model: str,
    system_prompt: Optional[str] = None,
    attachments: Sequence[AttachmentPayload] = (),
    options: Optional[RequestOptions] = None,
) -> OllamaRequest:
    options = options or RequestOptions()
    images = attachments_by_message(messages, attachments)

    wire_messages: List[OllamaMessage] = []
    if system_prompt:
        wire_messages.append(OllamaMessage(role="system", content=system_prompt))
    for message, message_images in zip(messages, images):
        wire_messages.append(
            OllamaMessage(
                role=message.role.value,
                content=message.content,
                images=[image.base64_data for image in message_images] or None,
            )
        )

    generation = OllamaOptions(num_predict=options.max_tokens, temperature=options.temperature, top_p=options.top_p)
    return OllamaRequest(
        model=model,
        messages=wire_messages,
        stream=options.stream,
        options=generation if generation.to_payload() else None,
    )


class OllamaRecordParser:
    """Maps NDJSON generation records to stream events; the model is reported once."""

    def __init__(self):
        self._model_reported = False

    def parse(self, payload: Any) -> List[StreamEvent]:
        try:
            record = OllamaRecord.model_validate(payload)
        except ValidationError as e:
            logger.debug(f"Skipping unexpected Ollama record: {e.error_count()} errors")
            return []

        if record.error:
            return [StreamEvent.failed(ProviderError.provider_error(record.error))]

        events: List[StreamEvent] = []
        if record.model and not self._model_reported:
            self._model_reported = True
            events.append(StreamEvent.model_used(record.model))
        if record.message is not None and record.message.content:
            events.append(StreamEvent.text_delta(record.message.content))
        if record.done:
            if record.prompt_eval_count is not None:
                events.append(StreamEvent.input_tokens(record.prompt_eval_count))
            if record.eval_count is not None:
                events.append(StreamEvent.output_tokens(record.eval_count))
            if record.total_duration is not None:
                logger.debug(f"Ollama generation took {record.total_duration / 1e9:.2f}s")
            events.append(StreamEvent.done())
        return events


class OllamaAdapter:
    """Adapter for a local Ollama server. No authentication is sent."""

    def __init__(
        self,
        snapshot: ProviderSnapshot,
        api_key: str = "",
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_data_length: int = DEFAULT_MAX_DATA_LENGTH,
    ):
        self.snapshot = snapshot
        self._max_data_length = max_data_length
        self._http = HTTPTransport(client, timeout=timeout, connect_timeout=connect_timeout)

    @property
    def base_url(self) -> str:
        return self.snapshot.base_url or BackendFamily.OLLAMA.default_base_url

    def _headers(self):
        return merge_headers({"Content-Type": "application/json"}, self.snapshot.custom_headers)

    async def fetch_models(self) -> List[ModelDescriptor]:
        """Installed models from ``/api/tags``; the default list when the server cannot be reached."""
        try:
            payload = await self._http.request_json("GET", f"{self.base_url}/api/tags", headers=self._headers())
            tags = OllamaTags.model_validate(payload)
        except (ProviderError, ValidationError) as e:
            logger.warning(f"Could not list Ollama models, using defaults: {e}")
            return list(OLLAMA_DEFAULT_MODELS)

        models = [
            ModelDescriptor(
                id=tag.name,
                display_name=tag.name,
                supports_vision=ollama_supports_vision(tag.name),
                input_cost_per_million=0.0,
                output_cost_per_million=0.0,
            )
            for tag in tags.models
        ]
        logger.info(f"Found {len(models)} local Ollama models")
        return models or list(OLLAMA_DEFAULT_MODELS)

    def send_message(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        system_prompt: Optional[str] = None,
        attachments: Sequence[AttachmentPayload] = (),
        options: Optional[RequestOptions] = None,
    ) -> EventStream:
        options = options or RequestOptions()
        request = build_ollama_request(messages, model, system_prompt, attachments, options)
        return self._http.open_stream(
            lambda: self._produce(request, options.timeout), label=f"{self.snapshot.name} chat"
        )

    async def _produce(self, request: OllamaRequest, timeout: Optional[float]) -> AsyncIterator[StreamEvent]:
        url = f"{self.base_url}/api/chat"
        parser = OllamaRecordParser()

        if not request.stream:
            payload = await self._http.request_json(
                "POST", url, headers=self._headers(), json=request.to_payload(), timeout=timeout
            )
            for event in parser.parse(payload):
                yield event
            return

        decoder = NDJSONDecoder(self._max_data_length)
        async with self._http.stream(
            "POST", url, headers=self._headers(), json=request.to_payload(), timeout=timeout
        ) as response:
            async for record in decoder.decode(response.aiter_bytes()):
                for event in parser.parse(record):
                    yield event
                    if event.is_terminal:
                        return

    async def validate_credentials(self) -> bool:
        """True when the server answers ``/api/tags``."""
        try:
            await self._http.request("GET", f"{self.base_url}/api/tags", headers=self._headers())
        except ProviderError as e:
            logger.warning(f"Ollama server at {self.base_url} is not reachable: {e}")
            return False
        return True

    def cancel(self) -> None:
        self._http.cancel_all()

    async def aclose(self) -> None:
        await self._http.aclose()


__all__ = ["OllamaAdapter", "OllamaRequest", "OllamaRecordParser", "build_ollama_request"]
