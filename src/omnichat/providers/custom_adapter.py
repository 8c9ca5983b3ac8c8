"""
Adapter for user-defined endpoints.

Everything about the request is taken from the provider configuration:
base URL and path, auth header name and prefix, the request/response
format (OpenAI or Anthropic shaped) and the streaming wire format.
"""

from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx
from loguru import logger
from pydantic import ValidationError

from ..core.provider_manager.errors import ProviderError
from ..core.provider_manager.types import (
    APIFormat,
    AttachmentPayload,
    AuthMethod,
    ChatMessage,
    ModelDescriptor,
    ProviderSnapshot,
    RequestOptions,
    StreamEvent,
    StreamingFormat,
)
from .anthropic_adapter import (
    ANTHROPIC_VERSION,
    DEFAULT_MAX_TOKENS,
    build_anthropic_request,
    parse_anthropic_event,
    parse_anthropic_message,
)
from .base import DEFAULT_CONNECT_TIMEOUT, DEFAULT_TIMEOUT, HTTPTransport, WireModel, is_unauthorized, merge_headers
from .ollama_adapter import OllamaRecordParser
from .openai_adapter import OpenAIChunk, OpenAIStreamParser, build_openai_request, parse_openai_completion
from .streaming import EventStream
from .wire import DEFAULT_MAX_DATA_LENGTH, NDJSONDecoder, SSEDecoder

DEFAULT_MODEL = ModelDescriptor("default", "Default")


class _NDJSONChunkParser:
    """OpenAI-shaped chunks delivered one per line instead of as SSE."""

    def __init__(self):
        self._parser = OpenAIStreamParser()

    def parse(self, record: Any) -> List[StreamEvent]:
        try:
            chunk = OpenAIChunk.model_validate(record)
        except ValidationError as e:
            logger.debug(f"Skipping unexpected NDJSON chunk: {e.error_count()} errors")
            return []
        return self._parser.events_for(chunk, streaming=True)


class CustomAdapter:
    """Configuration-driven adapter; the fallback for endpoints no other family matches."""

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
    def endpoint_url(self) -> str:
        if not self.snapshot.base_url:
            raise ProviderError.invalid_response("No base URL configured")
        return f"{self.snapshot.base_url}{self.snapshot.api_path}"

    @property
    def _is_anthropic(self) -> bool:
        return self.snapshot.api_format is APIFormat.ANTHROPIC

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._is_anthropic:
            headers["anthropic-version"] = ANTHROPIC_VERSION
        if self.snapshot.auth_method is not AuthMethod.NONE and self._api_key:
            header = self.snapshot.api_key_header or ("x-api-key" if self._is_anthropic else "Authorization")
            prefix = self.snapshot.api_key_prefix
            if prefix is None:
                prefix = "" if self._is_anthropic else "Bearer "
            headers[header] = f"{prefix}{self._api_key}"
        return merge_headers(headers, self.snapshot.custom_headers)

    def _build_payload(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        system_prompt: Optional[str],
        attachments: Sequence[AttachmentPayload],
        options: RequestOptions,
    ) -> WireModel:
        if self._is_anthropic:
            return build_anthropic_request(messages, model, system_prompt, attachments, options, self._max_tokens)
        return build_openai_request(messages, model, system_prompt, attachments, options)

    async def fetch_models(self) -> List[ModelDescriptor]:
        return list(self.snapshot.models) or [DEFAULT_MODEL]

    def send_message(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        system_prompt: Optional[str] = None,
        attachments: Sequence[AttachmentPayload] = (),
        options: Optional[RequestOptions] = None,
    ) -> EventStream:
        options = options or RequestOptions()
        streaming = options.stream and self.snapshot.streaming_format.supports_streaming
        options = replace(options, stream=streaming)
        request = self._build_payload(messages, model, system_prompt, attachments, options)
        return self._http.open_stream(
            lambda: self._produce(request, streaming, options.timeout), label=f"{self.snapshot.name} custom"
        )

    async def _produce(
        self, request: WireModel, streaming: bool, timeout: Optional[float]
    ) -> AsyncIterator[StreamEvent]:
        url = self.endpoint_url
        if not streaming:
            payload = await self._http.request_json(
                "POST", url, headers=self._headers(), json=request.to_payload(), timeout=timeout
            )
            events = parse_anthropic_message(payload) if self._is_anthropic else parse_openai_completion(payload)
            for event in events:
                yield event
            return

        async with self._http.stream(
            "POST", url, headers=self._headers(), json=request.to_payload(), timeout=timeout
        ) as response:
            async for event in self._decode(response):
                yield event
                if event.is_terminal:
                    return

    async def _decode(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        if self.snapshot.streaming_format is StreamingFormat.NDJSON:
            parser = OllamaRecordParser() if self._is_anthropic else _NDJSONChunkParser()
            async for record in NDJSONDecoder(self._max_data_length).decode(response.aiter_bytes()):
                for event in parser.parse(record):
                    yield event
            return

        openai_parser = OpenAIStreamParser()
        async for data in SSEDecoder(self._max_data_length).decode_data(response.aiter_bytes()):
            events = parse_anthropic_event(data) if self._is_anthropic else openai_parser.parse(data)
            for event in events:
                yield event

    async def validate_credentials(self) -> bool:
        """
        True without auth; otherwise sends a minimal non-streaming request.

        Raises:
            ProviderError: For failures other than rejected credentials.
        """
        if self.snapshot.auth_method is AuthMethod.NONE:
            return True
        if not self._api_key:
            return False
        model = self.snapshot.default_model or DEFAULT_MODEL
        options = RequestOptions(max_tokens=1, stream=False)
        request = self._build_payload([ChatMessage("user", "Hi")], model.id, None, (), options)
        try:
            await self._http.request("POST", self.endpoint_url, headers=self._headers(), json=request.to_payload())
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


__all__ = ["CustomAdapter", "DEFAULT_MODEL"]
