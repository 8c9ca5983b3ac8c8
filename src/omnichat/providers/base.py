"""
Adapter contract and shared HTTP plumbing.

This module provides:
- ProviderAdapter, the protocol every backend adapter implements
- HTTPTransport, the httpx wrapper adapters use for requests and streams
- WireModel, the pydantic base for request and response bodies
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Sequence, Set, runtime_checkable

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict

from ..core.provider_manager.errors import ProviderError, ProviderErrorKind, classify_error, raise_for_status
from ..core.provider_manager.types import (
    AttachmentPayload,
    ChatMessage,
    MessageRole,
    ModelDescriptor,
    ProviderSnapshot,
    RequestOptions,
)
from .streaming import EventStream, ProducerFactory

DEFAULT_TIMEOUT = 60.0
DEFAULT_CONNECT_TIMEOUT = 10.0


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capabilities shared by every backend adapter."""

    snapshot: ProviderSnapshot

    async def fetch_models(self) -> List[ModelDescriptor]:
        ...

    def send_message(
        self,
        messages: Sequence[ChatMessage],
        model: str,
        system_prompt: Optional[str] = None,
        attachments: Sequence[AttachmentPayload] = (),
        options: Optional[RequestOptions] = None,
    ) -> EventStream:
        ...

    async def validate_credentials(self) -> bool:
        ...

    def cancel(self) -> None:
        ...

    async def aclose(self) -> None:
        ...


class WireModel(BaseModel):
    """Base for JSON bodies; unknown response fields are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        """Serialize, omitting every field left as None."""
        return self.model_dump(exclude_none=True, by_alias=True)


class HTTPTransport:
    """
    Thin httpx.AsyncClient wrapper shared by adapters.

    Maps HTTP failures onto ProviderError and keeps track of the event
    streams it opened so an adapter can cancel all of them at once.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ):
        """
        Initialize the transport.

        Args:
            client: Optional shared client. When omitted a client is created
                lazily and closed by ``aclose``.
            timeout: Default read timeout in seconds.
            connect_timeout: Connect timeout in seconds.
        """
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._connect_timeout = connect_timeout
        self._streams: Set[EventStream] = set()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_for(None))
        return self._client

    @property
    def active_stream_count(self) -> int:
        return len(self._streams)

    def timeout_for(self, seconds: Optional[float]) -> httpx.Timeout:
        read = seconds if seconds is not None else self._timeout
        return httpx.Timeout(read, connect=min(self._connect_timeout, read))

    @asynccontextmanager
    async def stream(
        self,
        method: str,
        url: str,
        *,
        headers: Dict[str, str],
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streaming request; non-2xx responses raise ProviderError."""
        logger.debug(f"Starting streaming request to: {url}")
        async with self.client.stream(
            method, url, headers=headers, json=json, timeout=self.timeout_for(timeout)
        ) as response:
            if not response.is_success:
                await response.aread()
                raise_for_status(response)
            logger.debug("Streaming connection established")
            yield response

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Dict[str, str],
        json: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        """
        Send a request and return the successful response.

        Raises:
            ProviderError: For non-2xx statuses and connection failures.
        """
        logger.debug(f"Starting request to: {url}, method: {method}")
        try:
            response = await self.client.request(
                method, url, headers=headers, json=json, timeout=self.timeout_for(timeout)
            )
        except httpx.HTTPError as e:
            raise classify_error(e) from e
        raise_for_status(response)
        logger.debug(f"Request completed successfully, received {len(response.content)} bytes")
        return response

    async def request_json(self, method: str, url: str, **kwargs) -> Any:
        response = await self.request(method, url, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError.invalid_response("Response body is not JSON") from e

    def open_stream(self, producer: ProducerFactory, label: str) -> EventStream:
        stream = EventStream(producer, label=label, on_close=self._streams.discard)
        self._streams.add(stream)
        return stream

    def cancel_all(self) -> None:
        for stream in list(self._streams):
            stream.cancel()
        self._streams.clear()

    async def aclose(self) -> None:
        self.cancel_all()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


def is_unauthorized(error: ProviderError) -> bool:
    return error.kind in (ProviderErrorKind.UNAUTHORIZED, ProviderErrorKind.INVALID_API_KEY)


def attachments_by_message(
    messages: Sequence[ChatMessage], extra: Sequence[AttachmentPayload]
) -> List[List[AttachmentPayload]]:
    """
    Image attachments to send with each message, index-aligned with ``messages``.

    Attachments passed separately from the messages go to the last user
    message, unless that message already carries its own.
    """
    per_message = [message.image_attachments for message in messages]
    extra_images = [a for a in extra if a.is_image]
    if extra_images:
        for index in range(len(messages) - 1, -1, -1):
            if messages[index].role == MessageRole.USER:
                if not per_message[index]:
                    per_message[index] = extra_images
                break
    return per_message


def merge_headers(base: Dict[str, str], custom: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Overlay configured custom headers on an adapter's own headers."""
    headers = dict(base)
    for key, value in (custom or {}).items():
        headers[key] = value
    return headers


__all__ = [
    "DEFAULT_TIMEOUT",
    "DEFAULT_CONNECT_TIMEOUT",
    "ProviderAdapter",
    "WireModel",
    "HTTPTransport",
    "is_unauthorized",
    "attachments_by_message",
    "merge_headers",
]
