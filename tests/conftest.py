"""
Pytest configuration for the OmniChat test suite.

This file provides common fixtures for all tests.
"""

import json
import logging

import httpx
import pytest
from loguru import logger

from omnichat.core.config import Settings
from omnichat.core.credentials import InMemoryCredentialStore
from omnichat.core.provider_manager.types import BackendFamily, ProviderConfiguration


@pytest.fixture
def loguru_caplog(caplog):
    """Fixture to bridge loguru to pytest caplog with proper cleanup."""
    # Remove all handlers to avoid duplicate logs or side effects
    logger.remove()

    # Add caplog handler
    handler_id = logger.add(caplog.handler, format="{message}")
    caplog.set_level(logging.DEBUG)

    yield caplog

    # Cleanup: remove caplog handler
    try:
        logger.remove(handler_id)
    except ValueError:
        # Handler already removed
        pass


# ============================================================================
# HTTP helpers
# ============================================================================


def sse_body(*payloads, crlf=False):
    """Encode payloads (dicts or raw strings) as an SSE response body."""
    newline = "\r\n" if crlf else "\n"
    parts = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        parts.append(f"data: {data}{newline}{newline}")
    return "".join(parts).encode("utf-8")


def ndjson_body(*records):
    return "".join(json.dumps(record) + "\n" for record in records).encode("utf-8")


class RecordingTransport:
    """Collects requests and answers each with the handler's response."""

    def __init__(self, handler):
        self.requests = []
        self._handler = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]

    @property
    def last_json(self):
        return json.loads(self.last_request.content)


@pytest.fixture
def make_client():
    """Build an httpx.AsyncClient answering from a handler; returns (client, recorder)."""

    def factory(handler):
        recorder = RecordingTransport(handler)
        return httpx.AsyncClient(transport=httpx.MockTransport(recorder)), recorder

    return factory


# ============================================================================
# Configuration fixtures
# ============================================================================


@pytest.fixture
def settings():
    """Settings independent of the environment."""
    return Settings(
        request_timeout=30.0,
        connect_timeout=5.0,
        key_rotation_enabled=False,
        log_level="DEBUG",
    )


@pytest.fixture
def credential_store():
    return InMemoryCredentialStore()


@pytest.fixture
def anthropic_config():
    return ProviderConfiguration(name="Claude", family=BackendFamily.ANTHROPIC)


@pytest.fixture
def openai_config():
    return ProviderConfiguration(name="OpenAI", family=BackendFamily.OPENAI)


@pytest.fixture
def ollama_config():
    return ProviderConfiguration(name="Local", family=BackendFamily.OLLAMA)
