"""
Error handling for the provider manager package.

This module contains:
- ProviderErrorKind enum for categorizing errors
- ProviderError exception carrying kind-specific details
- raise_for_status for mapping HTTP responses onto ProviderError
- classify_error for mapping arbitrary exceptions onto ProviderError
- retry_on_transient, an opt-in tenacity decorator for callers
"""

import asyncio
import json
from enum import Enum
from functools import wraps
from typing import Any, Callable, Optional

import httpx
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)


class ProviderErrorKind(str, Enum):
    """Types of provider errors."""

    INVALID_API_KEY = "invalid_api_key"
    UNAUTHORIZED = "unauthorized"
    TOKEN_EXPIRED = "token_expired"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    CANCELLED = "cancelled"
    INVALID_RESPONSE = "invalid_response"
    MODEL_NOT_FOUND = "model_not_found"
    NOT_SUPPORTED = "not_supported"
    PROVIDER_ERROR = "provider_error"


_RETRYABLE_KINDS = frozenset(
    {
        ProviderErrorKind.RATE_LIMITED,
        ProviderErrorKind.TIMEOUT,
        ProviderErrorKind.SERVER_ERROR,
        ProviderErrorKind.NETWORK_ERROR,
    }
)


class ProviderError(Exception):
    """
    Error raised (or delivered as a terminal stream event) by adapters.

    Only the fields relevant to ``kind`` are set. Use the classmethod
    constructors rather than calling the initializer directly.
    """

    def __init__(
        self,
        kind: ProviderErrorKind,
        *,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        code: Optional[int] = None,
        model: Optional[str] = None,
        reason: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.kind = ProviderErrorKind(kind)
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.code = code
        self.model = model
        self.reason = reason
        self.cause = cause
        super().__init__(self.description)

    # -- constructors -------------------------------------------------

    @classmethod
    def invalid_api_key(cls) -> "ProviderError":
        return cls(ProviderErrorKind.INVALID_API_KEY)

    @classmethod
    def unauthorized(cls) -> "ProviderError":
        return cls(ProviderErrorKind.UNAUTHORIZED)

    @classmethod
    def token_expired(cls) -> "ProviderError":
        return cls(ProviderErrorKind.TOKEN_EXPIRED)

    @classmethod
    def rate_limited(cls, retry_after: Optional[float] = None) -> "ProviderError":
        return cls(ProviderErrorKind.RATE_LIMITED, retry_after=retry_after)

    @classmethod
    def network_error(cls, cause: Optional[BaseException] = None) -> "ProviderError":
        return cls(ProviderErrorKind.NETWORK_ERROR, cause=cause)

    @classmethod
    def timeout(cls) -> "ProviderError":
        return cls(ProviderErrorKind.TIMEOUT)

    @classmethod
    def server_error(cls, status_code: int, message: Optional[str] = None) -> "ProviderError":
        return cls(ProviderErrorKind.SERVER_ERROR, status_code=status_code, message=message)

    @classmethod
    def cancelled(cls) -> "ProviderError":
        return cls(ProviderErrorKind.CANCELLED)

    @classmethod
    def invalid_response(cls, reason: Optional[str] = None) -> "ProviderError":
        return cls(ProviderErrorKind.INVALID_RESPONSE, reason=reason)

    @classmethod
    def model_not_found(cls, model: str) -> "ProviderError":
        return cls(ProviderErrorKind.MODEL_NOT_FOUND, model=model)

    @classmethod
    def not_supported(cls, reason: str) -> "ProviderError":
        return cls(ProviderErrorKind.NOT_SUPPORTED, reason=reason)

    @classmethod
    def provider_error(cls, message: str, code: Optional[int] = None) -> "ProviderError":
        return cls(ProviderErrorKind.PROVIDER_ERROR, message=message, code=code)

    # -- properties ---------------------------------------------------

    @property
    def is_retryable(self) -> bool:
        """Whether repeating the same request may succeed. Retrying is up to the caller."""
        return self.kind in _RETRYABLE_KINDS

    @property
    def description(self) -> str:
        kind = self.kind
        if kind is ProviderErrorKind.INVALID_API_KEY:
            return "The API key is invalid or missing."
        if kind is ProviderErrorKind.UNAUTHORIZED:
            return "Authentication failed. Please check your credentials."
        if kind is ProviderErrorKind.TOKEN_EXPIRED:
            return "OAuth token has expired. Please re-authenticate."
        if kind is ProviderErrorKind.RATE_LIMITED:
            if self.retry_after is not None:
                return f"Rate limited. Please retry after {int(self.retry_after)} seconds."
            return "Rate limited. Please wait and try again."
        if kind is ProviderErrorKind.NETWORK_ERROR:
            if self.cause is not None:
                return f"Network error: {self.cause}"
            return "A network error occurred."
        if kind is ProviderErrorKind.TIMEOUT:
            return "The request timed out."
        if kind is ProviderErrorKind.SERVER_ERROR:
            if self.message:
                return f"Server error ({self.status_code}): {self.message}"
            return f"Server error ({self.status_code})"
        if kind is ProviderErrorKind.CANCELLED:
            return "The request was cancelled."
        if kind is ProviderErrorKind.INVALID_RESPONSE:
            if self.reason:
                return f"Invalid response from provider: {self.reason}"
            return "Invalid response from provider."
        if kind is ProviderErrorKind.MODEL_NOT_FOUND:
            return f"Model '{self.model}' not found or not available."
        if kind is ProviderErrorKind.NOT_SUPPORTED:
            return f"{self.reason} is not supported by this provider."
        if self.code is not None:
            return f"Provider error ({self.code}): {self.message}"
        return f"Provider error: {self.message}"

    def __repr__(self) -> str:
        return f"ProviderError(kind={self.kind.value!r}, description={self.description!r})"


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        # HTTP-date form is not used by any supported backend
        return None
    return seconds if seconds >= 0 else None


def _extract_error_message(response: httpx.Response) -> Optional[str]:
    header_message = response.headers.get("X-Error-Message")
    if header_message:
        return header_message
    try:
        body = response.content
    except httpx.ResponseNotRead:
        return None
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(payload.get("message"), str):
            return payload["message"]
    return None


def raise_for_status(response: httpx.Response) -> None:
    """
    Map a non-2xx response onto a ProviderError.

    Args:
        response: The HTTP response. For streamed responses the body should
            be read first if an error message is wanted.

    Raises:
        ProviderError: For any status outside 200-299.
    """
    status = response.status_code
    if 200 <= status < 300:
        return

    try:
        url = str(response.request.url)
    except RuntimeError:
        url = "unknown URL"
    if status in (401, 403):
        logger.warning(f"HTTP {status}: invalid credentials for {url}")
        raise ProviderError.unauthorized()
    if status == 429:
        retry_after = _parse_retry_after(response.headers.get("Retry-After"))
        logger.warning(f"HTTP 429 rate limited for {url}, retry after: {retry_after or 0} seconds")
        raise ProviderError.rate_limited(retry_after)

    message = _extract_error_message(response)
    logger.error(f"HTTP {status} error for {url}: {message or 'no message'}")
    raise ProviderError.server_error(status, message)


def classify_error(error: BaseException) -> ProviderError:
    """
    Classify an exception into a ProviderError.

    Args:
        error: The exception to classify.

    Returns:
        The error itself when it already is a ProviderError, otherwise the
        closest matching kind.
    """
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, asyncio.CancelledError):
        return ProviderError.cancelled()
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError)):
        return ProviderError.timeout()
    if isinstance(error, httpx.HTTPStatusError):
        try:
            raise_for_status(error.response)
        except ProviderError as mapped:
            return mapped
    if isinstance(error, httpx.InvalidURL):
        return ProviderError.invalid_response("Invalid URL")
    if isinstance(error, httpx.UnsupportedProtocol):
        return ProviderError.invalid_response(str(error))
    if isinstance(error, (httpx.RemoteProtocolError, httpx.DecodingError)):
        return ProviderError.invalid_response("Bad server response")
    if isinstance(error, json.JSONDecodeError):
        return ProviderError.invalid_response(f"Malformed JSON: {error.msg}")
    return ProviderError.network_error(error)


def _wait_with_retry_after(fallback: Callable[[RetryCallState], float]) -> Callable[[RetryCallState], float]:
    def wait(retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        if isinstance(error, ProviderError) and error.retry_after is not None:
            return error.retry_after
        return fallback(retry_state)

    return wait


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.is_retryable


def retry_on_transient(attempts: int = 3, max_wait: float = 60.0, min_wait: float = 1.0):
    """
    Opt-in retry decorator for coroutine functions raising ProviderError.

    The provider core never retries on its own; callers that want to retry
    model listing or credential validation wrap those calls with this.
    A ``retry_after`` hint from a rate-limit error overrides the backoff.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            retrying = AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=_wait_with_retry_after(wait_exponential(multiplier=1, min=min_wait, max=max_wait)),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            f"Retrying {func.__name__} (attempt {attempt.retry_state.attempt_number}/{attempts})"
                        )
                    return await func(*args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    "ProviderErrorKind",
    "ProviderError",
    "raise_for_status",
    "classify_error",
    "retry_on_transient",
]
