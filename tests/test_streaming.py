"""
Tests for EventStream cancellation and terminal-event handling.
"""

import asyncio

import httpx
import pytest

from omnichat.core.provider_manager.errors import ProviderErrorKind
from omnichat.core.provider_manager.types import StreamEvent, StreamEventKind
from omnichat.providers.streaming import EventStream
from omnichat.providers.wire import WireFormatError


def _producer(*events, hang=False, raises=None):
    async def produce():
        for event in events:
            yield event
        if raises is not None:
            raise raises
        if hang:
            await asyncio.Event().wait()

    return produce


class TestTerminalEvents:
    """Tests for the single terminal event guarantee."""

    @pytest.mark.asyncio
    async def test_events_in_order_then_done(self):
        """Test that events arrive in order and the stream ends after done."""
        # Arrange
        stream = EventStream(_producer(StreamEvent.text_delta("a"), StreamEvent.text_delta("b"), StreamEvent.done()))

        # Act
        events = await stream.collect()

        # Assert
        assert [e.kind for e in events] == [
            StreamEventKind.TEXT_DELTA,
            StreamEventKind.TEXT_DELTA,
            StreamEventKind.DONE,
        ]
        assert "".join(e.text for e in events[:-1]) == "ab"
        assert stream.is_finished

    @pytest.mark.asyncio
    async def test_done_appended_when_producer_ends_silently(self):
        """Test that a producer without a terminal event still yields done."""
        # Act
        events = await EventStream(_producer(StreamEvent.text_delta("x"))).collect()

        # Assert
        assert events[-1].kind is StreamEventKind.DONE
        assert sum(e.is_terminal for e in events) == 1

    @pytest.mark.asyncio
    async def test_events_after_terminal_dropped(self):
        """Test that nothing is delivered after the first terminal event."""
        # Act
        events = await EventStream(
            _producer(StreamEvent.done(), StreamEvent.text_delta("late"))
        ).collect()

        # Assert
        assert [e.kind for e in events] == [StreamEventKind.DONE]

    @pytest.mark.asyncio
    async def test_producer_exception_becomes_error_event(self):
        """Test that a raised httpx error is classified and delivered as the terminal event."""
        # Arrange
        stream = EventStream(_producer(StreamEvent.text_delta("a"), raises=httpx.ConnectError("refused")))

        # Act
        events = await stream.collect()

        # Assert
        assert events[0].text == "a"
        assert events[-1].kind is StreamEventKind.ERROR
        assert events[-1].error.kind is ProviderErrorKind.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_wire_format_error_is_invalid_response(self):
        """Test that an oversized stream maps to invalid_response."""
        # Act
        events = await EventStream(_producer(raises=WireFormatError(20, 10))).collect()

        # Assert
        assert events[-1].error.kind is ProviderErrorKind.INVALID_RESPONSE


class TestCancellation:
    """Tests for cancel() semantics."""

    @pytest.mark.asyncio
    async def test_cancel_yields_cancelled_and_no_further_deltas(self):
        """Test that after cancel the next event is cancelled and iteration stops."""
        # Arrange
        stream = EventStream(_producer(StreamEvent.text_delta("first"), StreamEvent.text_delta("second"), hang=True))
        first = await stream.__anext__()

        # Act
        stream.cancel()
        rest = [event async for event in stream]

        # Assert
        assert first.text == "first"
        assert len(rest) == 1
        assert rest[0].kind is StreamEventKind.ERROR
        assert rest[0].error.kind is ProviderErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self):
        """Test that cancelling twice still yields exactly one terminal event."""
        # Arrange
        stream = EventStream(_producer(hang=True))

        # Act
        stream.cancel()
        stream.cancel()
        events = await stream.collect()

        # Assert
        assert len(events) == 1
        assert events[0].error.kind is ProviderErrorKind.CANCELLED
        assert stream.is_cancelled

    @pytest.mark.asyncio
    async def test_cancel_wakes_blocked_consumer(self):
        """Test that cancel from another task unblocks a waiting reader."""
        # Arrange
        stream = EventStream(_producer(hang=True))

        async def cancel_soon():
            await asyncio.sleep(0.01)
            stream.cancel()

        # Act
        canceller = asyncio.ensure_future(cancel_soon())
        event = await asyncio.wait_for(stream.__anext__(), timeout=1.0)
        await canceller

        # Assert
        assert event.error.kind is ProviderErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_after_done_is_noop(self):
        """Test that cancelling a finished stream changes nothing."""
        # Arrange
        stream = EventStream(_producer(StreamEvent.done()))
        await stream.collect()

        # Act
        stream.cancel()

        # Assert
        assert not stream.is_cancelled
        assert await stream.collect() == []

    @pytest.mark.asyncio
    async def test_context_manager_closes_stream(self):
        """Test that leaving the async with block stops the producer."""
        # Arrange
        closed = []
        stream = EventStream(_producer(StreamEvent.text_delta("a"), hang=True), on_close=closed.append)

        # Act
        async with stream:
            await stream.__anext__()

        # Assert
        assert stream.is_finished
        assert closed == [stream]
