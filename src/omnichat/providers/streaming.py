"""
Cancellable event streams returned by ``send_message``.

An EventStream runs its producer (an async generator of StreamEvent) in a
single task that owns the HTTP connection. The consumer pulls events
through a small bounded queue, so the producer never runs far ahead of
the reader.

Guarantees:
- events are delivered in the order the producer emitted them
- exactly one terminal event (done or error) ends every stream
- after ``cancel()`` the next event pulled is ``error(cancelled)``
- cancelling the consuming task cancels the producer task
"""

import asyncio
from typing import AsyncIterator, Callable, Optional

from loguru import logger

from ..core.provider_manager.errors import ProviderError, classify_error
from ..core.provider_manager.types import StreamEvent
from .wire import WireFormatError

_QUEUE_SIZE = 16

ProducerFactory = Callable[[], AsyncIterator[StreamEvent]]


class EventStream:
    """Async iterator of StreamEvent with idempotent cancellation."""

    def __init__(
        self,
        producer: ProducerFactory,
        *,
        label: str = "stream",
        on_close: Optional[Callable[["EventStream"], None]] = None,
    ):
        self._producer = producer
        self._label = label
        self._on_close = on_close
        self._queue: "asyncio.Queue[StreamEvent]" = asyncio.Queue(maxsize=_QUEUE_SIZE)
        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False
        self._finished = False

    @property
    def is_finished(self) -> bool:
        return self._finished

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_requested

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        if self._cancel_requested:
            return self._finish(StreamEvent.failed(ProviderError.cancelled()))

        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

        try:
            event = await self._queue.get()
        except asyncio.CancelledError:
            # The consumer was cancelled; take the connection down with it.
            self._abort_producer()
            self._finished = True
            self._notify_closed()
            raise

        if self._cancel_requested:
            return self._finish(StreamEvent.failed(ProviderError.cancelled()))
        if event.is_terminal:
            return self._finish(event)
        return event

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def cancel(self) -> None:
        """Abort the request. Safe to call repeatedly and from any task on the loop."""
        if self._finished or self._cancel_requested:
            return
        logger.debug(f"Cancelling {self._label}")
        self._cancel_requested = True
        self._abort_producer()
        # Wake a consumer blocked on an empty queue.
        self._drain_queue()
        self._queue.put_nowait(StreamEvent.failed(ProviderError.cancelled()))
        self._notify_closed()

    async def aclose(self) -> None:
        """Stop the stream and wait for the producer task to unwind."""
        if not self._finished:
            self.cancel()
            self._finished = True
            self._notify_closed()
        task = self._task
        if task is not None and not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def collect(self) -> list:
        """Drain the stream into a list, terminal event included."""
        return [event async for event in self]

    def _finish(self, event: StreamEvent) -> StreamEvent:
        self._finished = True
        self._abort_producer()
        self._notify_closed()
        return event

    def _abort_producer(self) -> None:
        task = self._task
        if task is not None and not task.done():
            task.cancel()

    def _drain_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return

    def _notify_closed(self) -> None:
        callback, self._on_close = self._on_close, None
        if callback is not None:
            callback(self)

    async def _run(self) -> None:
        terminal: Optional[StreamEvent] = None
        generator = self._producer()
        try:
            async for event in generator:
                await self._queue.put(event)
                if event.is_terminal:
                    terminal = event
                    break
            if terminal is None:
                terminal = StreamEvent.done()
                await self._queue.put(terminal)
        except asyncio.CancelledError:
            logger.debug(f"{self._label} producer cancelled")
            raise
        except Exception as e:
            if isinstance(e, WireFormatError):
                error = ProviderError.invalid_response(str(e))
            else:
                error = classify_error(e)
            logger.error(f"{self._label} failed: {error.description}")
            await self._queue.put(StreamEvent.failed(error))
        finally:
            await generator.aclose()


__all__ = ["EventStream", "ProducerFactory"]
