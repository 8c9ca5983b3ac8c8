"""
Wire protocol decoders for streaming responses.

This module contains:
- SSEEvent, one dispatched Server-Sent Event
- SSEDecoder, an incremental text/event-stream decoder
- NDJSONDecoder, an incremental newline-delimited JSON decoder
- WireFormatError raised when a stream exceeds the configured size ceiling

Both decoders are pure byte-to-event transformers with no knowledge of any
particular AI API. They can be fed synchronously through ``feed``/``flush``
or drive an async byte iterator through ``decode``.
"""

import json
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, List, Optional

from loguru import logger

DEFAULT_MAX_DATA_LENGTH = 1_048_576


class WireFormatError(Exception):
    """Raised when buffered stream data exceeds the configured ceiling."""

    def __init__(self, length: int, limit: int):
        self.length = length
        self.limit = limit
        super().__init__(f"Stream data exceeded maximum length ({length} > {limit} bytes)")


@dataclass(frozen=True)
class SSEEvent:
    """A dispatched SSE event. ``comment`` is only set for comment events."""

    data: str = ""
    event: Optional[str] = None
    id: Optional[str] = None
    retry: Optional[int] = None
    comment: Optional[str] = None

    @property
    def is_comment(self) -> bool:
        return self.comment is not None


class _LineSplitter:
    """Splits a byte stream on LF, CRLF or a lone CR."""

    def __init__(self, max_line_length: int):
        self._buffer = bytearray()
        self._skip_lf = False
        self._max = max_line_length

    def feed(self, chunk: bytes) -> List[bytes]:
        lines: List[bytes] = []
        if not chunk:
            return lines
        if self._skip_lf and chunk[:1] == b"\n":
            chunk = chunk[1:]
        self._skip_lf = False
        self._buffer.extend(chunk)

        start = 0
        buf = self._buffer
        length = len(buf)
        i = 0
        while i < length:
            byte = buf[i]
            if byte == 0x0A:  # \n
                lines.append(bytes(buf[start:i]))
                start = i + 1
            elif byte == 0x0D:  # \r
                lines.append(bytes(buf[start:i]))
                if i + 1 < length:
                    if buf[i + 1] == 0x0A:
                        i += 1
                else:
                    self._skip_lf = True
                start = i + 1
            i += 1
        del buf[:start]

        if len(buf) > self._max:
            raise WireFormatError(len(buf), self._max)
        return lines

    def flush(self) -> List[bytes]:
        self._skip_lf = False
        if not self._buffer:
            return []
        line = bytes(self._buffer)
        self._buffer.clear()
        return [line]


class SSEDecoder:
    """
    Incremental Server-Sent Events decoder.

    Fields ``data``, ``event``, ``id`` and ``retry`` are recognized; other
    fields are ignored. Multiple ``data`` lines are joined with ``\\n``.
    ``[DONE]`` payloads are passed through untouched.
    """

    def __init__(self, max_data_length: int = DEFAULT_MAX_DATA_LENGTH, include_comments: bool = False):
        self.max_data_length = max_data_length
        self.include_comments = include_comments
        self._lines = _LineSplitter(max_data_length)
        self._reset_event()

    def _reset_event(self) -> None:
        self._data: List[str] = []
        self._data_length = 0
        self._event: Optional[str] = None
        self._id: Optional[str] = None
        self._retry: Optional[int] = None

    def feed(self, chunk: bytes) -> List[SSEEvent]:
        """
        Feed raw bytes and return the events completed by them.

        Raises:
            WireFormatError: If a line or an event's data grows past the ceiling.
        """
        events: List[SSEEvent] = []
        for raw in self._lines.feed(chunk):
            self._process_line(raw, events)
        return events

    def flush(self) -> List[SSEEvent]:
        """Finish the stream, dispatching any pending partial line and event."""
        events: List[SSEEvent] = []
        for raw in self._lines.flush():
            self._process_line(raw, events)
        self._dispatch(events)
        return events

    def _process_line(self, raw: bytes, events: List[SSEEvent]) -> None:
        try:
            line = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug(f"Skipping SSE line that is not valid UTF-8 ({len(raw)} bytes)")
            return

        if line == "":
            self._dispatch(events)
            return

        if line.startswith(":"):
            if self.include_comments:
                events.append(SSEEvent(comment=line[1:].lstrip(" ")))
            return

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data_length += len(value) + (1 if self._data else 0)
            if self._data_length > self.max_data_length:
                raise WireFormatError(self._data_length, self.max_data_length)
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            if "\x00" not in value:
                self._id = value
        elif name == "retry":
            try:
                self._retry = int(value)
            except ValueError:
                pass

    def _dispatch(self, events: List[SSEEvent]) -> None:
        if self._data:
            events.append(
                SSEEvent(data="\n".join(self._data), event=self._event, id=self._id, retry=self._retry)
            )
        self._reset_event()

    async def decode(self, byte_iter: AsyncIterable[bytes]) -> AsyncIterator[SSEEvent]:
        """Decode an async byte stream into events until it closes."""
        async for chunk in byte_iter:
            for event in self.feed(chunk):
                yield event
        for event in self.flush():
            yield event

    async def decode_data(self, byte_iter: AsyncIterable[bytes]) -> AsyncIterator[str]:
        """Like ``decode`` but yields only the data payloads of non-comment events."""
        async for event in self.decode(byte_iter):
            if not event.is_comment:
                yield event.data


class NDJSONDecoder:
    """
    Incremental newline-delimited JSON decoder.

    Each non-empty line is parsed as one JSON document. Malformed lines are
    logged and skipped; a partial trailing line is kept until completed or
    flushed.
    """

    def __init__(self, max_line_length: int = DEFAULT_MAX_DATA_LENGTH):
        self.max_line_length = max_line_length
        self._lines = _LineSplitter(max_line_length)

    def feed(self, chunk: bytes) -> List[Any]:
        return self._parse(self._lines.feed(chunk))

    def flush(self) -> List[Any]:
        return self._parse(self._lines.flush())

    def _parse(self, lines: List[bytes]) -> List[Any]:
        records: List[Any] = []
        for raw in lines:
            if not raw.strip():
                continue
            try:
                records.append(json.loads(raw))
            except ValueError as e:
                logger.debug(f"Skipping malformed NDJSON record: {e}")
        return records

    async def decode(self, byte_iter: AsyncIterable[bytes]) -> AsyncIterator[Any]:
        async for chunk in byte_iter:
            for record in self.feed(chunk):
                yield record
        for record in self.flush():
            yield record


__all__ = [
    "DEFAULT_MAX_DATA_LENGTH",
    "WireFormatError",
    "SSEEvent",
    "SSEDecoder",
    "NDJSONDecoder",
]
