"""
Tests for the SSE and NDJSON decoders in providers.wire.

This module covers:
- Event framing on blank lines and across chunk boundaries
- LF, CRLF and lone CR line endings
- Multi-line data, comments, event/id/retry fields
- The size ceiling
- NDJSON partial lines and malformed records
"""

import pytest

from omnichat.providers.wire import NDJSONDecoder, SSEDecoder, SSEEvent, WireFormatError


async def _chunks(*parts):
    for part in parts:
        yield part


class TestSSEFraming:
    """Tests for splitting a byte stream into SSE events."""

    def test_single_event(self):
        """Test a complete event in one chunk."""
        # Arrange
        decoder = SSEDecoder()

        # Act
        events = decoder.feed(b"data: hello\n\n")

        # Assert
        assert events == [SSEEvent(data="hello")]

    def test_event_split_across_chunks(self):
        """Test that an event is only dispatched once its blank line arrives."""
        # Arrange
        decoder = SSEDecoder()

        # Act
        first = decoder.feed(b"data: hel")
        second = decoder.feed(b"lo\n")
        third = decoder.feed(b"\n")

        # Assert
        assert first == []
        assert second == []
        assert [e.data for e in third] == ["hello"]

    def test_crlf_decodes_like_lf(self):
        """Test that CRLF and LF line endings give identical events."""
        # Arrange
        lf = b"event: a\ndata: one\ndata: two\n\ndata: three\n\n"
        crlf = lf.replace(b"\n", b"\r\n")

        # Act
        lf_events = SSEDecoder().feed(lf)
        crlf_events = SSEDecoder().feed(crlf)

        # Assert
        assert lf_events == crlf_events
        assert [e.data for e in crlf_events] == ["one\ntwo", "three"]

    def test_crlf_split_between_chunks(self):
        """Test a CR at the end of one chunk followed by LF in the next."""
        # Arrange
        decoder = SSEDecoder()

        # Act
        events = decoder.feed(b"data: x\r")
        events += decoder.feed(b"\n\r")
        events += decoder.feed(b"\n")

        # Assert
        assert [e.data for e in events] == ["x"]

    def test_lone_cr_line_endings(self):
        """Test that a bare CR terminates a line."""
        # Act
        events = SSEDecoder().feed(b"data: a\r\rdata: b\r\r")

        # Assert
        assert [e.data for e in events] == ["a", "b"]

    def test_multiline_data_joined_with_newline(self):
        """Test that several data lines form one payload."""
        # Act
        events = SSEDecoder().feed(b"data: {\"a\":\ndata: 1}\n\n")

        # Assert
        assert events[0].data == '{"a":\n1}'

    def test_done_sentinel_passed_through(self):
        """Test that [DONE] is delivered as ordinary data."""
        # Act
        events = SSEDecoder().feed(b"data: [DONE]\n\n")

        # Assert
        assert events[0].data == "[DONE]"

    def test_field_without_space_after_colon(self):
        """Test that only one leading space is stripped from a value."""
        # Act
        events = SSEDecoder().feed(b"data:tight\n\ndata:  two spaces\n\n")

        # Assert
        assert [e.data for e in events] == ["tight", " two spaces"]


class TestSSEFields:
    """Tests for non-data fields."""

    def test_event_id_and_retry(self):
        """Test event, id and retry fields are attached to the event."""
        # Act
        events = SSEDecoder().feed(b"event: delta\nid: 7\nretry: 1500\ndata: x\n\n")

        # Assert
        assert events == [SSEEvent(data="x", event="delta", id="7", retry=1500)]

    def test_invalid_retry_ignored(self):
        """Test that a non-numeric retry is dropped."""
        # Act
        events = SSEDecoder().feed(b"retry: soon\ndata: x\n\n")

        # Assert
        assert events[0].retry is None

    def test_unknown_fields_ignored(self):
        """Test that unrecognized fields do not affect the event."""
        # Act
        events = SSEDecoder().feed(b"foo: bar\ndata: x\n\n")

        # Assert
        assert events == [SSEEvent(data="x")]

    def test_event_without_data_not_dispatched(self):
        """Test that a block with only an event name produces nothing."""
        # Act
        events = SSEDecoder().feed(b"event: ping\n\n")

        # Assert
        assert events == []

    def test_comments_skipped_by_default(self):
        """Test that comment lines are ignored unless requested."""
        # Arrange
        body = b": keep-alive\ndata: x\n\n"

        # Act
        default_events = SSEDecoder().feed(body)
        comment_events = SSEDecoder(include_comments=True).feed(body)

        # Assert
        assert default_events == [SSEEvent(data="x")]
        assert comment_events[0].is_comment
        assert comment_events[0].comment == "keep-alive"
        assert comment_events[1] == SSEEvent(data="x")


class TestSSEFlushAndLimits:
    """Tests for end-of-stream handling and the size ceiling."""

    def test_flush_dispatches_pending_event(self):
        """Test that an unterminated event is delivered on flush."""
        # Arrange
        decoder = SSEDecoder()
        decoder.feed(b"data: tail")

        # Act
        events = decoder.flush()

        # Assert
        assert [e.data for e in events] == ["tail"]

    def test_data_over_limit_raises(self):
        """Test that accumulated data past the ceiling raises WireFormatError."""
        # Arrange
        decoder = SSEDecoder(max_data_length=10)

        # Act / Assert
        with pytest.raises(WireFormatError) as exc_info:
            decoder.feed(b"data: 123456\ndata: 7890\n")
        assert exc_info.value.limit == 10

    def test_unterminated_line_over_limit_raises(self):
        """Test that a line without terminator cannot grow unbounded."""
        # Arrange
        decoder = SSEDecoder(max_data_length=16)

        # Act / Assert
        with pytest.raises(WireFormatError):
            decoder.feed(b"data: " + b"x" * 32)

    @pytest.mark.asyncio
    async def test_decode_data_from_async_iterator(self):
        """Test the async interface yields only payloads."""
        # Arrange
        decoder = SSEDecoder(include_comments=True)

        # Act
        payloads = [d async for d in decoder.decode_data(_chunks(b": hi\ndata: a\n", b"\ndata: b"))]

        # Assert
        assert payloads == ["a", "b"]


class TestNDJSONDecoder:
    """Tests for newline-delimited JSON decoding."""

    def test_records_across_chunks(self):
        """Test that a partial line waits for completion."""
        # Arrange
        decoder = NDJSONDecoder()

        # Act
        first = decoder.feed(b'{"a": 1}\n{"b"')
        second = decoder.feed(b": 2}\n")

        # Assert
        assert first == [{"a": 1}]
        assert second == [{"b": 2}]

    def test_blank_and_malformed_lines_skipped(self, loguru_caplog):
        """Test that malformed records are logged and skipped."""
        # Act
        records = NDJSONDecoder().feed(b'\n{"a": 1}\nnot json\n\r\n{"b": 2}\n')

        # Assert
        assert records == [{"a": 1}, {"b": 2}]
        assert "malformed NDJSON" in loguru_caplog.text

    def test_flush_parses_trailing_line(self):
        """Test that the last line without newline is parsed on flush."""
        # Arrange
        decoder = NDJSONDecoder()
        decoder.feed(b'{"done": true}')

        # Act
        records = decoder.flush()

        # Assert
        assert records == [{"done": True}]

    @pytest.mark.asyncio
    async def test_decode_async(self):
        """Test the async interface."""
        # Act
        records = [r async for r in NDJSONDecoder().decode(_chunks(b'{"n": 1}\r\n{"n"', b": 2}"))]

        # Assert
        assert records == [{"n": 1}, {"n": 2}]
