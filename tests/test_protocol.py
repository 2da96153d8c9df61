"""Tests for frame encoding and the incremental frame parser."""

import pytest

from chatnest.protocol import (
    MEDIA_TYPE,
    EventType,
    FrameParser,
    StreamEvent,
    decode_error,
    decode_token,
    encode_error,
    encode_frame,
    encode_token,
    parse_frame,
)


def _sample_stream() -> bytes:
    return b"".join(
        [
            encode_frame(EventType.START),
            encode_frame(EventType.TOKEN, encode_token("Hel")),
            encode_frame(EventType.PING),
            encode_frame(EventType.TOKEN, encode_token("lo\n\nwörld ✓")),
            encode_frame(EventType.DONE),
        ]
    )


class TestEncoding:
    def test_frame_layout(self):
        assert encode_frame(EventType.TOKEN, '"hi"') == b'event: token\ndata: "hi"\n\n'

    def test_empty_payload_frames(self):
        assert encode_frame(EventType.PING) == b"event: ping\ndata: \n\n"

    def test_token_payload_is_json_string(self):
        assert encode_token("a\nb") == '"a\\nb"'

    def test_error_payload_is_json_object(self):
        assert encode_error("boom") == '{"message": "boom"}'

    def test_media_type(self):
        assert MEDIA_TYPE == "text/event-stream"

    def test_only_done_and_error_are_terminal(self):
        assert {t for t in EventType if t.is_terminal} == {EventType.DONE, EventType.ERROR}


class TestDecoding:
    def test_token_json_string(self):
        assert decode_token('"lo"') == "lo"

    @pytest.mark.parametrize("payload", ["not json", "42", '{"a": 1}'])
    def test_token_non_string_passes_through(self, payload):
        assert decode_token(payload) == payload

    def test_error_message(self):
        assert decode_error('{"message": "Upstream failed"}') == "Upstream failed"

    def test_error_without_message(self):
        assert decode_error("{}") == "Stream error"

    def test_error_raw_payload(self):
        assert decode_error("plain failure") == "plain failure"

    def test_error_empty_payload(self):
        assert decode_error("") == "Stream error"


class TestParseFrame:
    def test_blank_frame(self):
        assert parse_frame("  \n") is None

    def test_unknown_event_is_ignored(self):
        assert parse_frame("event: mystery\ndata: x") is None

    def test_multiple_data_lines_join(self):
        event = parse_frame("event: token\ndata: a\ndata: b")
        assert event == StreamEvent(EventType.TOKEN, "a\nb")


class TestFrameParser:
    def test_whole_buffer(self):
        events = FrameParser().feed(_sample_stream())
        assert [e.type for e in events] == [
            EventType.START,
            EventType.TOKEN,
            EventType.PING,
            EventType.TOKEN,
            EventType.DONE,
        ]
        assert decode_token(events[3].data) == "lo\n\nwörld ✓"

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 5, 7, 16, 64])
    def test_any_chunking_yields_same_events(self, chunk_size):
        data = _sample_stream()
        expected = FrameParser().feed(data)
        parser = FrameParser()
        events = []
        for offset in range(0, len(data), chunk_size):
            events.extend(parser.feed(data[offset : offset + chunk_size]))
        events.extend(parser.close())
        assert events == expected

    def test_residue_kept_until_delimiter(self):
        parser = FrameParser()
        assert parser.feed(b"event: token\ndata: \"a\"\n") == []
        assert parser.residue == 'event: token\ndata: "a"\n'
        events = parser.feed(b"\n")
        assert events == [StreamEvent(EventType.TOKEN, '"a"')]
        assert parser.residue == ""

    def test_close_discards_unterminated_frame(self):
        parser = FrameParser()
        parser.feed(b"event: done\ndata: ")
        assert parser.close() == []

    def test_invalid_utf8_raises(self):
        with pytest.raises(UnicodeDecodeError):
            FrameParser().feed(b"event: token\ndata: \xff\xfe\n\n")
