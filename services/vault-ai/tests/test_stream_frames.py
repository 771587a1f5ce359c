"""Tests for stream record decoding, frame parsing and reasoning metadata."""

import pytest

from models import ContentFrame, DoneFrame, ErrorFrame, ToolCallFrame, ToolCallState
from stream_frames import (
    FrameParseError,
    SSEDecoder,
    parse_confidence,
    parse_payload,
    parse_reasoning,
)


class TestSSEDecoder:
    def test_complete_records(self):
        decoder = SSEDecoder()
        payloads = decoder.feed(b'data: {"kind": "content", "text": "Hi"}\n\ndata: [DONE]\n\n')
        assert payloads == ['{"kind": "content", "text": "Hi"}', "[DONE]"]

    def test_record_split_across_chunks(self):
        decoder = SSEDecoder()
        assert decoder.feed(b'data: {"kind": "con') == []
        assert decoder.feed(b'tent", "text": "Hi"}\n') == ['{"kind": "content", "text": "Hi"}']

    def test_multibyte_character_split_across_chunks(self):
        decoder = SSEDecoder()
        encoded = 'data: {"kind": "content", "text": "Grüße"}\n'.encode("utf-8")
        split = encoded.index("ü".encode("utf-8")) + 1

        first = decoder.feed(encoded[:split])
        second = decoder.feed(encoded[split:])

        assert first == []
        assert second == ['{"kind": "content", "text": "Grüße"}']

    def test_ignores_non_data_lines(self):
        decoder = SSEDecoder()
        assert decoder.feed(b": keepalive\nevent: message\n\n") == []

    def test_flush_returns_trailing_record(self):
        decoder = SSEDecoder()
        assert decoder.feed(b"data: [DONE]") == []
        assert decoder.flush() == ["[DONE]"]
        assert decoder.flush() == []

    def test_crlf_line_endings(self):
        decoder = SSEDecoder()
        assert decoder.feed(b"data: [DONE]\r\n\r\n") == ["[DONE]"]


class TestParsePayload:
    def test_terminator(self):
        assert isinstance(parse_payload("[DONE]"), DoneFrame)

    def test_content_frame(self):
        frame = parse_payload('{"kind": "content", "text": "Hello "}')
        assert isinstance(frame, ContentFrame)
        assert frame.text == "Hello "

    def test_tool_call_frame_camel_case(self):
        frame = parse_payload(
            '{"kind": "tool-call", "toolCallId": "t1", "toolName": "search", '
            '"args": {"q": "fee"}, "state": "partial-call"}'
        )
        assert isinstance(frame, ToolCallFrame)
        assert frame.tool_call_id == "t1"
        assert frame.state is ToolCallState.PARTIAL_CALL

    def test_error_frame(self):
        frame = parse_payload('{"kind": "error", "message": "backend exploded"}')
        assert isinstance(frame, ErrorFrame)
        assert frame.message == "backend exploded"

    @pytest.mark.parametrize(
        "payload",
        [
            "{not json",
            "[1, 2]",
            '{"kind": "mystery"}',
            '{"text": "no kind"}',
            '{"kind": "tool-call"}',
        ],
    )
    def test_malformed(self, payload):
        with pytest.raises(FrameParseError):
            parse_payload(payload)


class TestParseReasoning:
    def test_labelled_lines(self):
        text = (
            "Locating the fee clause\n"
            "Action: search documents\n"
            "Confidence: 85%\n"
            "The fee is listed in section 4.\n"
            "Result: found $12,500\n"
            "Next: verify installments"
        )
        details = parse_reasoning(text)

        assert details.title == "Locating the fee clause"
        assert details.action == "search documents"
        assert details.confidence == pytest.approx(0.85)
        assert details.result == "found $12,500"
        assert details.next_action == "verify installments"
        assert details.explanation == "The fee is listed in section 4."

    def test_blank_first_line_means_no_title(self):
        details = parse_reasoning("\nJust thinking out loud.")
        assert details.title is None
        assert details.explanation == "Just thinking out loud."

    def test_structured_values_win(self):
        details = parse_reasoning("Heuristic title\nAction: guess", title="Sent title", action="sent", confidence=0.4)
        assert details.title == "Sent title"
        assert details.action == "sent"
        assert details.confidence == 0.4

    def test_plain_text(self):
        details = parse_reasoning("Only one line")
        assert details.title == "Only one line"
        assert details.explanation == ""


class TestParseConfidence:
    @pytest.mark.parametrize(
        "raw, expected",
        [("0.8", 0.8), ("80%", 0.8), ("80", 0.8), ("150%", 1.0), ("high", None), (None, None)],
    )
    def test_formats(self, raw, expected):
        result = parse_confidence(raw)
        if expected is None:
            assert result is None
        else:
            assert result == pytest.approx(expected)
