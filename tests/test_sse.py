"""Tests for upstream SSE parsing and client framing."""

import json

from queryproxy.app.services.sse import SSEParser, UpstreamEvent, format_chunk


def _data(payload) -> str:
    return f"data: {json.dumps(payload)}\n"


class TestSSEParser:
    def test_partial_lines_are_held_until_newline(self):
        parser = SSEParser()
        line = _data({"choices": [{"delta": {"content": "Hello"}}]})

        assert parser.feed(line[:20]) == []
        assert parser.pending == line[:20]
        assert parser.feed(line[20:]) == [UpstreamEvent(content="Hello")]
        assert parser.pending == ""

    def test_many_lines_in_one_chunk_keep_order(self):
        parser = SSEParser()
        text = "".join(
            _data({"choices": [{"delta": {"content": c}}]}) for c in ("a", "b", "c")
        )
        assert [e.content for e in parser.feed(text)] == ["a", "b", "c"]

    def test_done_marker(self):
        events = SSEParser().feed("data: [DONE]\n")
        assert events == [UpstreamEvent(done=True)]
        assert events[0].is_terminal

    def test_finish_reason_is_terminal(self):
        events = SSEParser().feed(_data({"choices": [{"delta": {}, "finish_reason": "stop"}]}))
        assert events[0].finish_reason == "stop"
        assert events[0].is_terminal

    def test_comments_and_other_fields_are_ignored(self):
        parser = SSEParser()
        assert parser.feed(": OPENROUTER PROCESSING\n\nevent: ping\nid: 4\n") == []

    def test_malformed_json_is_skipped(self):
        parser = SSEParser()
        events = parser.feed("data: {not json\n" + _data({"choices": [{"delta": {"content": "ok"}}]}))
        assert [e.content for e in events] == ["ok"]
        assert parser.skipped_lines == 1

    def test_crlf_line_endings(self):
        events = SSEParser().feed('data: {"choices":[{"delta":{"content":"x"}}]}\r\n')
        assert events[0].content == "x"

    def test_flush_parses_trailing_line(self):
        parser = SSEParser()
        assert parser.feed('data: {"choices":[{"delta":{"content":"tail"}}]}') == []
        assert parser.flush() == [UpstreamEvent(content="tail")]
        assert parser.flush() == []

    def test_payload_without_choices_is_ignored(self):
        assert SSEParser().feed(_data({"id": "gen-1"})) == []


class TestFormatChunk:
    def test_frame_shape(self):
        assert format_chunk("Hi") == 'data: {"content": "Hi", "done": false}\n\n'
        assert format_chunk("", done=True) == 'data: {"content": "", "done": true}\n\n'

    def test_non_ascii_is_kept(self):
        assert "héllo – ✓" in format_chunk("héllo – ✓")
