"""Server-sent event framing.

``SSEParser`` turns raw upstream body text (arbitrary chunk boundaries)
into completion events; ``format_chunk`` renders the normalized
``{content, done}`` frames sent to the caller.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"


@dataclass(frozen=True)
class UpstreamEvent:
    """One parsed ``data:`` line from a chat-completions stream."""
    content: str = ""
    finish_reason: Optional[str] = None
    done: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.done or self.finish_reason is not None


class SSEParser:
    """Incremental line parser over a text buffer.

    Partial lines are held until their newline arrives. Comment lines
    (": keep-alive"), non-data fields and malformed JSON are skipped.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._cursor = 0
        self.skipped_lines = 0

    def feed(self, text: str) -> List[UpstreamEvent]:
        """Append body text and return the events for every completed line."""
        self._buffer += text
        events: List[UpstreamEvent] = []

        while True:
            newline = self._buffer.find("\n", self._cursor)
            if newline == -1:
                break
            line = self._buffer[self._cursor:newline]
            self._cursor = newline + 1
            event = self._parse_line(line)
            if event is not None:
                events.append(event)

        # Compact consumed text so the buffer only holds the partial line
        self._buffer = self._buffer[self._cursor:]
        self._cursor = 0
        return events

    def flush(self) -> List[UpstreamEvent]:
        """Parse whatever is left once the upstream body has ended."""
        rest, self._buffer, self._cursor = self._buffer, "", 0
        event = self._parse_line(rest)
        return [event] if event is not None else []

    @property
    def pending(self) -> str:
        return self._buffer[self._cursor:]

    def _parse_line(self, line: str) -> Optional[UpstreamEvent]:
        line = line.strip()
        if not line.startswith(DATA_PREFIX):
            return None

        data = line[len(DATA_PREFIX):].strip()
        if not data:
            return None
        if data == DONE_MARKER:
            return UpstreamEvent(done=True)

        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            self.skipped_lines += 1
            return None

        return _event_from_payload(payload)


def _event_from_payload(payload: Any) -> Optional[UpstreamEvent]:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None

    choice = choices[0]
    delta = choice.get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return UpstreamEvent(
        content=content if isinstance(content, str) else "",
        finish_reason=choice.get("finish_reason") or None,
    )


def format_chunk(content: str, done: bool = False) -> str:
    """Render one ``data: {"content": ..., "done": ...}`` frame."""
    body: Dict[str, Any] = {"content": content, "done": done}
    return f"data: {json.dumps(body, ensure_ascii=False)}\n\n"
