"""Shared fixtures for the query proxy tests."""

import json

import pytest

from queryproxy.app.core.config import Settings

UPSTREAM_URL = "https://openrouter.ai/api/v1/chat/completions"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def sse_line(payload) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def delta(text: str) -> dict:
    return {"choices": [{"delta": {"content": text}, "finish_reason": None}]}


FINISH = {"choices": [{"delta": {}, "finish_reason": "stop"}]}


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_settings():
    """Settings factory that never reads .env."""
    def _make(**overrides) -> Settings:
        values = {
            "openrouter_api_key": "test-key",
            "log_level": "WARNING",
            "availability_batch_pause_seconds": 0,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
def upstream_body():
    """Build an upstream SSE body from content pieces, ending with a finish signal."""
    def _body(*pieces: str, finish: bool = True) -> str:
        body = "".join(sse_line(delta(p)) for p in pieces)
        if finish:
            body += sse_line(FINISH)
        return body
    return _body


@pytest.fixture
def parse_sse():
    """Split a client-facing SSE body into (content, done) tuples."""
    def _parse(text: str) -> list[tuple[str, bool]]:
        chunks = []
        for frame in text.split("\n\n"):
            frame = frame.strip()
            if not frame.startswith("data: "):
                continue
            data = json.loads(frame[len("data: "):])
            chunks.append((data["content"], data["done"]))
        return chunks
    return _parse
