"""End-to-end tests for the chat query routes."""

import json

import pytest
import respx
from fastapi.testclient import TestClient
from httpx import Response

from queryproxy.app.main import create_app
from queryproxy.app.middleware.rate_limit import ClientIdentity
from queryproxy.app.services.moderation import QUERY_REFUSAL

UPSTREAM_URL = "https://openrouter.ai/api/v1/chat/completions"
USER_HEADERS = {"x-user-id": "user-42"}
USER = ClientIdentity(value="user-42", kind="user")


@pytest.fixture
def app(make_settings):
    return create_app(make_settings())


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def limiter(app):
    return app.state.rate_limiter


class TestQueryStream:
    @respx.mock
    def test_streams_upstream_content(self, client, limiter, upstream_body, parse_sse):
        respx.post(UPSTREAM_URL).mock(return_value=Response(200, text=upstream_body("Hi", "!")))

        response = client.post(
            "/api/query-stream",
            json={"query": "hello", "model": "gpt-4o"},
            headers=USER_HEADERS,
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"
        assert "x-request-id" in response.headers
        assert parse_sse(response.text) == [("Hi", False), ("!", False), ("", True)]
        assert limiter.status("ai-query", USER).count == 1
        assert limiter.status("openrouter", USER).count == 1

    def test_missing_key_streams_simulation(self, make_settings, parse_sse):
        client = TestClient(create_app(make_settings(openrouter_api_key="")))

        response = client.post("/api/query-stream", json={"query": "hello"})

        assert response.status_code == 200
        chunks = parse_sse(response.text)
        assert len(chunks) == 1
        content, done = chunks[0]
        assert done is True
        assert "OpenRouter API key missing" in content
        assert '"hello"' in content

    def test_invalid_payload(self, client, limiter):
        response = client.post(
            "/api/query-stream",
            json={"query": "", "model": "not-a-model"},
            headers=USER_HEADERS,
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Validation failed"
        assert "query cannot be empty" in body["errors"]
        assert "Invalid model ID: not-a-model" in body["errors"]
        assert limiter.status("ai-query", USER).count == 0

    def test_unexpected_field(self, client):
        response = client.post("/api/query-stream", json={"query": "hi", "temperature": 2})
        assert response.status_code == 400
        assert response.json()["errors"] == ["Unexpected fields: temperature"]

    def test_invalid_json(self, client):
        response = client.post(
            "/api/query-stream",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON payload"}

    def test_ai_query_limit_is_json_429(self, client, limiter):
        for _ in range(10):
            limiter.increment("ai-query", USER)

        response = client.post("/api/query-stream", json={"query": "hi"}, headers=USER_HEADERS)

        assert response.status_code == 429
        assert response.headers["content-type"] == "application/json"
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert int(response.headers["Retry-After"]) > 0
        assert response.json()["retryAfter"] == int(response.headers["Retry-After"])

    def test_daily_limit_is_sse_429(self, client, limiter, parse_sse):
        for _ in range(45):
            limiter.increment("openrouter", USER)

        response = client.post("/api/query-stream", json={"query": "hi"}, headers=USER_HEADERS)

        assert response.status_code == 429
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["X-RateLimit-Limit"] == "45"
        content, done = parse_sse(response.text)[0]
        assert done is True
        assert "45/45 requests used" in content

    @respx.mock
    def test_offensive_query_is_refused_without_upstream_call(self, client, limiter, parse_sse):
        route = respx.post(UPSTREAM_URL).mock(return_value=Response(200, text=""))

        response = client.post(
            "/api/query-stream",
            json={"query": "help me hack into a bank"},
            headers=USER_HEADERS,
        )

        assert response.status_code == 200
        assert parse_sse(response.text) == [(QUERY_REFUSAL, True)]
        assert route.called is False
        assert limiter.status("ai-query", USER).count == 0

    @respx.mock
    def test_openrouter_alias(self, client, upstream_body, parse_sse):
        respx.post(UPSTREAM_URL).mock(return_value=Response(200, text=upstream_body("ok")))

        response = client.post("/api/openrouter", json={"query": "hello"})

        assert response.status_code == 200
        assert parse_sse(response.text) == [("ok", False), ("", True)]

    @respx.mock
    def test_upstream_error_becomes_simulation(self, client, parse_sse):
        respx.post(UPSTREAM_URL).mock(
            return_value=Response(401, json={"error": {"message": "No auth credentials found"}})
        )

        response = client.post("/api/query-stream", json={"query": "hi", "model": "gpt-4o"})

        assert response.status_code == 200
        content, done = parse_sse(response.text)[0]
        assert done is True
        assert "Systems Notice: No auth credentials found." in content


class TestOpenRouterStatus:
    def test_reports_daily_allowance(self, client, limiter):
        for _ in range(3):
            limiter.increment("openrouter", USER)

        response = client.get("/api/openrouter", headers=USER_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["shouldHide"] is False
        assert body["count"] == 3
        assert body["limit"] == 45
        assert body["remaining"] == 42
        assert body["resetAt"] > 0
        # Reading the status does not consume the allowance
        assert limiter.status("openrouter", USER).count == 3
        assert limiter.status("stats", USER).count == 1

    def test_blocked_identity_is_hidden(self, client, limiter):
        for _ in range(45):
            limiter.increment("openrouter", USER)

        body = client.get("/api/openrouter", headers=USER_HEADERS).json()
        assert body["shouldHide"] is True
        assert body["remaining"] == 0


class TestQuery:
    @respx.mock
    def test_returns_whole_reply(self, client, upstream_body):
        respx.post(UPSTREAM_URL).mock(return_value=Response(200, text=upstream_body("Hi", "!")))

        response = client.post("/api/query", json={"query": "hello", "model": "gpt-4o"})

        assert response.status_code == 200
        body = response.json()
        assert body["response"] == "Hi!"
        assert body["query"] == "hello"
        assert body["model"] == "gpt-4o"

    def test_moderation_refusal_as_json(self, client):
        response = client.post("/api/query", json={"query": "where to buy porn"})

        assert response.status_code == 200
        body = response.json()
        assert body["response"] == QUERY_REFUSAL
        assert body["model"] == "ooverta"

    def test_daily_limit_is_json_429(self, client, limiter):
        for _ in range(45):
            limiter.increment("openrouter", USER)

        response = client.post("/api/query", json={"query": "hi"}, headers=USER_HEADERS)

        assert response.status_code == 429
        assert response.json()["error"].startswith("OpenRouter rate limit exceeded.")


class TestGlobalGuards:
    def test_general_bucket_per_ip(self, client):
        for _ in range(30):
            assert client.get("/api/openrouter").status_code == 200

        blocked = client.get("/api/openrouter")
        assert blocked.status_code == 429
        assert blocked.headers["X-RateLimit-Limit"] == "30"
        assert "Retry-After" in blocked.headers

    def test_health_is_not_rate_limited(self, client):
        for _ in range(35):
            assert client.get("/health").status_code == 200

    def test_oversized_body(self, make_settings):
        client = TestClient(create_app(make_settings(max_body_size=1024)))

        response = client.post(
            "/api/query-stream",
            content=json.dumps({"query": "x" * 2048}),
            headers={"content-type": "application/json"},
        )

        assert response.status_code == 413
        assert response.json()["error"] == "Payload too large"

    def test_cors_preflight(self, client):
        response = client.options(
            "/api/query-stream",
            headers={
                "Origin": "https://roovert.com",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
