from fastapi.testclient import TestClient

from queryproxy.app.main import create_app


def test_health(make_settings):
    client = TestClient(create_app(make_settings()))
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["components"]["upstream"] == {"configured": True}
    assert data["components"]["rate_limiter"] == {"buckets": 0, "entries": 0}


def test_health_degraded_without_key(make_settings):
    client = TestClient(create_app(make_settings(openrouter_api_key="")))
    data = client.get("/health").json()
    assert data["status"] == "degraded"
    assert data["components"]["upstream"]["configured"] is False


def test_lifespan_shares_one_upstream_client(make_settings):
    app = create_app(make_settings())
    provider = app.state.orchestrator.provider

    with TestClient(app) as client:
        assert provider.http_client is not None
        assert client.get("/health").status_code == 200

    assert provider.http_client is None


def test_unhandled_errors_are_json_500(make_settings):
    app = create_app(make_settings())

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    client = TestClient(app, raise_server_exceptions=False)
    resp = client.get("/boom", headers={"X-Request-ID": "req-77"})

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Internal server error"
    assert "message" not in body
