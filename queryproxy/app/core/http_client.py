"""Shared HTTP client management for connection pooling.

The upstream client is opened once in the application lifespan and shared
by the chat orchestrator and the model-availability checker.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx

from queryproxy.app.core.config import Settings, settings as default_settings


def build_timeout(config: Settings) -> httpx.Timeout:
    """Granular timeouts; streaming responses need a generous read timeout."""
    return httpx.Timeout(
        connect=config.httpx_connect_timeout,
        read=config.httpx_read_timeout,
        write=config.httpx_write_timeout,
        pool=config.httpx_pool_timeout,
    )


def build_limits(config: Settings) -> httpx.Limits:
    return httpx.Limits(
        max_connections=config.httpx_max_connections,
        max_keepalive_connections=config.httpx_max_keepalive_connections,
        keepalive_expiry=config.httpx_keepalive_expiry,
    )


@asynccontextmanager
async def init_http_client(
    config: Optional[Settings] = None,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Open the shared HTTP client and close it when the context exits.

    Used from the FastAPI lifespan:

        async with init_http_client(settings) as client:
            provider.http_client = client
            yield
    """
    config = config or default_settings
    client = httpx.AsyncClient(timeout=build_timeout(config), limits=build_limits(config))
    try:
        yield client
    finally:
        await client.aclose()
