from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from queryproxy.app.api.chat import router as chat_router
from queryproxy.app.api.model_availability import router as model_availability_router
from queryproxy.app.core.config import Settings, settings as default_settings
from queryproxy.app.core.http_client import init_http_client
from queryproxy.app.core.logging import get_logger, setup_logging
from queryproxy.app.exceptions import ProxyError, RateLimitExceeded, RequestValidationFailed
from queryproxy.app.middleware import (
    RateLimitMiddleware,
    RequestIdMiddleware,
    RequestSizeLimitMiddleware,
)
from queryproxy.app.middleware.rate_limit import RateLimiter, create_rate_limit_response
from queryproxy.app.providers.openrouter import OpenRouterProvider
from queryproxy.app.services.model_availability import ModelAvailabilityChecker
from queryproxy.app.services.model_catalog import ModelCatalog
from queryproxy.app.services.orchestrator import QueryOrchestrator


def create_app(
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Configuration override (defaults to the environment)
        http_client: Shared upstream client; opened by the lifespan when omitted

    Returns:
        Configured FastAPI application instance
    """
    config = settings or default_settings

    setup_logging(config)
    logger = get_logger(__name__)

    rate_limiter = RateLimiter()
    catalog = ModelCatalog(default_model=config.default_model)
    provider = OpenRouterProvider(
        base_url=config.openrouter_base_url,
        api_key=config.openrouter_api_key,
        site_url=config.site_url,
        site_name=config.site_name,
        http_client=http_client,
        timeout=config.httpx_read_timeout,
    )
    availability_checker = ModelAvailabilityChecker(
        provider,
        catalog,
        cache_seconds=config.availability_cache_seconds,
        batch_size=config.availability_batch_size,
        batch_pause=config.availability_batch_pause_seconds,
        probe_timeout=config.availability_probe_timeout,
    )
    orchestrator = QueryOrchestrator(config, rate_limiter, provider, catalog)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Open the shared upstream client on startup and release every service on shutdown."""
        if http_client is not None:
            yield
        else:
            async with init_http_client(config) as client:
                provider.http_client = client
                logger.info(
                    "Application startup complete",
                    extra={
                        "upstream_configured": config.upstream_configured,
                        "debug_mode": config.debug,
                    },
                )
                yield
            provider.http_client = None

        availability_checker.reset()
        rate_limiter.shutdown()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Query Proxy",
        description="Streaming chat proxy with validation, rate limiting and content moderation",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = config
    app.state.rate_limiter = rate_limiter
    app.state.orchestrator = orchestrator
    app.state.availability_checker = availability_checker

    # Add middleware (order matters: last added = first executed)
    if config.global_rate_limit_enabled:
        app.add_middleware(
            RateLimitMiddleware,
            limiter=rate_limiter,
            bucket="general",
            skip_paths=config.global_rate_limit_skip_paths,
        )

    app.add_middleware(RequestSizeLimitMiddleware, max_body_size=config.max_body_size)

    app.add_middleware(RequestIdMiddleware)

    # CORS middleware (outermost - handles preflight requests first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials="*" not in config.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=600,
    )

    app.include_router(chat_router)
    app.include_router(model_availability_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Upstream configuration and limiter occupancy."""
        configured = provider.configured
        return {
            "status": "ok" if configured else "degraded",
            "components": {
                "upstream": {"configured": configured},
                "rate_limiter": rate_limiter.stats(),
            },
        }

    @app.exception_handler(RequestValidationFailed)
    async def validation_failed_handler(request: Request, exc: RequestValidationFailed) -> JSONResponse:
        """Report every field-level violation with HTTP 400."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "errors": exc.errors},
        )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        """Handle RateLimitExceeded and return HTTP 429 with rate limit headers."""
        return create_rate_limit_response(exc.result, exc.config, rate_limiter.now())

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        The traceback is only ever logged; debug mode adds the exception
        message to the response body.
        """
        request_id = getattr(request.state, "request_id", "unknown")

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )

        content = {
            "error": "Internal server error",
            "request_id": request_id,
        }
        if config.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
