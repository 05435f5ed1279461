"""Rate limiting for the query proxy.

This package provides the in-memory fixed-window limiter service, helpers
that turn a blocked check into a ready-to-send 429 response, and the global
per-IP middleware that guards every /api/ route.
"""

from typing import Any, Mapping, Optional, Sequence

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from queryproxy.app.core.logging import get_logger
from queryproxy.app.core.utils import utc_isoformat
from queryproxy.app.middleware.rate_limit.limiter import (
    BUCKET_PRESETS,
    RateLimiter,
    resolve_identity,
)
from queryproxy.app.middleware.rate_limit.models import (
    ClientIdentity,
    RateLimitBucket,
    RateLimitConfig,
    RateLimitEntry,
    RateLimitResult,
    RateLimitStatus,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "ClientIdentity",
    "RateLimitBucket",
    "RateLimitConfig",
    "RateLimitEntry",
    "RateLimitResult",
    "RateLimitStatus",
    # Service
    "BUCKET_PRESETS",
    "RateLimiter",
    "resolve_identity",
    # HTTP helpers
    "identity_from_request",
    "rate_limit_headers",
    "create_rate_limit_response",
    "apply_rate_limit",
    "RateLimitMiddleware",
]


def identity_from_request(request: Request) -> ClientIdentity:
    client_host = request.client.host if request.client else None
    return resolve_identity(request.headers, client_host)


def rate_limit_headers(result: RateLimitResult, now: float) -> dict[str, str]:
    """Standard rate limit headers; X-RateLimit-Reset is epoch milliseconds."""
    return {
        "Retry-After": str(result.retry_after(now)),
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_at_ms),
    }


def create_rate_limit_response(
    result: RateLimitResult,
    config: RateLimitConfig,
    now: float,
) -> JSONResponse:
    """Create a 429 Too Many Requests response with proper headers."""
    retry_after = result.retry_after(now)
    return JSONResponse(
        status_code=429,
        content={
            "error": config.message or "Rate limit exceeded",
            "retryAfter": retry_after,
            "resetAt": utc_isoformat(result.reset_at),
        },
        headers=rate_limit_headers(result, now),
    )


def apply_rate_limit(
    limiter: RateLimiter,
    request: Request,
    bucket: str = "general",
    overrides: Optional[Mapping[str, Any]] = None,
) -> Optional[JSONResponse]:
    """Check a bucket for the request's identity.

    Returns None when the request may proceed, otherwise the 429 response
    to send. Does not count the request.
    """
    identity = identity_from_request(request)
    config = limiter.get_config(bucket, overrides)
    result = limiter.check(bucket, identity, overrides)
    if result.allowed:
        return None

    logger.info(
        "Rate limit exceeded",
        extra={
            "bucket": bucket,
            "identity": identity.value,
            "path": request.url.path,
            "limit": result.limit,
        },
    )
    return create_rate_limit_response(result, config, limiter.now())


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Global per-IP guard on /api/ routes.

    Consumes one request from the ``general`` bucket (or the configured
    one) for every API call outside the skipped prefixes. Route-specific
    buckets are applied by the handlers themselves.
    """

    def __init__(
        self,
        app,
        limiter: RateLimiter,
        bucket: str = "general",
        path_prefix: str = "/api/",
        skip_paths: Sequence[str] = ("/api/stats",),
    ):
        super().__init__(app)
        self.limiter = limiter
        self.bucket = bucket
        self.path_prefix = path_prefix
        self.skip_paths = tuple(skip_paths)

    def _applies_to(self, path: str) -> bool:
        if not path.startswith(self.path_prefix):
            return False
        return not any(path.startswith(skip) for skip in self.skip_paths)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if request.method == "OPTIONS" or not self._applies_to(request.url.path):
            return await call_next(request)

        client_host = request.client.host if request.client else None
        # The edge guard is IP based even when a user id header is present
        identity = resolve_identity(
            {k: v for k, v in request.headers.items() if k.lower() != "x-user-id"},
            client_host,
        )
        result = self.limiter.try_consume(self.bucket, identity)
        now = self.limiter.now()

        if not result.allowed:
            logger.info(
                "Global rate limit exceeded",
                extra={"bucket": self.bucket, "identity": identity.value, "path": request.url.path},
            )
            return create_rate_limit_response(
                result, self.limiter.get_config(self.bucket), now
            )

        response = await call_next(request)

        # A route-level bucket that already answered keeps its own headers
        response.headers.setdefault("X-RateLimit-Limit", str(result.limit))
        response.headers.setdefault("X-RateLimit-Remaining", str(result.remaining))
        response.headers.setdefault("X-RateLimit-Reset", str(result.reset_at_ms))

        return response
