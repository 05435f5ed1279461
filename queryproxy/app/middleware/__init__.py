"""HTTP middleware for the query proxy."""

from queryproxy.app.middleware.rate_limit import RateLimitMiddleware
from queryproxy.app.middleware.request_id import RequestIdMiddleware, get_request_id
from queryproxy.app.middleware.request_size import RequestSizeLimitMiddleware

__all__ = [
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "RequestSizeLimitMiddleware",
    "get_request_id",
]
