"""Custom exceptions for the query proxy."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from queryproxy.app.middleware.rate_limit.models import RateLimitConfig, RateLimitResult


class ProxyError(Exception):
    """Base class for proxy exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Proxy error"):
        self.message = message
        super().__init__(message)


class RequestValidationFailed(ProxyError):
    """Raised when an inbound payload fails schema validation.

    Carries every field-level message, not only the first one.
    Maps to HTTP 400 Bad Request.
    """
    status_code = 400

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Validation failed")


class RateLimitExceeded(ProxyError):
    """Raised when an identity has exhausted a rate-limit bucket.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, bucket: str, result: "RateLimitResult", config: "RateLimitConfig"):
        self.bucket = bucket
        self.result = result
        self.config = config
        super().__init__(config.message)


class ModerationBlocked(ProxyError):
    """Raised when inbound content matches the offensive-content screen.

    Terminal and not retryable; the client always receives the same refusal.
    """
    status_code = 200

    def __init__(self, refusal: str, matched_pattern: str | None = None):
        self.refusal = refusal
        self.matched_pattern = matched_pattern
        super().__init__(refusal)


class UpstreamUnavailable(ProxyError):
    """Raised when the upstream provider cannot serve a request.

    Covers non-2xx statuses and network failures. Never surfaces to the
    client: the orchestrator turns it into a simulation message.
    """
    status_code = 502

    def __init__(self, reason: str, upstream_status: int | None = None):
        self.reason = reason
        self.upstream_status = upstream_status
        super().__init__(reason)


class PayloadTooLarge(ProxyError):
    """Raised when a request body exceeds the configured size.

    Maps to HTTP 413 Payload Too Large.
    """
    status_code = 413

    def __init__(self, max_size: int):
        self.max_size = max_size
        super().__init__(f"Request body too large. Maximum allowed: {max_size} bytes")


class InvalidJSONPayload(ProxyError):
    """Raised when a request body cannot be decoded as JSON.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400

    def __init__(self):
        super().__init__("Invalid JSON payload")
