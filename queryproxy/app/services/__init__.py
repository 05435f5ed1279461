"""Services package for the query proxy.

This package provides:
- Payload validation and sanitization
- Offensive content moderation
- SSE parsing and framing
- The model catalog and availability tracking
- The query orchestrator that ties them together
"""

from queryproxy.app.services.model_availability import ModelAvailabilityChecker
from queryproxy.app.services.model_catalog import MODEL_MAP, ModelCatalog, ModelSelection
from queryproxy.app.services.moderation import (
    OUTPUT_REFUSAL,
    QUERY_REFUSAL,
    ContentModerator,
)
from queryproxy.app.services.orchestrator import (
    QueryContext,
    QueryOrchestrator,
    RequestState,
    StreamChunk,
)
from queryproxy.app.services.sse import SSEParser, format_chunk
from queryproxy.app.services.validation import (
    ValidatedQuery,
    ValidationResult,
    sanitize_string,
    validate_query_request,
)

__all__ = [
    "ModelAvailabilityChecker",
    "MODEL_MAP",
    "ModelCatalog",
    "ModelSelection",
    "OUTPUT_REFUSAL",
    "QUERY_REFUSAL",
    "ContentModerator",
    "QueryContext",
    "QueryOrchestrator",
    "RequestState",
    "StreamChunk",
    "SSEParser",
    "format_chunk",
    "ValidatedQuery",
    "ValidationResult",
    "sanitize_string",
    "validate_query_request",
]
