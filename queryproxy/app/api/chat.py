"""Chat query endpoints.

Both streaming routes share one pipeline; ``/api/query`` drains the same
pipeline into a single JSON reply.
"""

import json
from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from queryproxy.app.api.dependencies import OrchestratorDep, RateLimiterDep
from queryproxy.app.core.logging import get_logger
from queryproxy.app.core.utils import utc_isoformat
from queryproxy.app.exceptions import InvalidJSONPayload, ModerationBlocked, RateLimitExceeded
from queryproxy.app.middleware.rate_limit import (
    apply_rate_limit,
    identity_from_request,
    rate_limit_headers,
)
from queryproxy.app.middleware.request_id import get_request_id

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])

SSE_MEDIA_TYPE = "text/event-stream"
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.info(f"Rejected malformed JSON body: {e}", extra={"path": request.url.path})
        raise InvalidJSONPayload() from e


async def _stream_query(request: Request, orchestrator: OrchestratorDep) -> Response:
    payload = await read_json(request)
    identity = identity_from_request(request)

    try:
        ctx = orchestrator.prepare(payload, identity, get_request_id(request))
    except RateLimitExceeded as exc:
        if exc.bucket != "openrouter":
            raise
        headers = {**SSE_HEADERS, **rate_limit_headers(exc.result, orchestrator.limiter.now())}
        return Response(
            content=orchestrator.rate_limit_notice(exc),
            status_code=429,
            media_type=SSE_MEDIA_TYPE,
            headers=headers,
        )
    except ModerationBlocked as exc:
        return Response(
            content=orchestrator.refusal_stream(exc),
            media_type=SSE_MEDIA_TYPE,
            headers=SSE_HEADERS,
        )

    return StreamingResponse(
        orchestrator.stream(ctx),
        media_type=SSE_MEDIA_TYPE,
        headers=SSE_HEADERS,
    )


@router.post("/query-stream")
async def query_stream(request: Request, orchestrator: OrchestratorDep) -> Response:
    """Stream a chat answer as ``data: {"content", "done"}`` frames."""
    return await _stream_query(request, orchestrator)


@router.post("/openrouter")
async def openrouter_stream(request: Request, orchestrator: OrchestratorDep) -> Response:
    """Same pipeline as /api/query-stream, kept for existing clients."""
    return await _stream_query(request, orchestrator)


@router.get("/openrouter")
async def openrouter_status(request: Request, limiter: RateLimiterDep) -> Response:
    """Report the caller's daily upstream allowance without consuming it."""
    blocked = apply_rate_limit(limiter, request, "stats")
    if blocked is not None:
        return blocked

    identity = identity_from_request(request)
    status = limiter.status("openrouter", identity)
    limiter.increment("stats", identity)

    return JSONResponse({
        "shouldHide": status.is_blocked,
        "count": status.count,
        "limit": status.limit,
        "remaining": status.remaining,
        "resetAt": int(status.reset_at * 1000),
    })


@router.post("/query")
async def query(request: Request, orchestrator: OrchestratorDep) -> Response:
    """Non-streaming variant; every rate limit is reported as a JSON 429."""
    payload = await read_json(request)
    identity = identity_from_request(request)

    try:
        ctx = orchestrator.prepare(payload, identity, get_request_id(request))
    except ModerationBlocked as exc:
        return JSONResponse({
            "response": exc.refusal,
            "query": payload.get("query"),
            "model": payload.get("model") or orchestrator.catalog.default_model,
            "timestamp": utc_isoformat(),
        })

    return JSONResponse(await orchestrator.collect(ctx))
