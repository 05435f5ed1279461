"""Chat query orchestration.

A query moves through a fixed pipeline:

    RECEIVED -> VALIDATED -> RATE_CHECKED -> MODERATED
             -> UPSTREAM_DISPATCHED -> STREAMING -> COMPLETED | FALLBACK | FAILED

``prepare`` runs the gates and raises on the first one that rejects the
request. ``run`` then dispatches upstream and yields normalized
``StreamChunk`` objects; every path ends with exactly one ``done`` chunk,
except FAILED, which ends the stream with no further data.
"""

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

from queryproxy.app.core.config import Settings
from queryproxy.app.core.logging import get_log_context, get_logger
from queryproxy.app.core.utils import utc_isoformat
from queryproxy.app.exceptions import (
    ModerationBlocked,
    RateLimitExceeded,
    UpstreamUnavailable,
)
from queryproxy.app.middleware.rate_limit import ClientIdentity, RateLimiter
from queryproxy.app.providers.openrouter import OpenRouterProvider
from queryproxy.app.services.model_catalog import ModelCatalog, ModelSelection
from queryproxy.app.services.moderation import QUERY_REFUSAL, ContentModerator
from queryproxy.app.services.sse import SSEParser, UpstreamEvent, format_chunk
from queryproxy.app.services.validation import ValidatedQuery, validate_query_request

logger = get_logger(__name__)

# Buckets consulted before dispatch, in order; both are counted on dispatch
QUERY_BUCKETS = ("ai-query", "openrouter")

TIMEOUT_NOTICE = "\n\n[Stream timeout - response too long]"
TRUNCATED_NOTICE = "\n\n[Response too long - truncated]"

DEFAULT_SYSTEM_PROMPT = """You are a helpful, intelligent, and precise AI assistant on Roovert, an advanced AI platform.

IMPORTANT CONTEXT:
- You are operating on the Roovert platform (https://roovert.com or the current domain)
- When asked "what website is this?" or "what platform are you on?", you should respond: "This is Roovert, an advanced AI platform."
- You should identify yourself as part of the Roovert ecosystem when relevant
- Always be helpful, accurate, and respectful

CONTENT GUIDELINES:
- Do not generate, discuss, or provide content that is:
  * Hateful, discriminatory, or offensive
  * Violent, threatening, or promoting harm
  * Sexually explicit or inappropriate
  * Illegal or promoting illegal activities
- If a request falls into these categories, politely decline and offer to help with something else
- Maintain a professional and respectful tone at all times

Answer the user's questions clearly, accurately, and in a helpful manner."""


class RequestState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    RATE_CHECKED = "rate_checked"
    MODERATED = "moderated"
    UPSTREAM_DISPATCHED = "upstream_dispatched"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FALLBACK = "fallback"
    FAILED = "failed"


TERMINAL_STATES = frozenset({RequestState.COMPLETED, RequestState.FALLBACK, RequestState.FAILED})


@dataclass(frozen=True)
class StreamChunk:
    content: str
    done: bool = False

    def to_sse(self) -> str:
        return format_chunk(self.content, self.done)


@dataclass
class QueryContext:
    """Per-request state carried from the gates through the stream."""
    identity: ClientIdentity
    request_id: Optional[str] = None
    query: Optional[ValidatedQuery] = None
    selection: Optional[ModelSelection] = None
    state: RequestState = RequestState.RECEIVED
    served_by: Optional[str] = None
    chunks_sent: int = 0
    response_length: int = 0
    response_parts: List[str] = field(default_factory=list)

    @property
    def model_label(self) -> str:
        return self.selection.label if self.selection else "ooverta"

    @property
    def response_text(self) -> str:
        return "".join(self.response_parts)

    def log_context(self, **extra: Any) -> Dict[str, Any]:
        return get_log_context(
            request_id=self.request_id,
            identity=self.identity.value,
            model=self.served_by or (self.selection.upstream_id if self.selection else None),
            **extra,
        )

    def transition(self, state: RequestState) -> None:
        if self.state in TERMINAL_STATES:
            raise RuntimeError(f"Request already finished in state {self.state.value}")
        logger.debug(
            f"Query state {self.state.value} -> {state.value}",
            extra=self.log_context(),
        )
        self.state = state


def build_simulation_response(query: str, reason: str, model_label: str) -> str:
    """Compose the local 'systems notice' sent when the upstream cannot answer."""
    trimmed = (query or "").strip()
    focus = f'Focus: "{trimmed}".' if trimmed else "Focus: awaiting a concrete prompt."
    return "\n".join([
        f"Systems Notice: {reason or 'Upstream provider unavailable'}.",
        "Roovert is running in local inference mode until OpenRouter is reachable.",
        "",
        focus,
        f"Intended model: {model_label}.",
        "",
        "Immediate protocol:",
        "1. Add/verify OPENROUTER_API_KEY in the service environment.",
        "2. Restart the service to restore live intelligence.",
        "3. Re-run this query to resume truth-grade responses.",
    ])


class QueryOrchestrator:
    """Runs chat queries through validation, rate limits, moderation and the upstream.

    Constructed once by the application factory; holds no per-request state.
    """

    def __init__(
        self,
        config: Settings,
        limiter: RateLimiter,
        provider: OpenRouterProvider,
        catalog: ModelCatalog,
        moderator: type[ContentModerator] = ContentModerator,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.limiter = limiter
        self.provider = provider
        self.catalog = catalog
        self.moderator = moderator
        self._clock = clock

    # Gates

    def prepare(
        self,
        payload: Any,
        identity: ClientIdentity,
        request_id: Optional[str] = None,
    ) -> QueryContext:
        """Run the validation, rate-limit and moderation gates.

        Raises:
            RequestValidationFailed: The payload breaks the schema
            RateLimitExceeded: The identity has exhausted one of QUERY_BUCKETS
            ModerationBlocked: The query matches the offensive-content screen
        """
        ctx = QueryContext(identity=identity, request_id=request_id)

        ctx.query = validate_query_request(payload, self.catalog.allowed_models).unwrap()
        ctx.selection = self.catalog.resolve(ctx.query.model, has_image=bool(ctx.query.image))
        ctx.transition(RequestState.VALIDATED)

        for bucket in QUERY_BUCKETS:
            result = self.limiter.check(bucket, identity)
            if not result.allowed:
                logger.info("Query rate limited", extra=ctx.log_context(bucket=bucket))
                raise RateLimitExceeded(bucket, result, self.limiter.get_config(bucket))
        ctx.transition(RequestState.RATE_CHECKED)

        screen = self.moderator.screen(ctx.query.query)
        if screen.is_offensive:
            logger.warning(
                "Query blocked by content moderation",
                extra=ctx.log_context(pattern=screen.matched_pattern),
            )
            raise ModerationBlocked(QUERY_REFUSAL, screen.matched_pattern)
        ctx.transition(RequestState.MODERATED)

        if ctx.selection.switched_for_vision:
            logger.info(
                "Requested model lacks vision support, using vision default",
                extra=ctx.log_context(),
            )
        return ctx

    def rate_limit_notice(self, exc: RateLimitExceeded) -> str:
        """SSE body for a request over its daily upstream allowance."""
        used = max(0, exc.result.limit - exc.result.remaining)
        seconds = exc.result.retry_after(self.limiter.now())
        message = (
            f"You've reached the request limit for this session "
            f"({used}/{exc.result.limit} requests used). "
            f"Please wait {seconds} seconds before trying again."
        )
        return format_chunk(message, done=True)

    @staticmethod
    def refusal_stream(exc: ModerationBlocked) -> str:
        return format_chunk(exc.refusal, done=True)

    # Dispatch

    def build_messages(self, query: ValidatedQuery) -> List[Dict[str, Any]]:
        """System prompt, the most recent history turns, then the current user turn."""
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": query.system_prompt or DEFAULT_SYSTEM_PROMPT}
        ]

        history = query.conversation_history[-self.config.history_limit:]
        messages.extend({"role": m.role, "content": m.content} for m in history)

        if query.image:
            messages.append({
                "role": "user",
                "content": [
                    {"type": "text", "text": query.query},
                    {"type": "image_url", "image_url": {"url": query.image}},
                ],
            })
        else:
            messages.append({"role": "user", "content": query.query})
        return messages

    def _targets(self, ctx: QueryContext) -> List[str]:
        targets = [ctx.selection.upstream_id]
        if ctx.selection.is_default:
            targets.extend(
                m for m in self.config.default_fallback_models if m not in targets
            )
        return targets

    def _count_attempt(self, ctx: QueryContext) -> None:
        for bucket in QUERY_BUCKETS:
            self.limiter.increment(bucket, ctx.identity)

    def _fallback(self, ctx: QueryContext, reason: str) -> Optional[StreamChunk]:
        """Simulation chunk, or None when even that cannot be built."""
        try:
            content = build_simulation_response(ctx.query.query, reason, ctx.model_label)
        except Exception:
            ctx.transition(RequestState.FAILED)
            logger.exception("Failed to build fallback response", extra=ctx.log_context())
            return None
        ctx.transition(RequestState.FALLBACK)
        logger.warning(f"Serving fallback response: {reason}", extra=ctx.log_context())
        return StreamChunk(content, done=True)

    def _finish(self, ctx: QueryContext, notice: str = "") -> List[StreamChunk]:
        chunks = []
        verdict = self.moderator.filter_output(ctx.response_text)
        if verdict.was_filtered:
            logger.warning("Model output filtered by content moderation", extra=ctx.log_context())
            chunks.append(StreamChunk("\n\n" + verdict.filtered))
        chunks.append(StreamChunk(notice, done=True))
        ctx.transition(RequestState.COMPLETED)
        return chunks

    def _consume(self, ctx: QueryContext, event: UpstreamEvent) -> tuple[List[StreamChunk], bool]:
        """Turn one upstream event into output chunks; the flag marks the end."""
        if event.content:
            ctx.response_length += len(event.content)
            if ctx.response_length > self.config.max_response_length:
                logger.warning("Upstream response truncated", extra=ctx.log_context())
                return self._finish(ctx, TRUNCATED_NOTICE), True
            ctx.response_parts.append(event.content)
            chunks = [StreamChunk(event.content)]
        else:
            chunks = []

        if event.is_terminal:
            return chunks + self._finish(ctx), True
        return chunks, False

    async def _relay(
        self,
        ctx: QueryContext,
        model: str,
        messages: List[Dict[str, Any]],
    ) -> AsyncGenerator[StreamChunk, None]:
        payload = self.provider.build_payload(
            model,
            messages,
            temperature=self.config.upstream_temperature,
            max_tokens=self.config.upstream_max_tokens,
        )
        parser = SSEParser()
        started = self._clock()
        ctx.served_by = model

        async with aclosing(self.provider.stream_chat(payload)) as body:
            async for text in body:
                if ctx.state is not RequestState.STREAMING:
                    ctx.transition(RequestState.STREAMING)

                if self._clock() - started > self.config.max_stream_duration_seconds:
                    logger.warning("Upstream stream exceeded time limit", extra=ctx.log_context())
                    for chunk in self._finish(ctx, TIMEOUT_NOTICE):
                        yield chunk
                    return

                for event in parser.feed(text):
                    chunks, finished = self._consume(ctx, event)
                    for chunk in chunks:
                        ctx.chunks_sent += 1
                        yield chunk
                    if finished:
                        return

        # Body ended without an explicit terminal signal
        for event in parser.flush():
            chunks, finished = self._consume(ctx, event)
            for chunk in chunks:
                ctx.chunks_sent += 1
                yield chunk
            if finished:
                return
        if ctx.state is not RequestState.STREAMING:
            ctx.transition(RequestState.STREAMING)
        for chunk in self._finish(ctx):
            yield chunk

    async def run(self, ctx: QueryContext) -> AsyncGenerator[StreamChunk, None]:
        """Dispatch a prepared query and yield its output chunks in order."""
        if not self.provider.configured:
            logger.error("OPENROUTER_API_KEY is missing", extra=ctx.log_context())
            chunk = self._fallback(ctx, "OpenRouter API key missing")
            if chunk is not None:
                yield chunk
            return

        reason = "Upstream provider unavailable"
        try:
            messages = self.build_messages(ctx.query)
            self._count_attempt(ctx)
            ctx.transition(RequestState.UPSTREAM_DISPATCHED)

            targets = self._targets(ctx)
            for attempt, model in enumerate(targets):
                if attempt:
                    logger.info(f"Retrying with fallback model {model}", extra=ctx.log_context())
                try:
                    async with aclosing(self._relay(ctx, model, messages)) as chunks:
                        async for chunk in chunks:
                            yield chunk
                    return
                except UpstreamUnavailable as exc:
                    reason = exc.reason
                    logger.warning(
                        f"Upstream request failed: {exc.reason}",
                        extra=ctx.log_context(upstream_status=exc.upstream_status),
                    )
                    # Only a clean non-success status before any output moves down the chain
                    if exc.upstream_status is None or ctx.chunks_sent:
                        break
        except (asyncio.CancelledError, GeneratorExit):
            logger.info("Client disconnected, upstream stream closed", extra=ctx.log_context())
            raise
        except Exception as exc:
            reason = str(exc) or "Streaming failed"
            logger.exception("Unexpected error while streaming query", extra=ctx.log_context())

        if ctx.state in TERMINAL_STATES:
            return
        chunk = self._fallback(ctx, reason)
        if chunk is not None:
            yield chunk

    async def stream(self, ctx: QueryContext) -> AsyncGenerator[str, None]:
        """``run`` rendered as SSE frames."""
        async with aclosing(self.run(ctx)) as chunks:
            async for chunk in chunks:
                yield chunk.to_sse()

    async def collect(self, ctx: QueryContext) -> Dict[str, Any]:
        """Drain ``run`` into a single JSON-ready reply."""
        parts = []
        async with aclosing(self.run(ctx)) as chunks:
            async for chunk in chunks:
                parts.append(chunk.content)
        return {
            "response": "".join(parts),
            "query": ctx.query.query,
            "model": ctx.model_label,
            "timestamp": utc_isoformat(),
        }
