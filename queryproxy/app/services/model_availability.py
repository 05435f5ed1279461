"""Model availability tracking.

Probes each catalog model with a 1-token request, in small batches with a
pause between them, and caches the outcome. Clients can also report
failures they hit while using a model.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from queryproxy.app.core.logging import get_logger
from queryproxy.app.core.utils import utc_isoformat
from queryproxy.app.providers.openrouter import OpenRouterProvider, ProbeResult
from queryproxy.app.services.model_catalog import ModelCatalog

logger = get_logger(__name__)

# Errors that mean the model's tokens or quota are used up
TOKEN_EXHAUSTED_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"rate limit",
        r"quota exceeded",
        r"limit exceeded",
        r"insufficient quota",
        r"billing",
        r"payment required",
        r"429",
        r"402",
    )
]

# Errors that mean the model is only briefly unreachable
TEMPORARY_ERROR_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"provider error",
        r"service unavailable",
        r"timeout",
        r"503",
        r"502",
        r"504",
    )
]


def _matches_any(patterns: List[re.Pattern], *texts: Optional[str]) -> bool:
    return any(p.search(t) for p in patterns for t in texts if t)


def is_token_exhausted(*texts: Optional[str]) -> bool:
    return _matches_any(TOKEN_EXHAUSTED_PATTERNS, *texts)


def is_temporary_error(*texts: Optional[str]) -> bool:
    return _matches_any(TEMPORARY_ERROR_PATTERNS, *texts)


@dataclass
class ModelAvailability:
    available: bool
    last_checked: float
    error_count: int = 0
    last_error: Optional[str] = None


def classify_probe(result: ProbeResult) -> Tuple[bool, Optional[str]]:
    """Map a probe outcome to (available, error)."""
    if result.ok:
        return True, None
    if result.status_code is None:
        return False, result.message or "Network error"
    if is_token_exhausted(result.message, result.body):
        return False, "Token/quota exhausted"
    if is_temporary_error(result.message, result.body):
        return True, "Temporary error (will retry)"
    return False, result.message


class ModelAvailabilityChecker:
    """Caches per-model availability for the model picker.

    Usage:
        checker = ModelAvailabilityChecker(provider, catalog)
        report = await checker.check_all()
        checker.report_error("gpt-4o", "Rate limit exceeded")
    """

    def __init__(
        self,
        provider: OpenRouterProvider,
        catalog: ModelCatalog,
        cache_seconds: float = 300.0,
        batch_size: int = 3,
        batch_pause: float = 0.5,
        probe_timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._provider = provider
        self._catalog = catalog
        self._cache_seconds = cache_seconds
        self._batch_size = batch_size
        self._batch_pause = batch_pause
        self._probe_timeout = probe_timeout
        self._clock = clock
        self._sleep = sleep
        self._cache: Dict[str, ModelAvailability] = {}
        self._refresh_lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return self._provider.configured

    def get(self, model_id: str) -> Optional[ModelAvailability]:
        return self._cache.get(model_id)

    def _is_fresh(self, entry: Optional[ModelAvailability], now: float) -> bool:
        return entry is not None and (now - entry.last_checked) < self._cache_seconds

    async def _probe(self, model_id: str, now: float) -> None:
        upstream_id = self._catalog.models[model_id]
        result = await self._provider.probe_model(upstream_id, timeout=self._probe_timeout)
        available, error = classify_probe(result)

        previous = self._cache.get(model_id)
        self._cache[model_id] = ModelAvailability(
            available=available,
            last_checked=now,
            error_count=0 if available else (previous.error_count if previous else 0) + 1,
            last_error=error,
        )
        if not available:
            logger.info(
                f"Model '{model_id}' marked unavailable: {error}",
                extra={"model": upstream_id},
            )

    async def check_all(self) -> Dict[str, Any]:
        """Refresh stale entries and return the availability map.

        Stale models are probed ``batch_size`` at a time with a pause after
        each full batch.
        """
        async with self._refresh_lock:
            now = self._clock()
            stale = [
                model_id for model_id in self._catalog.models
                if not self._is_fresh(self._cache.get(model_id), now)
            ]

            for start in range(0, len(stale), self._batch_size):
                batch = stale[start:start + self._batch_size]
                await asyncio.gather(*(self._probe(model_id, now) for model_id in batch))
                if len(batch) == self._batch_size and start + self._batch_size < len(stale):
                    await self._sleep(self._batch_pause)

            available = {
                model_id: (self._cache[model_id].available if model_id in self._cache else True)
                for model_id in self._catalog.models
            }
            ages = [now - entry.last_checked for entry in self._cache.values()]

        return {
            "available": available,
            "timestamp": utc_isoformat(now),
            "cacheAge": int(max(ages + [0]) * 1000),
        }

    def report_error(self, model_id: str, error: Any) -> ModelAvailability:
        """Record a failure a client hit while using a model.

        Quota exhaustion marks the model unavailable at once; anything else
        only bumps the error count.
        """
        if isinstance(error, dict):
            message = str(error.get("message") or "")
        else:
            message = str(error or "")

        previous = self._cache.get(model_id)
        exhausted = is_token_exhausted(message)
        entry = ModelAvailability(
            available=False if exhausted else (previous.available if previous else True),
            last_checked=self._clock(),
            error_count=(previous.error_count if previous else 0) + 1,
            last_error=message,
        )
        self._cache[model_id] = entry
        logger.info(
            f"Client reported error for model '{model_id}'",
            extra={"model": model_id, "exhausted": exhausted},
        )
        return entry

    def reset(self) -> None:
        self._cache.clear()
