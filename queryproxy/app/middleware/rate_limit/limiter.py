"""In-process fixed-window rate limiter.

Each named bucket (ai-query, general, tracking, stats, openrouter) keeps
its own identity -> counter map. A counter is reset wholesale once its
window ends, so up to 2x max_requests can pass around a window boundary.

``check`` and ``increment`` are separate calls: handlers check before doing
expensive work and increment once the work has started. Two concurrent
requests for the same identity can both pass ``check`` and transiently
admit one request above the limit. ``try_consume`` does both steps under
the lock for callers that need the stricter behaviour.
"""

import dataclasses
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional

from queryproxy.app.core.logging import get_logger
from queryproxy.app.middleware.rate_limit.models import (
    ClientIdentity,
    RateLimitBucket,
    RateLimitConfig,
    RateLimitEntry,
    RateLimitResult,
    RateLimitStatus,
)

logger = get_logger(__name__)

MINUTE = 60.0
DAY = 24 * 60 * 60.0

# Default rate limit configurations per endpoint class
BUCKET_PRESETS: Dict[str, RateLimitConfig] = {
    # AI query endpoints - restrictive due to cost
    "ai-query": RateLimitConfig(
        window_seconds=MINUTE,
        max_requests=10,
        message="Too many AI queries. Please wait before making another request.",
    ),
    "general": RateLimitConfig(
        window_seconds=MINUTE,
        max_requests=30,
        message="Rate limit exceeded. Please try again later.",
    ),
    "tracking": RateLimitConfig(
        window_seconds=MINUTE,
        max_requests=60,
        message="Too many tracking requests. Please slow down.",
    ),
    "stats": RateLimitConfig(
        window_seconds=MINUTE,
        max_requests=100,
        message="Too many requests. Please wait.",
    ),
    "openrouter": RateLimitConfig(
        window_seconds=DAY,
        max_requests=45,
        message=(
            "OpenRouter rate limit exceeded. You've used all 45 requests. "
            "The limit resets in 24 hours."
        ),
    ),
}

USER_ID_HEADER = "x-user-id"
FORWARDED_FOR_HEADER = "x-forwarded-for"
DIRECT_IP_HEADERS = ("x-real-ip", "cf-connecting-ip")


def resolve_identity(
    headers: Mapping[str, str],
    client_host: Optional[str] = None,
) -> ClientIdentity:
    """Pick the identity a request is counted against.

    Precedence: explicit user id header, first hop of X-Forwarded-For,
    direct-connection IP headers, the socket peer, then "unknown".
    """
    user_id = (headers.get(USER_ID_HEADER) or "").strip()
    if user_id:
        return ClientIdentity(value=user_id, kind="user")

    forwarded = headers.get(FORWARDED_FOR_HEADER) or ""
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return ClientIdentity(value=first_hop, kind="ip")

    for header in DIRECT_IP_HEADERS:
        value = (headers.get(header) or "").strip()
        if value:
            return ClientIdentity(value=value, kind="ip")

    return ClientIdentity(value=client_host or "unknown", kind="ip")


class RateLimiter:
    """Process-wide rate limit service.

    Constructed once by the application factory and injected into handlers.
    All map mutations happen under a single lock, so threaded callers get
    no worse than the documented check-then-increment race.
    """

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        presets: Optional[Mapping[str, RateLimitConfig]] = None,
        clock: Callable[[], float] = time.time,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        """Initialize rate limiter.

        Args:
            presets: Bucket name -> configuration (defaults to BUCKET_PRESETS)
            clock: Returns the current time in epoch seconds
            max_entries: Bucket size above which expired entries are collected
        """
        self._presets: Dict[str, RateLimitConfig] = dict(presets or BUCKET_PRESETS)
        self._clock = clock
        self._max_entries = max_entries
        self._buckets: Dict[str, RateLimitBucket] = {}
        self._lock = threading.Lock()

    def get_config(
        self,
        bucket: str,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> RateLimitConfig:
        """Resolve a bucket preset, applying per-call overrides."""
        try:
            config = self._presets[bucket]
        except KeyError:
            raise ValueError(f"Unknown rate limit bucket: {bucket}") from None
        if overrides:
            config = dataclasses.replace(config, **overrides)
        return config

    @staticmethod
    def _storage_key(bucket: str, config: RateLimitConfig, identity: ClientIdentity) -> str:
        # Identity kind is part of the key so user and IP limits never collide
        window_ms = int(config.window_seconds * 1000)
        return f"{bucket}-{window_ms}-{config.max_requests}-{identity.kind}"

    def _bucket_for(self, bucket: str, config: RateLimitConfig, identity: ClientIdentity) -> RateLimitBucket:
        key = self._storage_key(bucket, config, identity)
        store = self._buckets.get(key)
        if store is None:
            store = RateLimitBucket(name=key, config=config)
            self._buckets[key] = store
        return store

    def _live_entry(self, store: RateLimitBucket, identity: str, now: float) -> RateLimitEntry:
        """Return the entry for the current window, replacing an expired one.

        Adding a new identity collects expired entries once the bucket is
        over ``max_entries``.
        """
        entry = store.entries.get(identity)
        if entry is None or now >= entry.reset_at:
            is_new = entry is None
            entry = RateLimitEntry(
                count=0,
                reset_at=now + store.config.window_seconds,
                first_request_at=now,
            )
            store.entries[identity] = entry
            if is_new:
                self._collect_garbage(store, now)
        return entry

    def _collect_garbage(self, store: RateLimitBucket, now: float) -> None:
        if len(store.entries) <= self._max_entries:
            return
        cutoff = now - 2 * store.config.window_seconds
        expired = [key for key, entry in store.entries.items() if entry.reset_at < cutoff]
        for key in expired:
            del store.entries[key]
        if expired:
            logger.debug(
                f"Collected {len(expired)} expired rate limit entries",
                extra={"bucket": store.name},
            )

    @staticmethod
    def _result(entry: RateLimitEntry, config: RateLimitConfig) -> RateLimitResult:
        return RateLimitResult(
            allowed=entry.count < config.max_requests,
            remaining=max(0, config.max_requests - entry.count),
            reset_at=entry.reset_at,
            limit=config.max_requests,
        )

    def check(
        self,
        bucket: str,
        identity: ClientIdentity,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> RateLimitResult:
        """Report whether the identity may make another request. Does not count it."""
        config = self.get_config(bucket, overrides)
        with self._lock:
            now = self._clock()
            store = self._bucket_for(bucket, config, identity)
            entry = self._live_entry(store, identity.value, now)
            return self._result(entry, config)

    def increment(
        self,
        bucket: str,
        identity: ClientIdentity,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Count one request against the identity's current window."""
        config = self.get_config(bucket, overrides)
        with self._lock:
            now = self._clock()
            store = self._bucket_for(bucket, config, identity)
            entry = self._live_entry(store, identity.value, now)
            entry.count += 1

    def try_consume(
        self,
        bucket: str,
        identity: ClientIdentity,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> RateLimitResult:
        """Atomically check and, when allowed, count one request.

        The returned ``remaining`` already accounts for this request.
        """
        config = self.get_config(bucket, overrides)
        with self._lock:
            now = self._clock()
            store = self._bucket_for(bucket, config, identity)
            entry = self._live_entry(store, identity.value, now)
            if entry.count >= config.max_requests:
                return self._result(entry, config)
            entry.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=max(0, config.max_requests - entry.count),
                reset_at=entry.reset_at,
                limit=config.max_requests,
            )

    def status(
        self,
        bucket: str,
        identity: ClientIdentity,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> RateLimitStatus:
        result = self.check(bucket, identity, overrides)
        return RateLimitStatus(
            count=max(0, result.limit - result.remaining),
            limit=result.limit,
            remaining=result.remaining,
            reset_at=result.reset_at,
            is_blocked=not result.allowed,
        )

    def now(self) -> float:
        return self._clock()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "buckets": len(self._buckets),
                "entries": sum(len(b.entries) for b in self._buckets.values()),
            }

    def reset(self) -> None:
        """Drop every counter in every bucket."""
        with self._lock:
            self._buckets.clear()

    def shutdown(self) -> None:
        stats = self.stats()
        self.reset()
        logger.info("Rate limiter shut down", extra=stats)
