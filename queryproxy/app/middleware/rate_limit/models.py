"""Rate limiting data models.

This module contains dataclasses for bucket configuration, per-identity
window state and check results. Times are epoch seconds (float).
"""

import math
import time
from dataclasses import dataclass, field
from typing import Dict


@dataclass(frozen=True)
class RateLimitConfig:
    """Named window/limit pair plus the message shown when it is exhausted."""
    window_seconds: float
    max_requests: int
    message: str = "Rate limit exceeded. Please try again later."


@dataclass
class RateLimitEntry:
    """Fixed-window counter for one identity inside one bucket."""
    count: int = 0
    reset_at: float = 0.0
    first_request_at: float = field(default_factory=time.time)


@dataclass
class RateLimitBucket:
    """A bucket configuration and its own identity -> entry map."""
    name: str
    config: RateLimitConfig
    entries: Dict[str, RateLimitEntry] = field(default_factory=dict)


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    limit: int

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets, never negative."""
        return max(0, math.ceil(self.reset_at - now))

    @property
    def reset_at_ms(self) -> int:
        return int(self.reset_at * 1000)


@dataclass(frozen=True)
class RateLimitStatus:
    """Read-only view used by the status endpoint."""
    count: int
    limit: int
    remaining: int
    reset_at: float
    is_blocked: bool


@dataclass(frozen=True)
class ClientIdentity:
    """Who a request is counted against: a user id, else a client IP."""
    value: str
    kind: str  # "user" | "ip"
