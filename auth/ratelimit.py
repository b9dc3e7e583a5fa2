"""
auth/ratelimit.py -- Fixed-window rate limiter for the authentication endpoints.

Built on the `limits` library (the counter backend behind slowapi, which the
API layer also uses), so the same storage URIs work: "memory://" for a
single process, "redis://host:6379" for a counter store shared by several
workers.

Algorithm: fixed window per key. The window opens at the key's first
request and lasts window_seconds from that instant; it is NOT aligned to
wall-clock boundaries, so keys do not all reset at the same moment.
A client that bursts at the end of one window and again at the start of the
next can get up to 2x the nominal limit across the seam. A sliding window would close that gap at the cost of more
state per key.

Counting: every check() records the attempt, allowed or not, and the
increment is atomic in the storage backend (per-key lock in memory, INCR in
Redis), so concurrent requests sharing a key cannot lose updates.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass

from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter


@dataclass(frozen=True)
class RatePolicy:
    """A named limit: at most `limit` requests per `window_seconds` per key."""

    name: str
    limit: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.window_seconds <= 0:
            raise ValueError(f"Rate policy {self.name!r} needs a positive window, got {self.window_seconds!r}")


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


class RateLimiter:
    """Answer allow/deny for a key under a limit and window.

    Usage:
        limiter = RateLimiter("memory://")
        decision = limiter.check("login-ip:203.0.113.7", limit=20, window_seconds=60)
        if not decision.allowed:
            ...  # reject with Retry-After: decision.retry_after
    """

    def __init__(self, storage_uri: str = "memory://") -> None:
        self.storage = storage_from_string(storage_uri)
        self._strategy = FixedWindowRateLimiter(self.storage)

    def check(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        """Record one attempt for key and decide whether it is within the limit.

        A limit of 0 or less disables limiting. Raises ValueError for a
        non-positive window.
        """
        if limit <= 0:
            return RateDecision(allowed=True)
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds!r}")

        item = RateLimitItemPerSecond(limit, window_seconds)
        allowed = self._strategy.hit(item, key)
        reset_time, remaining = self._strategy.get_window_stats(item, key)
        if allowed:
            return RateDecision(allowed=True, remaining=int(remaining))
        retry_after = max(1, math.ceil(reset_time - time.time()))
        return RateDecision(allowed=False, retry_after=retry_after, remaining=0)

    def check_policy(self, policy: RatePolicy, identity: str) -> RateDecision:
        return self.check(f"{policy.name}:{identity}", policy.limit, policy.window_seconds)

    def reset(self) -> None:
        """Clear all counters. Meant for tests and operator tooling."""
        self.storage.reset()
