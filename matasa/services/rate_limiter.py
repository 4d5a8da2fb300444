"""
Per-key sliding-window rate limiter for USSD turns.

Uses a Redis sorted set per key (member = request timestamp) when
REDIS_URL points at Redis, falls back to an in-process deque store for
development/testing.

Fails open: any backend error answers ``limited=False``. Only confirmed
quota exhaustion blocks a request.
"""

from __future__ import annotations

import logging
import re
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


@dataclass
class RateLimitResult:
    limited: bool
    limit: int
    remaining: int
    retry_after: int = 0  # seconds

    def to_dict(self) -> dict:
        return {
            "limited": self.limited,
            "limit": self.limit,
            "remaining": self.remaining,
            "retry_after": self.retry_after,
        }


class _MemoryWindowBackend:
    """Sliding windows kept in process memory (dev/testing).

    Keys whose newest hit has left the window are swept at most once per
    window length, so idle phone numbers do not accumulate.
    """

    def __init__(self) -> None:
        self._windows: dict[str, deque] = {}
        self._lock = threading.Lock()
        self._last_sweep_ms = 0

    def _sweep(self, now_ms: int, window_ms: int) -> None:
        if now_ms - self._last_sweep_ms < window_ms:
            return
        self._last_sweep_ms = now_ms
        cutoff = now_ms - window_ms
        for key in [k for k, w in self._windows.items() if not w or w[-1] <= cutoff]:
            del self._windows[key]

    def hit(self, key: str, now_ms: int, window_ms: int) -> tuple[int, int | None]:
        """Record a hit; return (count inside window, oldest timestamp)."""
        with self._lock:
            self._sweep(now_ms, window_ms)
            window = self._windows.setdefault(key, deque())
            while window and window[0] <= now_ms - window_ms:
                window.popleft()
            window.append(now_ms)
            return len(window), window[0]

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)


class _RedisWindowBackend:
    """Sliding windows on Redis sorted sets."""

    def __init__(self, client) -> None:
        self.client = client

    def hit(self, key: str, now_ms: int, window_ms: int) -> tuple[int, int | None]:
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(key, 0, now_ms - window_ms)
        pipe.zadd(key, {f"{now_ms}-{uuid.uuid4().hex[:8]}": now_ms})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.pexpire(key, window_ms)
        _removed, _added, count, oldest, _expire = pipe.execute()
        oldest_ms = int(oldest[0][1]) if oldest else None
        return int(count), oldest_ms

    def reset(self, key: str | None = None) -> None:
        if key is not None:
            self.client.delete(key)


def build_backend(redis_url: str | None):
    """Redis when configured and reachable, in-memory otherwise."""
    if redis_url and not redis_url.startswith("memory://"):
        try:
            import redis as _redis
            client = _redis.from_url(redis_url, socket_timeout=1)
            client.ping()
            logger.info("Rate limiter: using Redis at %s", redis_url.split("@")[-1])
            return _RedisWindowBackend(client)
        except Exception as exc:
            logger.warning("Redis unavailable (%s); rate limiter falling back to memory", exc)
    return _MemoryWindowBackend()


class RateLimiterService:

    def __init__(self, backend=None, *, ussd_limit: int = 20, ussd_window_ms: int = 3_600_000) -> None:
        self.backend = backend or _MemoryWindowBackend()
        self.ussd_limit = ussd_limit
        self.ussd_window_ms = ussd_window_ms

    def check(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        now_ms = int(time.time() * 1000)
        try:
            count, oldest_ms = self.backend.hit(f"ratelimit:{key}", now_ms, window_ms)
        except Exception as exc:
            logger.warning("Rate limiter backend error for %s, failing open: %s", key, exc)
            return RateLimitResult(limited=False, limit=max_requests, remaining=max_requests)

        remaining = max(0, max_requests - count)
        if count > max_requests:
            retry_after_ms = (oldest_ms + window_ms - now_ms) if oldest_ms is not None else window_ms
            return RateLimitResult(
                limited=True,
                limit=max_requests,
                remaining=0,
                retry_after=max(1, -(-retry_after_ms // 1000)),
            )
        return RateLimitResult(limited=False, limit=max_requests, remaining=remaining)

    def check_ussd(self, phone_number: str) -> RateLimitResult:
        digits = _NON_DIGITS.sub("", phone_number or "") or "unknown"
        return self.check(f"ussd:{digits}", self.ussd_window_ms, self.ussd_limit)
