"""Per-user sliding-window rate limiting for tool execution."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

import structlog

from common.logging import redact_email

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: float = 0.0


class SlidingWindowRateLimiter:
    """Allows at most ``max_requests`` per ``window_seconds`` per key."""

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_requests = max_requests
        self._window = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> RateLimitResult:
        """Record a request for ``key`` if it is within the limit."""
        with self._lock:
            now = self._clock()
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self._window:
                hits.popleft()

            if len(hits) >= self._max_requests:
                retry_after = hits[0] + self._window - now
                logger.warning(
                    "rate_limit_exceeded",
                    user=redact_email(key),
                    retry_after=round(retry_after, 1),
                )
                return RateLimitResult(allowed=False, remaining=0, retry_after=retry_after)

            hits.append(now)
            return RateLimitResult(allowed=True, remaining=self._max_requests - len(hits))

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
