"""Sliding-window rate limiting keyed by caller."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: float = 0.0


class RateLimitStore(ABC):
    """Storage for per-key request timestamps."""

    @abstractmethod
    def hit(self, key: str, now: float, window_seconds: float) -> list[float]:
        """Drop timestamps older than the window and return the rest, oldest first."""

    @abstractmethod
    def record(self, key: str, now: float) -> None:
        ...

    @abstractmethod
    def reset(self, key: str | None = None) -> None:
        ...


class InMemoryRateLimitStore(RateLimitStore):
    def __init__(self) -> None:
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def hit(self, key: str, now: float, window_seconds: float) -> list[float]:
        hits = self._hits[key]
        while hits and hits[0] <= now - window_seconds:
            hits.popleft()
        if not hits:
            del self._hits[key]
        return list(hits)

    def record(self, key: str, now: float) -> None:
        self._hits[key].append(now)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._hits.clear()
        else:
            self._hits.pop(key, None)


class RateLimiter:
    """At most ``max_requests`` per ``window_seconds`` per key.

    A per-key limit (an API key's own ``rate_limit``) overrides the default.
    """

    def __init__(
        self,
        store: RateLimitStore | None = None,
        window_seconds: float = 900.0,
        max_requests: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store or InMemoryRateLimitStore()
        self._window_seconds = window_seconds
        self._max_requests = max_requests
        self._clock = clock

    def check(self, key: str, limit: int | None = None) -> RateLimitDecision:
        """Count one request for ``key`` if it fits in the window."""

        limit = limit or self._max_requests
        now = self._clock()
        hits = self._store.hit(key, now, self._window_seconds)
        if len(hits) >= limit:
            retry_after = hits[len(hits) - limit] + self._window_seconds - now
            return RateLimitDecision(False, limit, 0, max(retry_after, 0.0))
        self._store.record(key, now)
        return RateLimitDecision(True, limit, limit - len(hits) - 1)

    def reset(self, key: str | None = None) -> None:
        self._store.reset(key)
