"""
Request budgets per route class.

Sliding-window limits keyed by (route class, caller). Counters live behind
the CounterStore protocol so the in-memory store can be swapped for a shared
backend when running more than one process.
"""

import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from structlog import get_logger

from storefront.config import Settings
from storefront.exceptions import RateLimitedError

logger = get_logger(__name__)


class CounterStore(Protocol):
    """Shared counter backend."""

    async def try_acquire(
        self, key: str, limit: int, window_seconds: float, now: float
    ) -> float | None:
        """
        Record a hit for key if fewer than `limit` hits fall inside the window.

        Returns:
            None if the hit was recorded, otherwise seconds until a slot frees
        """
        ...


class InMemoryCounterStore:
    """Process-local sliding-window log."""

    _MAX_KEYS = 10000

    def __init__(self) -> None:
        self._hits: dict[str, deque[float]] = {}
        self._windows: dict[str, float] = {}

    async def try_acquire(
        self, key: str, limit: int, window_seconds: float, now: float
    ) -> float | None:
        hits = self._hits.get(key)
        if hits is None:
            self._cleanup(now)
            hits = self._hits.setdefault(key, deque())
        self._windows[key] = window_seconds

        cutoff = now - window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()

        if len(hits) >= limit:
            return hits[0] + window_seconds - now

        hits.append(now)
        return None

    def _cleanup(self, now: float) -> None:
        """Drop keys whose newest hit fell out of that key's own window."""
        if len(self._hits) < self._MAX_KEYS:
            return
        stale = [
            k for k, hits in self._hits.items() if not hits or hits[-1] <= now - self._windows[k]
        ]
        for k in stale:
            del self._hits[k]
            del self._windows[k]


@dataclass(frozen=True)
class RateLimitPolicy:
    """Budget for one route class."""

    route_class: str
    window_seconds: int
    max_requests: int
    message: str


@dataclass(frozen=True)
class RateLimitPolicies:
    """Budgets for all route classes."""

    general: RateLimitPolicy
    payment: RateLimitPolicy
    result: RateLimitPolicy

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimitPolicies":
        return cls(
            general=RateLimitPolicy(
                route_class="general",
                window_seconds=settings.rate_limit_general_window_seconds,
                max_requests=settings.rate_limit_general_max,
                message="Too many requests, please try again later",
            ),
            payment=RateLimitPolicy(
                route_class="payment",
                window_seconds=settings.rate_limit_payment_window_seconds,
                max_requests=settings.rate_limit_payment_max,
                message="Too many payment requests, please try again later",
            ),
            result=RateLimitPolicy(
                route_class="result",
                window_seconds=settings.rate_limit_result_window_seconds,
                max_requests=settings.rate_limit_result_max,
                message="Too many status queries, please try again later",
            ),
        )


class RateLimiter:
    """Enforces request budgets against a counter store."""

    def __init__(
        self,
        store: CounterStore,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.clock = clock

    async def check(self, policy: RateLimitPolicy, caller: str) -> None:
        """
        Count one request from caller against the policy.

        Raises:
            RateLimitedError: If the caller has exhausted the budget
        """
        key = f"{policy.route_class}:{caller}"
        retry_after = await self.store.try_acquire(
            key, policy.max_requests, policy.window_seconds, self.clock()
        )
        if retry_after is None:
            return

        logger.warning(
            "rate_limit_exceeded",
            route_class=policy.route_class,
            caller=caller,
            retry_after_seconds=retry_after,
        )
        raise RateLimitedError(
            route_class=policy.route_class,
            message=policy.message,
            retry_after_seconds=max(1, math.ceil(retry_after)),
        )
