"""
Tests for per-route-class request budgets.
"""

import pytest

from storefront.exceptions import RateLimitedError
from storefront.services.rate_limit import (
    InMemoryCounterStore,
    RateLimiter,
    RateLimitPolicies,
    RateLimitPolicy,
)

POLICY = RateLimitPolicy(
    route_class="payment",
    window_seconds=60,
    max_requests=5,
    message="Too many payment requests, please try again later",
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(InMemoryCounterStore(), clock=clock)


class TestRateLimiter:
    """Tests for RateLimiter.check."""

    @pytest.mark.asyncio
    async def test_allows_up_to_max(self, limiter):
        for _ in range(5):
            await limiter.check(POLICY, "198.51.100.1")

    @pytest.mark.asyncio
    async def test_rejects_request_over_budget(self, limiter):
        for _ in range(5):
            await limiter.check(POLICY, "198.51.100.1")

        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.check(POLICY, "198.51.100.1")

        assert exc_info.value.status_code == 429
        assert exc_info.value.route_class == "payment"
        assert exc_info.value.public_message == POLICY.message
        assert exc_info.value.retry_after_seconds == 60

    @pytest.mark.asyncio
    async def test_window_slides(self, limiter, clock):
        for _ in range(5):
            await limiter.check(POLICY, "198.51.100.1")
            clock.now += 10

        # Oldest hit (t=1000) leaves the window at t=1060
        clock.now = 1059.5
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.check(POLICY, "198.51.100.1")
        assert exc_info.value.retry_after_seconds == 1

        clock.now = 1060.0
        await limiter.check(POLICY, "198.51.100.1")

    @pytest.mark.asyncio
    async def test_callers_have_separate_budgets(self, limiter):
        for _ in range(5):
            await limiter.check(POLICY, "198.51.100.1")
        await limiter.check(POLICY, "198.51.100.2")

    @pytest.mark.asyncio
    async def test_route_classes_have_separate_budgets(self, limiter):
        other = RateLimitPolicy(route_class="result", window_seconds=60, max_requests=1, message="")
        for _ in range(5):
            await limiter.check(POLICY, "198.51.100.1")
        await limiter.check(other, "198.51.100.1")

    @pytest.mark.asyncio
    async def test_rejected_requests_are_not_counted(self, limiter, clock):
        for _ in range(5):
            await limiter.check(POLICY, "198.51.100.1")
        for _ in range(3):
            with pytest.raises(RateLimitedError):
                await limiter.check(POLICY, "198.51.100.1")

        clock.now += 60
        for _ in range(5):
            await limiter.check(POLICY, "198.51.100.1")


class TestInMemoryCounterStore:
    """Tests for InMemoryCounterStore housekeeping."""

    @pytest.mark.asyncio
    async def test_stale_keys_dropped_when_full(self, monkeypatch):
        store = InMemoryCounterStore()
        monkeypatch.setattr(InMemoryCounterStore, "_MAX_KEYS", 3)
        for caller in ("a", "b", "c"):
            assert await store.try_acquire(caller, 1, 60, now=0.0) is None

        assert await store.try_acquire("d", 1, 60, now=120.0) is None
        assert set(store._hits) == {"d"}

    @pytest.mark.asyncio
    async def test_cleanup_honours_each_keys_window(self, monkeypatch):
        store = InMemoryCounterStore()
        monkeypatch.setattr(InMemoryCounterStore, "_MAX_KEYS", 2)
        assert await store.try_acquire("general:a", 1, 900, now=0.0) is None
        assert await store.try_acquire("payment:b", 1, 60, now=0.0) is None

        # A short-window hit from a new caller triggers cleanup
        assert await store.try_acquire("payment:c", 1, 60, now=100.0) is None

        assert set(store._hits) == {"general:a", "payment:c"}
        retry_after = await store.try_acquire("general:a", 1, 900, now=101.0)
        assert retry_after == pytest.approx(799.0)


class TestPolicies:
    """Tests for RateLimitPolicies.from_settings."""

    def test_defaults(self, test_settings):
        policies = RateLimitPolicies.from_settings(test_settings)
        assert (policies.general.window_seconds, policies.general.max_requests) == (900, 200)
        assert (policies.payment.window_seconds, policies.payment.max_requests) == (60, 5)
        assert (policies.result.window_seconds, policies.result.max_requests) == (60, 10)
