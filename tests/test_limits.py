"""Tests for fixed-window limits, slowdown and brute-force lockout."""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.responses import Response

from authpool.config import RateScope, SlowdownScope
from authpool.service.errors import LockedError, RateLimitedError, StoreUnavailableError
from authpool.service.limits import BruteForceGuard, RateDecision, RateLimiter, SlowDown
from authpool.storage.counters import MemoryCounterStore

LOCK_SECONDS = 15 * 60


@pytest.fixture
def counters(clock):
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def limiter(counters):
    return RateLimiter(
        counters,
        {
            "global": RateScope(window_ms=900_000, max=300),
            "auth": RateScope(window_ms=60_000, max=5),
        },
    )


@pytest.fixture
def bruteforce(counters, clock):
    return BruteForceGuard(counters, threshold=5, lock_seconds=LOCK_SECONDS, clock=clock)


class UnreachableCounters:
    async def hit(self, key, window_ms):
        raise RedisConnectionError("connection refused")

    async def get_lockout(self, key):
        raise RedisConnectionError("connection refused")


class TestRateLimiter:
    async def test_allows_up_to_max_then_rejects(self, limiter):
        decisions = [await limiter.hit("auth", "10.0.0.1") for _ in range(5)]

        assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0]
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.hit("auth", "10.0.0.1")
        assert exc_info.value.retry_after == 60
        assert exc_info.value.detail["retry_after_seconds"] == 60

    async def test_window_resets(self, limiter, clock):
        for _ in range(5):
            await limiter.hit("auth", "10.0.0.1")
        clock.advance(60)

        decision = await limiter.hit("auth", "10.0.0.1")
        assert decision.remaining == 4

    async def test_retry_after_shrinks_within_window(self, limiter, clock):
        for _ in range(5):
            await limiter.hit("auth", "10.0.0.1")
        clock.advance(45)

        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.hit("auth", "10.0.0.1")
        assert exc_info.value.retry_after == 15

    async def test_scopes_and_keys_are_independent(self, limiter):
        for _ in range(5):
            await limiter.hit("auth", "10.0.0.1")

        await limiter.hit("auth", "10.0.0.2")
        decision = await limiter.hit("global", "10.0.0.1")
        assert decision.limit == 300
        assert decision.remaining == 299

    async def test_concurrent_hits_are_not_lost(self, counters):
        limiter = RateLimiter(counters, {"global": RateScope(window_ms=60_000, max=1000)})

        await asyncio.gather(*(limiter.hit("global", "k") for _ in range(100)))

        decision = await limiter.hit("global", "k")
        assert decision.remaining == 1000 - 101

    async def test_counter_outage_is_store_unavailable(self):
        limiter = RateLimiter(UnreachableCounters(), {"auth": RateScope(window_ms=1000, max=1)})

        with pytest.raises(StoreUnavailableError):
            await limiter.hit("auth", "k")

    def test_decision_headers(self):
        response = Response()
        RateDecision(5, -1, 60).apply_headers(response)

        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == "60"


class TestSlowDown:
    @pytest.fixture
    def scope(self):
        return SlowdownScope(window_ms=60_000, delay_after=3, delay_ms=250, max_delay_ms=5000)

    def test_delay_grows_after_threshold(self, counters, scope):
        slowdown = SlowDown(counters, scope)

        assert [slowdown.delay_for(n) for n in range(1, 7)] == [0.0, 0.0, 0.0, 0.25, 0.5, 0.75]

    def test_delay_is_capped(self, counters, scope):
        assert SlowDown(counters, scope).delay_for(500) == 5.0

    async def test_throttle_sleeps_for_the_delay(self, counters, scope):
        slept = []

        async def fake_sleep(seconds):
            slept.append(seconds)

        slowdown = SlowDown(counters, scope, sleep=fake_sleep)
        delays = [await slowdown.throttle("10.0.0.1") for _ in range(5)]

        assert delays == [0.0, 0.0, 0.0, 0.25, 0.5]
        assert slept == [0.25, 0.5]


class TestBruteForceGuard:
    """Five failures lock a key for fifteen minutes."""

    def test_key_format(self):
        assert BruteForceGuard.key_for("1.2.3.4", "Ada@Example.com") == "1.2.3.4::ada@example.com"
        assert BruteForceGuard.key_for(None, "refresh") == "unknown::refresh"

    async def test_locks_after_exactly_five_failures(self, bruteforce):
        for _ in range(4):
            await bruteforce.record_failure("1.2.3.4", "ada")
            await bruteforce.check("1.2.3.4", "ada")
        assert not await bruteforce.is_locked("1.2.3.4", "ada")

        await bruteforce.record_failure("1.2.3.4", "ada")

        assert await bruteforce.is_locked("1.2.3.4", "ada")
        assert await bruteforce.remaining_seconds("1.2.3.4", "ada") == LOCK_SECONDS
        with pytest.raises(LockedError) as exc_info:
            await bruteforce.check("1.2.3.4", "ada")
        assert exc_info.value.retry_after == LOCK_SECONDS
        assert exc_info.value.error_code == "locked"

    async def test_lock_is_per_key(self, bruteforce):
        for _ in range(5):
            await bruteforce.record_failure("1.2.3.4", "ada")

        assert not await bruteforce.is_locked("1.2.3.4", "grace")
        assert not await bruteforce.is_locked("5.6.7.8", "ada")

    async def test_success_resets_count(self, bruteforce):
        for _ in range(4):
            await bruteforce.record_failure("1.2.3.4", "ada")
        await bruteforce.record_success("1.2.3.4", "ada")
        for _ in range(4):
            record = await bruteforce.record_failure("1.2.3.4", "ada")

        assert record.failures == 4
        assert not await bruteforce.is_locked("1.2.3.4", "ada")

    async def test_lock_expires_lazily_and_clears_record(self, bruteforce, counters, clock):
        for _ in range(5):
            await bruteforce.record_failure("1.2.3.4", "ada")
        clock.advance(LOCK_SECONDS - 1)
        assert await bruteforce.is_locked("1.2.3.4", "ada")

        clock.advance(1)

        assert not await bruteforce.is_locked("1.2.3.4", "ada")
        assert await counters.get_lockout(BruteForceGuard.key_for("1.2.3.4", "ada")) is None
        record = await bruteforce.record_failure("1.2.3.4", "ada")
        assert record.failures == 1

    async def test_spaced_out_failures_still_lock(self, bruteforce, clock):
        for _ in range(4):
            await bruteforce.record_failure("1.2.3.4", "ada")
            clock.advance(LOCK_SECONDS + 1)

        record = await bruteforce.record_failure("1.2.3.4", "ada")

        assert record.failures == 5
        assert await bruteforce.is_locked("1.2.3.4", "ada")

    async def test_attempt_counts_failures_and_resets_on_success(self, bruteforce):
        calls = []

        async def bad():
            calls.append("bad")
            raise PermissionError("nope")

        async def good():
            calls.append("good")
            return "ok"

        for _ in range(3):
            with pytest.raises(PermissionError):
                await bruteforce.attempt("1.2.3.4", "ada", bad, failure_types=(PermissionError,))
        assert await bruteforce.attempt("1.2.3.4", "ada", good) == "ok"
        record = await bruteforce.record_failure("1.2.3.4", "ada")
        assert record.failures == 1

    async def test_attempt_skips_check_while_locked(self, bruteforce):
        for _ in range(5):
            await bruteforce.record_failure("1.2.3.4", "ada")
        called = False

        async def credential_check():
            nonlocal called
            called = True

        with pytest.raises(LockedError):
            await bruteforce.attempt("1.2.3.4", "ada", credential_check)
        assert not called

    async def test_unlisted_exceptions_do_not_count(self, bruteforce):
        async def outage():
            raise StoreUnavailableError("down")

        for _ in range(6):
            with pytest.raises(StoreUnavailableError):
                await bruteforce.attempt("1.2.3.4", "ada", outage, failure_types=(PermissionError,))

        assert not await bruteforce.is_locked("1.2.3.4", "ada")

    async def test_lookup_outage_fails_closed(self, clock):
        guard = BruteForceGuard(UnreachableCounters(), clock=clock)

        with pytest.raises(StoreUnavailableError):
            await guard.check("1.2.3.4", "ada")
