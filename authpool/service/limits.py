from __future__ import annotations

import asyncio
import math
import time
from typing import Awaitable, Callable, Dict, Optional, Protocol, TypeVar

from redis.exceptions import RedisError
from starlette.responses import Response

from authpool.config import RateScope, SlowdownScope
from authpool.logging import get_logger
from authpool.service.errors import LockedError, RateLimitedError, StoreUnavailableError
from authpool.storage.models import LockoutRecord, WindowCount

logger = get_logger(__name__)

T = TypeVar("T")

_COUNTER_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class CounterStore(Protocol):
    async def hit(self, key: str, window_ms: int) -> WindowCount: ...

    async def get_lockout(self, key: str) -> Optional[LockoutRecord]: ...

    async def record_failure(self, key: str, threshold: int, lock_seconds: float) -> LockoutRecord: ...

    async def clear_lockout(self, key: str) -> None: ...


async def _counter_call(operation: str, awaitable: Awaitable[T]) -> T:
    try:
        return await awaitable
    except _COUNTER_ERRORS as exc:
        logger.error("counter_store_failed", operation=operation, error=str(exc))
        raise StoreUnavailableError("rate limit store unavailable") from exc


class RateDecision:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


class RateLimiter:
    """Fixed-window request ceilings, one window per (scope, key)."""

    def __init__(self, counters: CounterStore, scopes: Dict[str, RateScope]) -> None:
        self.counters = counters
        self.scopes = dict(scopes)

    async def hit(self, scope: str, key: str) -> RateDecision:
        rule = self.scopes[scope]
        window = await _counter_call(
            "rate.hit", self.counters.hit(f"{scope}:{key}", rule.window_ms)
        )
        reset = max(1, math.ceil(window.reset_seconds))
        decision = RateDecision(rule.max, rule.max - window.count, reset)
        if window.count > rule.max:
            logger.warning("rate_limited", scope=scope, key=key, count=window.count, limit=rule.max)
            raise RateLimitedError("rate limit exceeded", retry_after=reset)
        return decision


class SlowDown:
    """Adds growing latency once a key passes ``delay_after`` in a window."""

    def __init__(
        self,
        counters: CounterStore,
        scope: SlowdownScope,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.counters = counters
        self.scope = scope
        self._sleep = sleep

    def delay_for(self, count: int) -> float:
        """Seconds to wait for the ``count``-th request in the current window."""
        over = count - self.scope.delay_after
        if over <= 0:
            return 0.0
        delay_ms = min(over * self.scope.delay_ms, self.scope.max_delay_ms)
        return delay_ms / 1000.0

    async def throttle(self, key: str) -> float:
        window = await _counter_call(
            "slowdown.hit", self.counters.hit(f"slowdown:{key}", self.scope.window_ms)
        )
        delay = self.delay_for(window.count)
        if delay > 0:
            logger.info("request_slowed", key=key, count=window.count, delay_seconds=delay)
            await self._sleep(delay)
        return delay


class BruteForceGuard:
    """Locks a (client, identity hint) pair after repeated credential failures.

    Lock expiry is lazy: an elapsed lock is cleared on the next lookup for its
    key rather than by a background sweeper.
    """

    def __init__(
        self,
        counters: CounterStore,
        *,
        threshold: int = 5,
        lock_seconds: float = 15 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.counters = counters
        self.threshold = threshold
        self.lock_seconds = lock_seconds
        self._clock = clock

    @staticmethod
    def key_for(ip: Optional[str], hint: Optional[str]) -> str:
        return f"{ip or 'unknown'}::{(hint or '').lower()}"

    async def _record(self, key: str) -> Optional[LockoutRecord]:
        return await _counter_call("lockout.get", self.counters.get_lockout(key))

    async def is_locked(self, ip: Optional[str], hint: Optional[str]) -> bool:
        record = await self._record(self.key_for(ip, hint))
        return record is not None and record.is_locked(self._clock())

    async def remaining_seconds(self, ip: Optional[str], hint: Optional[str]) -> int:
        record = await self._record(self.key_for(ip, hint))
        if record is None:
            return 0
        return math.ceil(record.remaining_seconds(self._clock()))

    async def check(self, ip: Optional[str], hint: Optional[str]) -> None:
        key = self.key_for(ip, hint)
        record = await self._record(key)
        if record is not None and record.is_locked(self._clock()):
            retry_after = max(1, math.ceil(record.remaining_seconds(self._clock())))
            logger.warning("bruteforce_locked", key=key, retry_after=retry_after)
            raise LockedError("too many failed attempts", retry_after=retry_after)

    async def record_failure(self, ip: Optional[str], hint: Optional[str]) -> LockoutRecord:
        key = self.key_for(ip, hint)
        record = await _counter_call(
            "lockout.fail",
            self.counters.record_failure(key, self.threshold, self.lock_seconds),
        )
        if record.is_locked(self._clock()):
            logger.warning("bruteforce_lockout_started", key=key, failures=record.failures)
        else:
            logger.info("bruteforce_failure_recorded", key=key, failures=record.failures)
        return record

    async def record_success(self, ip: Optional[str], hint: Optional[str]) -> None:
        await _counter_call("lockout.clear", self.counters.clear_lockout(self.key_for(ip, hint)))

    async def attempt(
        self,
        ip: Optional[str],
        hint: Optional[str],
        credential_check: Callable[[], Awaitable[T]],
        *,
        failure_types: tuple = (Exception,),
    ) -> T:
        """Run ``credential_check`` behind the lockout.

        Exceptions matching ``failure_types`` count as a failed attempt and
        are re-raised; a clean return resets the streak.
        """
        await self.check(ip, hint)
        try:
            result = await credential_check()
        except failure_types:
            await self.record_failure(ip, hint)
            raise
        await self.record_success(ip, hint)
        return result
