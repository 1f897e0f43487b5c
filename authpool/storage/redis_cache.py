from __future__ import annotations

import hashlib
import time
from typing import Callable, Optional

import redis.asyncio as aioredis
from redis import Redis

from authpool.storage.models import LockoutRecord, WindowCount


class RedisCache:
    """Redis-backed keyed counters shared by every gateway instance."""

    # Fixed window: first hit opens the window, later hits only count
    _WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('PTTL', KEYS[1])
if count == 1 or ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    # Failure streak and lock share one hash so the check and the increment
    # cannot interleave between concurrent requests
    _FAILURE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local threshold = tonumber(ARGV[2])
local lock_ms = tonumber(ARGV[3])

local data = redis.call('HMGET', key, 'failures', 'until', 'last')
local failures = tonumber(data[1]) or 0
local locked_until = tonumber(data[2]) or 0
local last = tonumber(data[3]) or 0

if locked_until > 0 then
  if now < locked_until then
    return {failures, locked_until, last}
  end
  failures = 0
  locked_until = 0
end

failures = failures + 1
last = now
if failures >= threshold then
  locked_until = now + lock_ms
end
redis.call('HSET', key, 'failures', failures, 'until', locked_until, 'last', last)
-- Only a started lock expires; a streak lives until success clears it
if locked_until > 0 then
  redis.call('PEXPIRE', key, lock_ms)
end
return {failures, locked_until, last}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._clock = clock
        self._window = self.client.register_script(self._WINDOW_SCRIPT)
        self._failure = self.client.register_script(self._FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _hashed(prefix: str, key: str) -> str:
        """Hash key components to avoid delimiter injection."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"{prefix}:{digest}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def hit(self, key: str, window_ms: int) -> WindowCount:
        count, ttl_ms = await self._window(
            keys=[self._hashed("rate", key)], args=[int(window_ms)]
        )
        return WindowCount(count=int(count), reset_seconds=max(0, int(ttl_ms)) / 1000.0)

    @staticmethod
    def _lockout_from(key: str, failures, until_ms, last_ms) -> LockoutRecord:
        until = int(until_ms or 0)
        last = int(last_ms or 0)
        return LockoutRecord(
            key=key,
            failures=int(failures or 0),
            locked_until=until / 1000.0 if until else None,
            last_failure_at=last / 1000.0 if last else None,
        )

    async def get_lockout(self, key: str) -> Optional[LockoutRecord]:
        redis_key = self._hashed("lockout", key)
        failures, until_ms, last_ms = await self.client.hmget(
            redis_key, "failures", "until", "last"
        )
        if failures is None:
            return None
        until = int(until_ms or 0)
        if until and self._now_ms() >= until:
            await self.client.delete(redis_key)
            return None
        return self._lockout_from(key, failures, until_ms, last_ms)

    async def record_failure(
        self, key: str, threshold: int, lock_seconds: float
    ) -> LockoutRecord:
        failures, until_ms, last_ms = await self._failure(
            keys=[self._hashed("lockout", key)],
            args=[self._now_ms(), int(threshold), int(lock_seconds * 1000)],
        )
        return self._lockout_from(key, failures, until_ms, last_ms)

    async def clear_lockout(self, key: str) -> None:
        await self.client.delete(self._hashed("lockout", key))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
