from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from authpool.storage.models import LockoutRecord, WindowCount

_MAX_WINDOW_KEYS = 10000


class MemoryCounterStore:
    """Process-local keyed counters for rate limits and lockouts.

    Owned by the runtime and injected into the limiters. Counters are not
    shared between processes; deployments with several instances should
    use the Redis-backed store instead.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}  # key -> (count, reset_at)
        self._lockouts: Dict[str, LockoutRecord] = {}
        # Plain lock: no awaits happen while it is held
        self._lock = threading.Lock()

    def _prune_windows(self, now: float) -> None:
        if len(self._windows) < _MAX_WINDOW_KEYS:
            return
        for key, (_, reset_at) in list(self._windows.items()):
            if reset_at <= now:
                self._windows.pop(key, None)

    async def hit(self, key: str, window_ms: int) -> WindowCount:
        now = self._clock()
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if reset_at <= now:
                self._prune_windows(now)
                count, reset_at = 0, now + window_ms / 1000.0
            count += 1
            self._windows[key] = (count, reset_at)
        return WindowCount(count=count, reset_seconds=max(0.0, reset_at - now))

    async def get_lockout(self, key: str) -> Optional[LockoutRecord]:
        now = self._clock()
        with self._lock:
            record = self._lockouts.get(key)
            if record is None:
                return None
            if record.locked_until is not None and now >= record.locked_until:
                # Lock windows expire lazily on lookup
                self._lockouts.pop(key, None)
                return None
            return LockoutRecord(
                key=record.key,
                failures=record.failures,
                locked_until=record.locked_until,
                last_failure_at=record.last_failure_at,
            )

    async def record_failure(
        self, key: str, threshold: int, lock_seconds: float
    ) -> LockoutRecord:
        now = self._clock()
        with self._lock:
            record = self._lockouts.get(key)
            if record is not None and record.locked_until is not None:
                if now < record.locked_until:
                    return LockoutRecord(
                        key=key,
                        failures=record.failures,
                        locked_until=record.locked_until,
                        last_failure_at=record.last_failure_at,
                    )
                record = None
            if record is None:
                record = LockoutRecord(key=key)
            record.failures += 1
            record.last_failure_at = now
            if record.failures >= threshold:
                record.locked_until = now + lock_seconds
            self._lockouts[key] = record
            return LockoutRecord(
                key=key,
                failures=record.failures,
                locked_until=record.locked_until,
                last_failure_at=record.last_failure_at,
            )

    async def clear_lockout(self, key: str) -> None:
        with self._lock:
            self._lockouts.pop(key, None)

    async def close(self) -> None:
        with self._lock:
            self._windows.clear()
            self._lockouts.clear()
