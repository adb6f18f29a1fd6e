from __future__ import annotations

import math
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Protocol, Tuple


class CounterStore(Protocol):
    """TTL-bound counters shared by lockout, rate limiting and denylists."""

    async def hit_with_threshold(
        self, key: str, *, threshold: int, window_seconds: int, lock_seconds: int
    ) -> Tuple[bool, int, int]:
        """Record one failure and lock ``key`` once ``threshold`` is reached.

        Failures are counted over the trailing ``window_seconds``.

        Returns ``(locked, attempts, retry_after)``. ``attempts`` is ``-1`` when
        the key was already locked before this call.
        """
        ...

    async def lock_ttl(self, key: str) -> int: ...

    async def clear(self, key: str) -> None: ...

    async def sliding_window(
        self, key: str, *, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one event; returns ``(allowed, remaining, retry_after)``."""
        ...

    async def set_marker(self, key: str, ttl_seconds: int) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def close(self) -> None: ...


def attempts_key(key: str) -> str:
    return f"{key}:attempts"


def lock_key(key: str) -> str:
    return f"{key}:lock"


class MemoryCounterStore:
    """Process-local counter store used in tests and single-instance dev.

    Expired markers and drained event logs are swept on writes, at most once
    per ``sweep_interval_seconds``.
    """

    def __init__(
        self, clock: Callable[[], float] = time.time, *, sweep_interval_seconds: float = 60.0
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = 0.0
        # key -> (window seconds, event times)
        self._attempts: Dict[str, Tuple[int, Deque[float]]] = {}
        self._windows: Dict[str, Tuple[int, Deque[float]]] = {}
        self._expiring: Dict[str, float] = {}

    def _live(self, key: str, now: float) -> bool:
        expires_at = self._expiring.get(key)
        if expires_at is None:
            return False
        if expires_at <= now:
            self._expiring.pop(key, None)
            return False
        return True

    @staticmethod
    def _trim(events: Deque[float], now: float, window_seconds: int) -> None:
        while events and events[0] <= now - window_seconds:
            events.popleft()

    def _log(
        self, logs: Dict[str, Tuple[int, Deque[float]]], key: str, now: float, window_seconds: int
    ) -> Deque[float]:
        entry = logs.get(key)
        events = entry[1] if entry else deque()
        self._trim(events, now, window_seconds)
        logs[key] = (window_seconds, events)
        return events

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval
        for key in [k for k, expires_at in self._expiring.items() if expires_at <= now]:
            del self._expiring[key]
        for logs in (self._attempts, self._windows):
            for key in list(logs):
                window_seconds, events = logs[key]
                self._trim(events, now, window_seconds)
                if not events:
                    del logs[key]

    async def hit_with_threshold(
        self, key: str, *, threshold: int, window_seconds: int, lock_seconds: int
    ) -> Tuple[bool, int, int]:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            if self._live(lock_key(key), now):
                remaining = self._expiring[lock_key(key)] - now
                return True, -1, max(1, math.ceil(remaining))
            events = self._log(self._attempts, attempts_key(key), now, window_seconds)
            events.append(now)
            count = len(events)
            if count >= threshold:
                self._expiring[lock_key(key)] = now + lock_seconds
                del self._attempts[attempts_key(key)]
                return True, count, lock_seconds
            return False, count, 0

    async def lock_ttl(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            if not self._live(lock_key(key), now):
                return 0
            return max(1, math.ceil(self._expiring[lock_key(key)] - now))

    async def clear(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(attempts_key(key), None)

    async def sliding_window(
        self, key: str, *, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            events = self._log(self._windows, key, now, window_seconds)
            if len(events) >= limit:
                retry_after = max(1, math.ceil(events[0] + window_seconds - now))
                return False, 0, retry_after
            events.append(now)
            return True, limit - len(events), 0

    async def set_marker(self, key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        now = self._clock()
        with self._lock:
            self._sweep(now)
            self._expiring[key] = now + ttl_seconds

    async def exists(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            return self._live(key, now)

    async def close(self) -> None:
        with self._lock:
            self._attempts.clear()
            self._expiring.clear()
            self._windows.clear()
