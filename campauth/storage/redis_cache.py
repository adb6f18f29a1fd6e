from __future__ import annotations

import time
import uuid
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from campauth.storage.counters import attempts_key, lock_key
from campauth.storage.errors import StoreTimeoutError, StoreUnavailableError


class RedisCounterStore:
    """Redis-backed counters shared by every service instance."""

    # Atomic failure log with lockout trigger; KEYS[1]=lock, KEYS[2]=attempts
    # (sorted set scored by failure time, trimmed to the trailing window)
    _THRESHOLD_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1, redis.call('TTL', KEYS[1])}
end

local now = tonumber(ARGV[4])
local window = tonumber(ARGV[2])
redis.call('ZREMRANGEBYSCORE', KEYS[2], '-inf', now - window)
redis.call('ZADD', KEYS[2], now, ARGV[5])
redis.call('EXPIRE', KEYS[2], math.ceil(window))
local attempts = redis.call('ZCARD', KEYS[2])

local threshold = tonumber(ARGV[1])
if attempts >= threshold then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
    redis.call('DEL', KEYS[2])
    return {1, attempts, tonumber(ARGV[3])}
end

return {0, attempts, 0}
"""

    # Sliding-window log over a sorted set scored by event time
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = math.ceil(tonumber(oldest[2]) + window - now)
  return {0, 0, math.max(retry_after, 1)}
end

redis.call('ZADD', key, now, ARGV[4])
redis.call('EXPIRE', key, math.ceil(window))
return {1, limit - count - 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 1.0, client=None):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._threshold = self.client.register_script(self._THRESHOLD_SCRIPT)
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling shared counters."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, operation: str, awaitable):
        try:
            return await awaitable
        except RedisTimeoutError as exc:
            raise StoreTimeoutError(operation, "redis") from exc
        except RedisConnectionError as exc:
            raise StoreUnavailableError(operation, "redis") from exc

    async def hit_with_threshold(
        self, key: str, *, threshold: int, window_seconds: int, lock_seconds: int
    ) -> Tuple[bool, int, int]:
        result = await self._call(
            "hit_with_threshold",
            self._threshold(
                keys=[lock_key(key), attempts_key(key)],
                args=[
                    threshold,
                    window_seconds,
                    lock_seconds,
                    time.time(),
                    uuid.uuid4().hex,
                ],
            ),
        )
        locked, attempts, retry_after = (int(value) for value in result)
        return bool(locked), attempts, max(0, retry_after)

    async def lock_ttl(self, key: str) -> int:
        ttl = await self._call("lock_ttl", self.client.ttl(lock_key(key)))
        # -2 missing, -1 no expiry
        return max(0, int(ttl))

    async def clear(self, key: str) -> None:
        await self._call("clear", self.client.delete(attempts_key(key)))

    async def sliding_window(
        self, key: str, *, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        result = await self._call(
            "sliding_window",
            self._sliding_window(
                keys=[key],
                args=[time.time(), window_seconds, limit, uuid.uuid4().hex],
            ),
        )
        allowed, remaining, retry_after = (int(value) for value in result)
        return bool(allowed), max(0, remaining), retry_after

    async def set_marker(self, key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self._call("set_marker", self.client.set(key, "1", ex=ttl_seconds))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", self.client.exists(key)))

    async def close(self) -> None:
        await self.client.aclose()
