from __future__ import annotations

import hashlib
import time
from typing import Any, Optional, Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

RateLimitResult = Union[bool, Tuple[bool, int, int]]

# KEYS[1] bucket; ARGV: now, refill per second, capacity, cost.
# Returns {allowed, tokens_left, seconds_until_enough}.
_BUCKET_LUA = """
local bucket = redis.call('HMGET', KEYS[1], 'tokens', 'ts')
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local tokens = tonumber(bucket[1]) or capacity
local stamp = tonumber(bucket[2]) or now

tokens = math.min(capacity, tokens + math.max(0, now - stamp) * rate)
local allowed = 0
local wait = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  wait = math.ceil((cost - tokens) / rate)
end

redis.call('HSET', KEYS[1], 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', KEYS[1], math.max(1, math.ceil(capacity / rate)))
return {allowed, tokens, wait}
"""


class _TokenBucket:
    """Key hashing and result decoding shared by the async and sync clients."""

    key_prefix = "mentorauth:rl:"

    @classmethod
    def _bucket_key(cls, key: str) -> str:
        # Keys embed emails and phone numbers; hash them so raw values never reach Redis
        return cls.key_prefix + hashlib.sha256(key.encode()).hexdigest()

    @staticmethod
    def _script_args(limit: int, window_seconds: int, cost: int) -> list[Any]:
        return [time.time(), float(limit) / float(window_seconds), limit, max(1, cost)]

    @staticmethod
    def _decode(raw: Sequence[Any], return_remaining: bool) -> RateLimitResult:
        allowed = bool(int(raw[0]))
        if not return_remaining:
            return allowed
        return allowed, max(0, int(float(raw[1]))), int(raw[2] or 0)


class RedisCache(_TokenBucket):
    """Async Redis client holding the per-endpoint rate limit buckets."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        # Short-lived sync client so the async client is not bound to a throwaway loop
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        """Take ``cost`` tokens from a bucket of ``limit`` refilled over ``window_seconds``."""
        raw = await self._bucket(
            keys=[self._bucket_key(key)], args=self._script_args(limit, window_seconds, cost)
        )
        return self._decode(raw, return_remaining)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache(_TokenBucket):
    """Blocking client with the same awaitable surface, used under TEST_MODE.

    A sync connection is not tied to an event loop, so it survives the
    per-test loops pytest and the TestClient create.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(_BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        raw = self._bucket(
            keys=[self._bucket_key(key)], args=self._script_args(limit, window_seconds, cost)
        )
        return self._decode(raw, return_remaining)

    async def close(self) -> None:
        self.client.close()


def describe_cache(cache: Optional[object]) -> str:
    if cache is None:
        return "in-process"
    return "redis-sync" if isinstance(cache, SyncRedisCache) else "redis"
