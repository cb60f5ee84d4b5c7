from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

# KEYS[1] bucket; ARGV: now_ms, capacity, window_ms, cost.
# Returns {allowed, remaining, retry_after_seconds}.
RATE_LIMIT_LUA = """
local bucket = KEYS[1]
local now_ms = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local window_ms = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local per_ms = capacity / window_ms

local state = redis.call('HMGET', bucket, 'left', 'at')
local left = tonumber(state[1]) or capacity
local at = tonumber(state[2]) or now_ms
left = math.min(capacity, left + math.max(0, now_ms - at) * per_ms)

local allowed = 0
local wait_s = 0
if left >= cost then
  left = left - cost
  allowed = 1
else
  wait_s = math.max(1, math.ceil((cost - left) / per_ms / 1000))
end

redis.call('HSET', bucket, 'left', left, 'at', now_ms)
redis.call('PEXPIRE', bucket, window_ms)
return {allowed, math.floor(left), wait_s}
"""

OAUTH_STATE_PREFIX = "starterauth:oauth_state:"
RATE_LIMIT_PREFIX = "starterauth:rate:"


def _bucket_key(key: str) -> str:
    # client-controlled parts (IPs, emails) are hashed into a fixed-width key
    return RATE_LIMIT_PREFIX + hashlib.sha256(key.encode()).hexdigest()


def _seconds_until(expires_at: datetime) -> int:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _encode_state(provider: str, expires_at: datetime) -> str:
    return json.dumps({"provider": provider, "expires_at": expires_at.isoformat()})


def _decode_state(raw: Optional[str]) -> Optional[Tuple[str, datetime]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
        return data["provider"], datetime.fromisoformat(data["expires_at"])
    except (json.JSONDecodeError, TypeError, KeyError, ValueError):
        return None


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list:
    return [int(time.time() * 1000), limit, window_seconds * 1000, max(1, cost)]


def _bucket_result(raw) -> Tuple[bool, int, int]:
    allowed, remaining, retry_after = raw
    return bool(int(allowed)), max(0, int(remaining)), int(retry_after)


class RedisCache:
    """Async Redis access for rate-limit buckets and single-use OAuth state."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rate_limit = self.client.register_script(RATE_LIMIT_LUA)

    def verify_connection(self) -> None:
        """Ping with a throwaway sync client; the async pool stays unbound until first use."""
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        raw = await self._rate_limit(
            keys=[_bucket_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(raw)

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        await self.client.set(
            OAUTH_STATE_PREFIX + state,
            _encode_state(provider, expires_at),
            ex=_seconds_until(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        return _decode_state(await self.client.getdel(OAUTH_STATE_PREFIX + state))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Blocking client behind the same coroutine interface as :class:`RedisCache`.

    The runtime picks it under ``TEST_MODE``, where each test may run on a
    different event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rate_limit = self.client.register_script(RATE_LIMIT_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        raw = self._rate_limit(
            keys=[_bucket_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(raw)

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        self.client.set(
            OAUTH_STATE_PREFIX + state,
            _encode_state(provider, expires_at),
            ex=_seconds_until(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        return _decode_state(self.client.getdel(OAUTH_STATE_PREFIX + state))

    async def close(self) -> None:
        self.client.close()
