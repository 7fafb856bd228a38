from __future__ import annotations

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limits, notification cooldowns and OAuth state."""

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """TTL from an absolute expiry, clamped to at least one second."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        # Hashed so caller-supplied emails cannot inject key delimiters
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _cooldown_key(key: str) -> str:
        return f"cooldown:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _decode_oauth_state(cached: Optional[str]) -> Optional[tuple[str, datetime]]:
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            return None
        return data.get("provider"), expires_at

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after or 0))
        return allowed_bool

    async def acquire_cooldown(self, key: str, ttl_seconds: int) -> bool:
        """SET NX EX: True only for the first caller inside the window."""
        acquired = await self.client.set(
            self._cooldown_key(key), "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(acquired)

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime
    ) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Atomically consume an OAuth state so it cannot be replayed."""
        cached = await self.client.getdel(f"auth:oauth:{state}")
        return self._decode_oauth_state(cached)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a blocking client to avoid binding connections to pytest's
    per-test event loops, but exposes the same awaitable API as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        if return_remaining:
            return (allowed_bool, max(0, int(tokens)), int(reset_after or 0))
        return allowed_bool

    async def acquire_cooldown(self, key: str, ttl_seconds: int) -> bool:
        acquired = self._sync_client.set(
            RedisCache._cooldown_key(key), "1", ex=max(1, ttl_seconds), nx=True
        )
        return bool(acquired)

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime
    ) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        self._sync_client.set(
            f"auth:oauth:{state}",
            json.dumps(payload),
            ex=RedisCache._ttl_seconds(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        cached = self._sync_client.getdel(f"auth:oauth:{state}")
        return RedisCache._decode_oauth_state(cached)

    async def close(self) -> None:
        self._sync_client.close()
