from __future__ import annotations

import hashlib
import json
import secrets
import time
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate-limit windows and OAuth state."""

    # Sliding-log window: one sorted-set member per admitted hit, scored by time.
    # Returns {allowed, hits_in_window, ms_until_oldest_hit_expires}.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now_ms - window_ms)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = window_ms
  if oldest[2] then
    retry_after = math.max(1, tonumber(oldest[2]) + window_ms - now_ms)
  end
  return {0, count, retry_after}
end

redis.call('ZADD', key, now_ms, member)
redis.call('PEXPIRE', key, window_ms)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return {1, count + 1, math.max(1, tonumber(oldest[2]) + window_ms - now_ms)}
"""

    _POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        self._pop = self.client.register_script(self._POP_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _rate_key(key: str) -> str:
        """Hash the caller key so client-controlled parts cannot collide on delimiters."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _parse_window(result) -> Tuple[bool, int, int]:
        allowed, hits, retry_after_ms = result
        return bool(int(allowed)), int(hits), int(retry_after_ms)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client avoids binding the async pool to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def sliding_window_hit(
        self, key: str, limit: int, window_seconds: int, *, now: Optional[float] = None
    ) -> Tuple[bool, int, int]:
        """Record one hit if the window has room.

        Returns ``(allowed, hits_in_window, reset_ms)`` where ``reset_ms`` is
        the time until the oldest logged hit leaves the window.
        """
        now_ms = int((now if now is not None else time.time()) * 1000)
        member = f"{now_ms}-{secrets.token_hex(4)}"
        result = await self._sliding_window(
            keys=[self._rate_key(key)],
            args=[now_ms, int(window_seconds * 1000), limit, member],
        )
        return self._parse_window(result)

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        """Atomically read and delete OAuth state so it can be consumed once."""
        cached = await self._pop(keys=[f"auth:oauth:{state}"])
        if not cached:
            return None
        try:
            payload = json.loads(cached)
            return payload["provider"], datetime.fromisoformat(payload["expires_at"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper with the same awaitable surface as RedisCache.

    Used under TEST_MODE so the client is not bound to whichever event loop
    the test client happens to run a request on.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )
        self._pop = self.client.register_script(RedisCache._POP_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def sliding_window_hit(
        self, key: str, limit: int, window_seconds: int, *, now: Optional[float] = None
    ) -> Tuple[bool, int, int]:
        now_ms = int((now if now is not None else time.time()) * 1000)
        member = f"{now_ms}-{secrets.token_hex(4)}"
        result = self._sliding_window(
            keys=[RedisCache._rate_key(key)],
            args=[now_ms, int(window_seconds * 1000), limit, member],
        )
        return RedisCache._parse_window(result)

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        self.client.set(
            f"auth:oauth:{state}",
            json.dumps(payload),
            ex=RedisCache._ttl_seconds(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        cached = self._pop(keys=[f"auth:oauth:{state}"])
        if not cached:
            return None
        try:
            payload = json.loads(cached)
            return payload["provider"], datetime.fromisoformat(payload["expires_at"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def close(self) -> None:
        self.client.close()
