import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from tripgate.storage.redis_cache import RedisCache, SyncRedisCache


def _async_cache(window_result=(1, 1, 900000), popped=None) -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://localhost:6379/0"
    cache.client = AsyncMock()
    cache._sliding_window = AsyncMock(return_value=list(window_result))
    cache._pop = AsyncMock(return_value=popped)
    return cache


class TestSlidingWindow:
    async def test_admitted_hit_passes_window_in_milliseconds(self):
        cache = _async_cache(window_result=(1, 3, 420000))

        allowed, hits, reset_ms = await cache.sliding_window_hit(
            "login:1.2.3.4", 5, 900, now=1000.0
        )

        assert (allowed, hits, reset_ms) == (True, 3, 420000)
        kwargs = cache._sliding_window.await_args.kwargs
        assert kwargs["keys"] == [RedisCache._rate_key("login:1.2.3.4")]
        now_ms, window_ms, limit, member = kwargs["args"]
        assert (now_ms, window_ms, limit) == (1_000_000, 900_000, 5)
        assert member.startswith("1000000-")

    async def test_rejected_hit_reports_retry_after(self):
        cache = _async_cache(window_result=("0", "5", "120000"))

        assert await cache.sliding_window_hit("k", 5, 900) == (False, 5, 120000)

    def test_rate_key_hides_raw_client_key(self):
        key = RedisCache._rate_key("login:10.0.0.1")

        assert key.startswith("rate:")
        assert "10.0.0.1" not in key


class TestOAuthState:
    async def test_set_state_uses_ttl(self):
        cache = _async_cache()
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=10)

        await cache.set_oauth_state("abc", "google", expires_at)

        args, kwargs = cache.client.set.await_args
        assert args[0] == "auth:oauth:abc"
        assert json.loads(args[1])["provider"] == "google"
        assert 590 <= kwargs["ex"] <= 600

    async def test_pop_state_parses_payload(self):
        expires_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        cache = _async_cache(
            popped=json.dumps({"provider": "github", "expires_at": expires_at.isoformat()})
        )

        assert await cache.pop_oauth_state("abc") == ("github", expires_at)
        assert cache._pop.await_args.kwargs["keys"] == ["auth:oauth:abc"]

    async def test_pop_missing_or_corrupt_state(self):
        assert await _async_cache(popped=None).pop_oauth_state("x") is None
        assert await _async_cache(popped="{not json").pop_oauth_state("x") is None


class TestSyncCache:
    async def test_sync_cache_shares_script_semantics(self):
        cache: SyncRedisCache = SyncRedisCache.__new__(SyncRedisCache)
        cache.client = MagicMock()
        cache._sliding_window = MagicMock(return_value=[0, 3, 1500])
        cache._pop = MagicMock(return_value=None)

        assert await cache.sliding_window_hit("k", 3, 60, now=10.0) == (False, 3, 1500)
        assert await cache.pop_oauth_state("missing") is None

        await cache.close()
        cache.client.close.assert_called_once()
