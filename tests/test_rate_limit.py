from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from fastapi import Response

from tripgate.service.errors import RateLimitedError
from tripgate.service.rate_limit import RateLimiter, RateLimitPolicy, default_policies


class Ticker:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def ticker():
    return Ticker()


@pytest.fixture
def limiter(ticker):
    settings = SimpleNamespace(
        rate_limit_login_max=5,
        rate_limit_login_window_seconds=900,
        rate_limit_register_max=3,
        rate_limit_register_window_seconds=3600,
        rate_limit_api_max=100,
        rate_limit_api_window_seconds=900,
    )
    return RateLimiter(default_policies(settings), clock=ticker)


class TestMemoryWindow:
    async def test_sixth_login_attempt_is_rejected(self, limiter):
        for expected_remaining in (4, 3, 2, 1, 0):
            decision = await limiter.hit("login", "1.2.3.4")
            assert decision.remaining == expected_remaining

        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.hit("login", "1.2.3.4")

        exc = excinfo.value
        assert exc.status_code == 429
        assert exc.message == "Too many login attempts, please try again after 15 minutes"
        assert exc.headers["Retry-After"] == "900"
        assert exc.headers["RateLimit-Remaining"] == "0"

    async def test_window_slides(self, limiter, ticker):
        await limiter.hit("login", "ip")
        ticker.now += 600
        for _ in range(4):
            await limiter.hit("login", "ip")

        ticker.now += 299
        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.hit("login", "ip")
        assert excinfo.value.headers["Retry-After"] == "1"

        # First hit ages out at exactly 900s
        ticker.now += 1
        decision = await limiter.hit("login", "ip")
        assert decision.allowed is True
        assert decision.remaining == 0
        assert decision.reset_seconds == 600

    async def test_reset_tracks_oldest_hit(self, limiter, ticker):
        assert (await limiter.hit("login", "ip")).reset_seconds == 900

        ticker.now += 100
        assert (await limiter.hit("login", "ip")).reset_seconds == 800

        ticker.now += 0.5
        assert (await limiter.hit("login", "ip")).reset_seconds == 800

    async def test_rejected_hits_do_not_extend_lockout(self, limiter, ticker):
        for _ in range(3):
            await limiter.hit("register", "ip")
        for _ in range(10):
            ticker.now += 60
            with pytest.raises(RateLimitedError):
                await limiter.hit("register", "ip")

        ticker.now = 1_000_000.0 + 3600
        assert (await limiter.hit("register", "ip")).allowed is True

    async def test_clients_and_policies_are_isolated(self, limiter):
        for _ in range(5):
            await limiter.hit("login", "a")

        assert (await limiter.hit("login", "b")).allowed is True
        assert (await limiter.hit("register", "a")).allowed is True

    async def test_register_message(self, limiter):
        for _ in range(3):
            await limiter.hit("register", "ip")

        with pytest.raises(RateLimitedError, match="Too many accounts created from this IP"):
            await limiter.hit("register", "ip")

    async def test_reset_single_client(self, limiter):
        for _ in range(5):
            await limiter.hit("login", "a")
            await limiter.hit("login", "b")

        limiter.reset("a")

        assert (await limiter.hit("login", "a")).allowed is True
        with pytest.raises(RateLimitedError):
            await limiter.hit("login", "b")


class TestCacheBackend:
    async def test_cache_window_is_used_when_configured(self, ticker):
        cache = SimpleNamespace(sliding_window_hit=AsyncMock(return_value=(False, 5, 1500)))
        limiter = RateLimiter(
            {"login": RateLimitPolicy("login", 5, 900, "slow down")}, cache=cache, clock=ticker
        )

        with pytest.raises(RateLimitedError) as excinfo:
            await limiter.hit("login", "ip")

        assert excinfo.value.headers["Retry-After"] == "2"
        cache.sliding_window_hit.assert_awaited_once_with("login:ip", 5, 900, now=ticker.now)

    async def test_cache_admit_reports_reset_of_oldest_hit(self, ticker):
        cache = SimpleNamespace(sliding_window_hit=AsyncMock(return_value=(True, 2, 799_400)))
        limiter = RateLimiter(
            {"login": RateLimitPolicy("login", 5, 900, "slow down")}, cache=cache, clock=ticker
        )

        decision = await limiter.hit("login", "ip")

        assert (decision.remaining, decision.reset_seconds) == (3, 800)


class TestDecisionHeaders:
    async def test_apply_headers(self, limiter):
        decision = await limiter.hit("api", "ip")
        response = Response()

        decision.apply_headers(response)

        assert response.headers["RateLimit-Limit"] == "100"
        assert response.headers["RateLimit-Remaining"] == "99"
        assert response.headers["RateLimit-Reset"] == "900"
