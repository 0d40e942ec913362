from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from fastapi import Response

from tripgate.logging import get_logger
from tripgate.service.errors import RateLimitedError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    limit: int
    window_seconds: int
    message: str


@dataclass(frozen=True)
class RateLimitDecision:
    """Rate limit state for one admitted request."""

    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> Dict[str, str]:
        return {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(max(0, self.remaining)),
            "RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers per IETF draft-ietf-httpapi-ratelimit-headers."""
        for name, value in self.headers().items():
            response.headers[name] = value


def default_policies(settings) -> Dict[str, RateLimitPolicy]:
    return {
        "login": RateLimitPolicy(
            "login",
            settings.rate_limit_login_max,
            settings.rate_limit_login_window_seconds,
            "Too many login attempts, please try again after 15 minutes",
        ),
        "register": RateLimitPolicy(
            "register",
            settings.rate_limit_register_max,
            settings.rate_limit_register_window_seconds,
            "Too many accounts created from this IP, please try again after an hour",
        ),
        "api": RateLimitPolicy(
            "api",
            settings.rate_limit_api_max,
            settings.rate_limit_api_window_seconds,
            "Too many requests from this IP, please try again after 15 minutes",
        ),
    }


class RateLimiter:
    """Per-client sliding-log limiter.

    Only admitted hits are recorded, so a client that keeps retrying while
    blocked does not extend its own lockout. With a cache the log lives in a
    Redis sorted set; otherwise in per-key deques guarded by a thread lock.
    """

    def __init__(
        self,
        policies: Dict[str, RateLimitPolicy],
        *,
        cache=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.policies = policies
        self.cache = cache
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = {}

    def policy(self, name: str) -> RateLimitPolicy:
        return self.policies[name]

    async def hit(self, policy_name: str, client_key: str) -> RateLimitDecision:
        """Record one attempt for ``client_key`` or raise ``RateLimitedError``."""
        policy = self.policy(policy_name)
        key = f"{policy.name}:{client_key}"
        now = self._clock()
        if self.cache is not None:
            allowed, hits, reset_ms = await self.cache.sliding_window_hit(
                key, policy.limit, policy.window_seconds, now=now
            )
            reset = math.ceil(reset_ms / 1000) if reset_ms else policy.window_seconds
        else:
            allowed, hits, reset = self._memory_hit(key, policy, now)

        if not allowed:
            decision = RateLimitDecision(False, policy.limit, 0, max(1, reset))
            logger.warning(
                "rate_limited",
                policy=policy.name,
                client=client_key,
                retry_after=decision.reset_seconds,
            )
            raise RateLimitedError(
                policy.message,
                headers={**decision.headers(), "Retry-After": str(decision.reset_seconds)},
            )
        return RateLimitDecision(True, policy.limit, policy.limit - hits, max(1, reset))

    def _memory_hit(self, key: str, policy: RateLimitPolicy, now: float) -> tuple[bool, int, int]:
        """Returns ``(allowed, hits_in_window, seconds_until_oldest_hit_expires)``."""
        with self._lock:
            log = self._hits.setdefault(key, deque())
            cutoff = now - policy.window_seconds
            while log and log[0] <= cutoff:
                log.popleft()
            if len(log) >= policy.limit:
                return False, len(log), math.ceil(log[0] + policy.window_seconds - now)
            log.append(now)
            return True, len(log), math.ceil(log[0] + policy.window_seconds - now)

    def reset(self, client_key: Optional[str] = None) -> None:
        """Forget recorded hits, for every client or just one."""
        with self._lock:
            if client_key is None:
                self._hits.clear()
                return
            for key in [k for k in self._hits if k.endswith(f":{client_key}")]:
                self._hits.pop(key, None)
