from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from tripgate.config import Settings, get_settings, reset_settings_cache
from tripgate.logging import get_logger
from tripgate.service.auth import AuthService
from tripgate.service.email import EmailService
from tripgate.service.oauth import OAuthClient
from tripgate.service.passwords import PasswordService
from tripgate.service.rate_limit import RateLimiter, default_policies
from tripgate.service.tokens import TokenIssuer
from tripgate.storage.errors import StoreUnavailableError
from tripgate.storage.memory import MemoryStore
from tripgate.storage.postgres import PostgresStore
from tripgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store = self._init_store()
        self.cache = self._init_cache()

        self.tokens = TokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            session_ttl=timedelta(hours=self.settings.session_ttl_hours),
            verification_ttl=timedelta(hours=self.settings.verification_token_ttl_hours),
            reset_ttl=timedelta(minutes=self.settings.reset_token_ttl_minutes),
        )
        self.passwords = PasswordService(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            frontend_url=self.settings.frontend_url,
            verification_ttl_hours=self.settings.verification_token_ttl_hours,
            reset_ttl_minutes=self.settings.reset_token_ttl_minutes,
        )
        self.oauth = OAuthClient(
            credentials={
                "google": (
                    self.settings.oauth_google_client_id,
                    self.settings.oauth_google_client_secret,
                ),
                "github": (
                    self.settings.oauth_github_client_id,
                    self.settings.oauth_github_client_secret,
                ),
                "microsoft": (
                    self.settings.oauth_microsoft_client_id,
                    self.settings.oauth_microsoft_client_secret,
                ),
            },
            redirect_base=self.settings.oauth_redirect_base or self.settings.app_base_url,
            cache=self.cache,
        )
        self.auth = AuthService(
            self.store,
            tokens=self.tokens,
            passwords=self.passwords,
            email=self.email,
            oauth=self.oauth,
            store_timeout=self.settings.store_timeout_seconds,
            hash_timeout=self.settings.hash_timeout_seconds,
        )
        self.rate_limiter = RateLimiter(default_policies(self.settings), cache=self.cache)

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
        )

    def _init_store(self):
        if self.settings.use_memory_store:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryStore(fs_root=self.settings.shared_fs_root)
        try:
            store = PostgresStore(
                self.settings.database_url,
                connect_timeout=self.settings.store_timeout_seconds,
            )
        except StoreUnavailableError as exc:
            if self.settings.is_production:
                logger.error("runtime_store_init_failed", store_type="postgres", error=exc.message)
                raise
            logger.warning(
                "store_fallback_memory",
                database_url=_mask_url_password(self.settings.database_url),
                error=exc.message,
            )
            return MemoryStore(fs_root=self.settings.shared_fs_root)
        logger.info("runtime_store_initialized", store_type="postgres")
        return store

    def _init_cache(self):
        if not self.settings.redis_url:
            return None
        redis_error: Exception | None = None
        try:
            # Sync client in test mode avoids binding to the test client's loop
            if self.settings.test_mode:
                cache = SyncRedisCache(self.settings.redis_url)
            else:
                cache = RedisCache(self.settings.redis_url)
            cache.verify_connection()
            return cache
        except (RedisError, OSError) as exc:
            redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback:
            raise RuntimeError(
                "Redis is unreachable; start Redis or set ALLOW_REDIS_FALLBACK=true "
                "to keep rate limits and OAuth state in process memory."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error),
        )
        return None

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        if runtime is not None:
            runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
