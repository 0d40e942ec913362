from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tripgate.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environments; only production hardens cookies and error output."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings read from the environment and an optional .env file."""

    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    database_url: str = env_field(
        "postgresql://localhost:5432/tripgate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/tripgate", "SHARED_FS_ROOT")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback: bool = env_field(
        True,
        "ALLOW_REDIS_FALLBACK",
        description="Keep rate limits and OAuth state in process memory when Redis is unreachable",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Session credentials
    jwt_secret: str = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tripgate", "JWT_ISSUER")
    jwt_audience: str = env_field("tripgate-clients", "JWT_AUDIENCE")
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")
    session_cookie_name: str = env_field("token", "SESSION_COOKIE_NAME")
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")

    # argon2id parameters
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")
    hash_timeout_seconds: float = env_field(10.0, "HASH_TIMEOUT_SECONDS")
    store_timeout_seconds: float = env_field(10.0, "STORE_TIMEOUT_SECONDS")

    # Rate limits (per client IP, sliding window)
    rate_limit_login_max: int = env_field(5, "RATE_LIMIT_LOGIN_MAX")
    rate_limit_login_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_LOGIN_WINDOW_SECONDS")
    rate_limit_register_max: int = env_field(3, "RATE_LIMIT_REGISTER_MAX")
    rate_limit_register_window_seconds: int = env_field(60 * 60, "RATE_LIMIT_REGISTER_WINDOW_SECONDS")
    rate_limit_api_max: int = env_field(100, "RATE_LIMIT_API_MAX")
    rate_limit_api_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_API_WINDOW_SECONDS")
    trust_proxy_headers: bool = env_field(False, "TRUST_PROXY_HEADERS")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Trip Planner", "EMAIL_FROM_NAME")

    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # OAuth
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_microsoft_client_id: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: str | None = env_field(None, "OAUTH_MICROSOFT_CLIENT_SECRET")
    oauth_redirect_base: str | None = env_field(
        None,
        "OAUTH_REDIRECT_BASE",
        description="Public base URL for OAuth callbacks; defaults to APP_BASE_URL",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.app_env == AppEnv.PRODUCTION

    @field_validator("app_env", mode="before")
    @classmethod
    def _validate_app_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            return AppEnv(value.strip().lower())
        return AppEnv(value)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "session_ttl_hours",
        "verification_token_ttl_hours",
        "reset_token_ttl_minutes",
        "rate_limit_login_window_seconds",
        "rate_limit_register_window_seconds",
        "rate_limit_api_window_seconds",
    )
    @classmethod
    def _positive_duration(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self):
        if self.jwt_secret:
            return self
        if self.is_production:
            raise ValueError("JWT_SECRET must be set explicitly when APP_ENV=production")
        self.jwt_secret = _load_or_create_secret(Path(self.shared_fs_root))
        return self


def _load_or_create_secret(fs_root: Path) -> str:
    """Persist a generated signing secret so sessions survive restarts."""
    secret_path = fs_root / ".jwt_secret"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, secret_path)
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
    return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
