import pytest
from pydantic import ValidationError

from tripgate.config import AppEnv, Settings, get_settings, reset_settings_cache


class TestFromEnv:
    def test_environment_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", " Development ")
        monkeypatch.setenv("SESSION_TTL_HOURS", "12")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com,")
        monkeypatch.setenv("REDIS_URL", "   ")

        settings = Settings.from_env()

        assert settings.app_env is AppEnv.DEVELOPMENT
        assert settings.session_ttl_hours == 12
        assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]
        assert settings.redis_url is None
        assert settings.is_production is False

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("FRONTEND_URL", "https://trips.example.com")
        reset_settings_cache()

        assert get_settings().frontend_url == "https://trips.example.com"

    def test_durations_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_LOGIN_WINDOW_SECONDS", "0")

        with pytest.raises(ValidationError):
            Settings.from_env()


class TestJwtSecret:
    def test_production_requires_explicit_secret(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.delenv("JWT_SECRET", raising=False)

        with pytest.raises(ValidationError, match="JWT_SECRET must be set"):
            Settings.from_env()

    def test_generated_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.delenv("JWT_SECRET", raising=False)
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings.from_env().jwt_secret
        second = Settings.from_env().jwt_secret

        assert first == second
        assert len(first) >= 32
        assert (tmp_path / ".jwt_secret").read_text() == first
        assert (tmp_path / ".jwt_secret").stat().st_mode & 0o777 == 0o600
