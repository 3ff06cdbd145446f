"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from authcore.config import Settings, get_settings, reset_settings_cache


def test_env_overrides_defaults(monkeypatch):
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("SMTP_HOST", "  ")

    settings = Settings.from_env()

    assert settings.lockout_threshold == 7
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.smtp_host is None


def test_dotenv_file_is_read_below_environment(monkeypatch, tmp_path):
    (tmp_path / ".env").write_text("MFA_ISSUER=FromDotenv\nLOCKOUT_MINUTES=45\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LOCKOUT_MINUTES", "60")

    settings = Settings.from_env()

    assert settings.mfa_issuer == "FromDotenv"
    assert settings.lockout_minutes == 60


def test_blank_redis_url_disables_cache(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "")
    assert Settings.from_env().redis_url is None


def test_refresh_ttl_must_exceed_access_ttl():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, access_token_ttl_minutes=30, refresh_token_ttl_minutes=30)


def test_non_positive_limits_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, lockout_threshold=0)


def test_missing_jwt_secret_is_generated_and_persisted(monkeypatch, tmp_path):
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings.from_env().jwt_secret
    second = Settings.from_env().jwt_secret

    assert first == second
    assert len(first) >= 32
    assert (tmp_path / ".jwt_secret").read_text().strip() == first


def test_get_settings_is_cached(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "9")
    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().lockout_threshold == 9
    reset_settings_cache()
