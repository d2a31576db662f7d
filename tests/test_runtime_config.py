"""Settings loading, runtime wiring, local rate limiting and log hygiene."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from prismflow.config import Settings, get_settings, reset_settings_cache
from prismflow.logging import _redact_pii, sanitize_error_message
from prismflow.service import runtime as runtime_module
from prismflow.service.runtime import (
    _mask_url_password,
    check_rate_limit,
    get_runtime,
    reset_runtime_for_tests,
)
from prismflow.storage.memory import MemoryStore


class TestSettings:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
        monkeypatch.setenv("REDIS_URL", "  ")

        settings = Settings.from_env()

        assert settings.access_token_ttl_minutes == 5
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
        assert settings.redis_url is None

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_generated_secret_is_persisted(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        monkeypatch.delenv("JWT_SECRET", raising=False)

        first = Settings()
        second = Settings()

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    @pytest.mark.parametrize("name, value", [("TOTP_DIGITS", "4"), ("ACCESS_TOKEN_TTL_MINUTES", "0")])
    def test_bounds(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_settings_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("MFA_ISSUER", "Acme")
        reset_settings_cache()
        assert get_settings().mfa_issuer == "Acme"


class TestRuntime:
    def test_memory_runtime_without_redis(self):
        runtime = get_runtime()

        assert isinstance(runtime.store, MemoryStore)
        assert runtime.cache is None
        assert {r.name for r in runtime.store.list_roles()} == {
            "Administrator",
            "Project Manager",
            "Team Member",
            "Viewer",
        }

    def test_reset_builds_fresh_runtime(self):
        before = get_runtime()
        after = reset_runtime_for_tests()

        assert after is not before
        assert get_runtime() is after

    @pytest.mark.parametrize(
        "url, expected",
        [
            ("redis://:secret@localhost:6379", "redis://:***@localhost:6379"),
            ("postgresql://app:pw@db:5432/prism", "postgresql://app:***@db:5432/prism"),
            ("redis://localhost:6379/0", "redis://localhost:6379/0"),
            (None, None),
        ],
    )
    def test_mask_url_password(self, url, expected):
        assert _mask_url_password(url) == expected


class TestLocalRateLimit:
    @pytest.mark.asyncio
    async def test_bucket_exhausts_and_reports_retry(self):
        runtime = get_runtime()

        results = [await check_rate_limit(runtime, "login:1.2.3.4", 3, 60) for _ in range(4)]

        assert [allowed for allowed, _, _ in results] == [True, True, True, False]
        assert results[2][1] == 0
        assert results[3][2] >= 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        runtime = get_runtime()
        await check_rate_limit(runtime, "login:a", 1, 60)

        allowed, _, _ = await check_rate_limit(runtime, "login:b", 1, 60)
        assert allowed

    @pytest.mark.asyncio
    async def test_non_positive_limit_disables(self):
        runtime = get_runtime()
        for _ in range(5):
            allowed, _, _ = await check_rate_limit(runtime, "k", 0, 60)
            assert allowed

    @pytest.mark.asyncio
    async def test_refilled_buckets_are_pruned(self, monkeypatch):
        monkeypatch.setattr(runtime_module, "_LOCAL_RATE_LIMIT_PRUNE_AT", 2)
        runtime = get_runtime()
        now = datetime.now(timezone.utc)
        an_hour_ago = now - timedelta(hours=1)
        runtime._local_rate_limits["login:idle"] = (3.0, an_hour_ago, an_hour_ago)
        runtime._local_rate_limits["login:busy"] = (0.0, now, now + timedelta(minutes=1))

        await check_rate_limit(runtime, "login:new", 3, 60)

        assert set(runtime._local_rate_limits) == {"login:busy", "login:new"}
        allowed, _, _ = await check_rate_limit(runtime, "login:busy", 3, 60)
        assert not allowed

    @pytest.mark.asyncio
    async def test_invalid_window_falls_back(self):
        runtime = get_runtime()
        allowed, remaining, _ = await check_rate_limit(runtime, "k", 2, 0)
        assert allowed and remaining == 1


class TestLogHygiene:
    def test_credentials_redacted(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "password": "hunter2hunter2",
                "refresh_token": "abcdefgh",
                "mfa_code": "123",
                "error_code": "invalid_credential",
            },
        )

        assert event["password"] == "hu***r2"
        assert event["refresh_token"] == "ab***gh"
        assert event["mfa_code"] == "***"
        assert event["error_code"] == "invalid_credential"

    @pytest.mark.parametrize(
        "raw, leaked",
        [
            ("SELECT * FROM accounts WHERE email = 'a'", "FROM accounts"),
            ("open /var/lib/prismflow/.jwt_secret failed", "/var/lib"),
            ("token=abc123", "abc123"),
            ("dial postgresql://app:pw@db/prism", "app:pw"),
        ],
    )
    def test_error_messages_sanitized(self, raw, leaked):
        assert leaked not in sanitize_error_message(raw)

    def test_empty_message(self):
        assert sanitize_error_message("") == "An error occurred"
