"""Settings parsing and log redaction."""

import pytest
from pydantic import ValidationError

from ciamflow.config import IsolationLevel, Settings, get_settings, reset_settings_cache
from ciamflow.logging import (
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)
from ciamflow.service.runtime import _mask_url_password


class TestSettings:
    def test_env_values_are_coerced(self, monkeypatch):
        monkeypatch.setenv("OTP_MAX_ATTEMPTS", "3")
        monkeypatch.setenv("UOW_ISOLATION_LEVEL", "REPEATABLE_READ")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
        reset_settings_cache()

        settings = get_settings()

        assert settings.otp_max_attempts == 3
        assert settings.uow_isolation_level is IsolationLevel.REPEATABLE_READ
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_defaults(self):
        settings = Settings(jwt_secret="x" * 48)

        assert settings.otp_max_attempts == 1
        assert settings.refresh_cookie_path == "/v1/token"
        assert settings.cookie_secure is True
        assert settings.uow_isolation_level is IsolationLevel.SERIALIZABLE

    def test_attempt_bounds_enforced(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 48, uow_max_attempts=9)

    def test_test_code_must_be_numeric(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 48, otp_test_code="abcd")

    def test_generated_secret_is_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


class TestRedaction:
    def test_credentials_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "x", "password": "hunter22", "refresh_token": "abcdefgh", "code": "12"},
        )

        assert event["password"] == "hu***22"
        assert event["refresh_token"] == "ab***gh"
        assert event["code"] == "***"

    def test_identifiers_are_kept(self):
        event = _redact_pii(
            None, "info", {"token_id": "tok-123456", "transaction_id": "txn_abc", "error_code": "x"}
        )

        assert event == {"token_id": "tok-123456", "transaction_id": "txn_abc", "error_code": "x"}

    def test_error_messages_are_sanitized(self):
        message = sanitize_error_message("failed: SELECT * FROM tokens at /srv/ciamflow/db")

        assert "SELECT" not in message
        assert "/srv/ciamflow" not in message

    def test_url_password_masked(self):
        assert _mask_url_password("redis://:s3cret@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379") == "redis://cache:6379"


class TestCorrelation:
    def test_generated_when_absent(self):
        generated = set_correlation_id(None)

        assert get_correlation_id() == generated
        assert set_correlation_id("req-1") == "req-1"
