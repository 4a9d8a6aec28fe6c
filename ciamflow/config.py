from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ciamflow.logging import get_logger

logger = get_logger(__name__)


class IsolationLevel(str, Enum):
    """Transaction isolation levels accepted for units of work."""

    READ_COMMITTED = "read committed"
    REPEATABLE_READ = "repeatable read"
    SERIALIZABLE = "serializable"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/ciamflow", "DATABASE_URL"
    )
    database_pool_min_size: int = env_field(2, "DATABASE_POOL_MIN_SIZE")
    database_pool_max_size: int = env_field(10, "DATABASE_POOL_MAX_SIZE")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/ciamflow", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    persist_memory_store: bool = env_field(
        False,
        "PERSIST_MEMORY_STORE",
        description="Write the in-memory store to SHARED_FS_ROOT/state so dev restarts keep flows",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviours for CI: fixed OTP code, runtime reset allowed.",
    )
    demo_directory_enabled: bool = env_field(
        True,
        "DEMO_DIRECTORY_ENABLED",
        description="Serve the built-in scenario users as the credential gate",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("ciamflow", "JWT_ISSUER")
    jwt_audience: str = env_field("ciam-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    id_token_ttl_minutes: int = env_field(60, "ID_TOKEN_TTL_MINUTES")
    refresh_token_ttl_days: int = env_field(14, "REFRESH_TOKEN_TTL_DAYS")
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS")
    refresh_cookie_path: str = env_field("/v1/token", "REFRESH_COOKIE_PATH")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    auth_context_ttl_minutes: int = env_field(15, "AUTH_CONTEXT_TTL_MINUTES")
    mfa_transaction_ttl_seconds: int = env_field(300, "MFA_TRANSACTION_TTL_SECONDS")
    esign_transaction_ttl_seconds: int = env_field(600, "ESIGN_TRANSACTION_TTL_SECONDS")
    device_bind_transaction_ttl_seconds: int = env_field(
        300, "DEVICE_BIND_TRANSACTION_TTL_SECONDS"
    )
    otp_length: int = env_field(6, "OTP_LENGTH", ge=4, le=10)
    otp_max_attempts: int = env_field(
        1,
        "OTP_MAX_ATTEMPTS",
        ge=1,
        description="Wrong codes allowed before an OTP transaction is invalidated",
    )
    otp_test_code: str = env_field("1234", "OTP_TEST_CODE")
    push_poll_interval_ms: int = env_field(1000, "PUSH_POLL_INTERVAL_MS")
    device_trust_ttl_days: int = env_field(90, "DEVICE_TRUST_TTL_DAYS")

    uow_isolation_level: IsolationLevel = env_field(
        IsolationLevel.SERIALIZABLE, "UOW_ISOLATION_LEVEL"
    )
    uow_max_attempts: int = env_field(3, "UOW_MAX_ATTEMPTS", ge=1, le=5)
    uow_backoff_ms: int = env_field(25, "UOW_BACKOFF_MS", ge=0)

    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS")
    audit_retention_days: int = env_field(90, "AUDIT_RETENTION_DAYS")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("uow_isolation_level", mode="before")
    @classmethod
    def _validate_isolation(cls, value: Any) -> IsolationLevel:
        if isinstance(value, str):
            value = value.strip().lower().replace("_", " ")
        return IsolationLevel(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("otp_test_code")
    @classmethod
    def _validate_test_code(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError("OTP_TEST_CODE must be numeric")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        return _load_or_create_secret(
            Path(os.getenv("SHARED_FS_ROOT", "/srv/ciamflow")) / ".jwt_secret"
        )


_MIN_SECRET_LENGTH = 32


def _load_or_create_secret(path: Path) -> str:
    """Return the secret stored at ``path``, generating it on first use.

    Tokens signed by one process must verify in the next, so a generated
    secret is written once (0600, atomic rename) and reused afterwards.
    """
    root = path.parent
    try:
        root.mkdir(parents=True, exist_ok=True)
        os.chmod(root, 0o700)
    except PermissionError:
        # Mounted volumes may belong to another uid
        logger.info("jwt_secret_dir_not_owned", path=str(root))

    if path.is_file() and not path.is_symlink():
        try:
            stored = path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", path=str(path), error=str(exc))
        else:
            if len(stored) >= _MIN_SECRET_LENGTH:
                return stored
            logger.warning("jwt_secret_too_short", path=str(path))

    secret = secrets.token_urlsafe(64)
    staging: str | None = None
    try:
        fd, staging = tempfile.mkstemp(dir=str(root), prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            handle.write(secret)
        os.chmod(staging, 0o600)
        os.replace(staging, path)
    except OSError as exc:
        if staging and os.path.exists(staging):
            os.unlink(staging)
        logger.error("jwt_secret_persist_failed", path=str(path), error=str(exc))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(path))
    return secret


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
