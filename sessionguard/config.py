from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session lifecycle service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionguard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/sessionguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; uses a synchronous Redis client when Redis is configured.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None,
        "JWT_REFRESH_SECRET",
        validate_default=True,
        description="Signing secret for refresh tokens; defaults to JWT_SECRET + '_refresh'",
    )
    jwt_issuer: str = env_field("ai-chatbot", "JWT_ISSUER")
    jwt_audience: str = env_field("ai-chatbot-users", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token TTL in minutes; also bounds the session lifetime",
    )
    session_cache_ttl_seconds: int = env_field(
        3600,
        "SESSION_CACHE_TTL_SECONDS",
        description="Upper bound for cached session records; capped by the session's remaining lifetime",
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS")
    janitor_enabled: bool = env_field(True, "JANITOR_ENABLED")
    janitor_interval_seconds: int = env_field(
        3600,
        "JANITOR_INTERVAL_SECONDS",
        description="Seconds between expired-session sweeps",
    )
    inactive_session_retention_hours: int = env_field(
        24,
        "INACTIVE_SESSION_RETENTION_HOURS",
        description="How long logged-out sessions are kept before the janitor deletes them",
    )
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

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

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_cache_ttl_seconds",
        "janitor_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("clock_skew_leeway_seconds", "inactive_session_retention_hours")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters")
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/sessionguard"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= MIN_SECRET_LENGTH:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _derive_refresh_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_REFRESH_SECRET must be at least {MIN_SECRET_LENGTH} characters"
                )
            return value
        base = info.data.get("jwt_secret")
        if not base:
            raise ValueError("JWT_REFRESH_SECRET requires a valid JWT_SECRET to derive from")
        return f"{base}_refresh"

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]


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
