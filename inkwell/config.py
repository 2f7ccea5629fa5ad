from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from inkwell.logging import get_logger

logger = get_logger(__name__)


class SessionStrategy(str, Enum):
    """How already-issued access tokens are invalidated.

    - BLACKLIST: durable revocation ledger with cache-assisted lookups and an
      issued-at cutoff per user.
    - REGISTRY: short-TTL sliding session records consulted on every request.
    """

    BLACKLIST = "blacklist"
    REGISTRY = "registry"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    database_url: str = env_field("postgresql://localhost:5432/inkwell", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/inkwell", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI; enables runtime resets and the sync Redis client.",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("inkwell", "JWT_ISSUER")
    jwt_audience: str = env_field("inkwell-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(30, "ACCESS_TOKEN_TTL_MINUTES")

    # Invalidation
    session_strategy: SessionStrategy = env_field(
        SessionStrategy.BLACKLIST,
        "SESSION_STRATEGY",
        description="blacklist or registry",
    )
    session_ttl_seconds: int = env_field(
        60,
        "SESSION_TTL_SECONDS",
        description="Idle window for registry sessions; refreshed on every request",
    )
    blacklist_cache_ttl_seconds: int = env_field(300, "BLACKLIST_CACHE_TTL_SECONDS")
    blacklist_exemption_seconds: int = env_field(
        30,
        "BLACKLIST_EXEMPTION_SECONDS",
        description="Grace window for the token that triggered a mass revocation",
    )
    all_tokens_sentinel_ttl_hours: int = env_field(24, "ALL_TOKENS_SENTINEL_TTL_HOURS")

    # Password reset
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    password_reset_cooldown_minutes: int = env_field(5, "PASSWORD_RESET_COOLDOWN_MINUTES")
    password_reset_retention_days: int = env_field(
        7,
        "PASSWORD_RESET_RETENTION_DAYS",
        description="How long consumed reset records are kept before the weekly sweep removes them",
    )

    require_email_verification: bool = env_field(False, "REQUIRE_EMAIL_VERIFICATION")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")

    # OAuth settings
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Inkwell", "EMAIL_FROM_NAME")

    # Maintenance sweeps
    maintenance_enabled: bool = env_field(True, "MAINTENANCE_ENABLED")
    maintenance_poll_interval: int = env_field(
        300,
        "MAINTENANCE_POLL_INTERVAL",
        description="Seconds between checks for due sweeps",
    )
    blacklist_sweep_interval_hours: int = env_field(24, "BLACKLIST_SWEEP_INTERVAL_HOURS")
    reset_sweep_interval_hours: int = env_field(24, "RESET_SWEEP_INTERVAL_HOURS")
    used_reset_sweep_interval_hours: int = env_field(24 * 7, "USED_RESET_SWEEP_INTERVAL_HOURS")

    # HTTP
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(False, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator("session_strategy")
    @classmethod
    def _validate_strategy(cls, value: SessionStrategy) -> SessionStrategy:
        return SessionStrategy(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/inkwell"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except Exception as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except Exception as exc:
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
            os.rename(tmp_path, str(secret_path))
        except Exception as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
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
