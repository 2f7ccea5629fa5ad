from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from inkwell.config import SessionStrategy, get_settings, reset_settings_cache
from inkwell.logging import get_logger
from inkwell.service.auth import AuthService
from inkwell.service.email import EmailService
from inkwell.service.maintenance import HOUR, MaintenanceWorker
from inkwell.service.password_reset import PasswordResetService
from inkwell.service.passwords import PasswordService
from inkwell.service.sessions import SessionRegistry
from inkwell.service.token_blacklist import TokenBlacklistService
from inkwell.service.tokens import TokenSigner
from inkwell.service.users import UserService
from inkwell.storage.memory import MemoryStore
from inkwell.storage.memory_cache import MemoryCache
from inkwell.storage.postgres import PostgresStore
from inkwell.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            session_strategy=self.settings.session_strategy.value,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url, fs_root=self.settings.shared_fs_root)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()

        self.signer = TokenSigner(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
        )
        self.passwords = PasswordService()
        self.sessions = SessionRegistry(self.cache, ttl_seconds=self.settings.session_ttl_seconds)
        self.blacklist = TokenBlacklistService(
            self.store,
            self.cache,
            self.signer,
            cache_ttl_seconds=self.settings.blacklist_cache_ttl_seconds,
            exemption_seconds=self.settings.blacklist_exemption_seconds,
            sentinel_ttl=timedelta(hours=self.settings.all_tokens_sentinel_ttl_hours),
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
            reset_ttl_minutes=self.settings.password_reset_ttl_minutes,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            signer=self.signer,
            passwords=self.passwords,
            blacklist=self.blacklist,
            sessions=self.sessions,
            email=self.email,
        )
        self.password_reset = PasswordResetService(
            self.store,
            self.email,
            self.blacklist,
            self.passwords,
            sessions=self.sessions
            if self.settings.session_strategy == SessionStrategy.REGISTRY
            else None,
            ttl=timedelta(minutes=self.settings.password_reset_ttl_minutes),
            cooldown=timedelta(minutes=self.settings.password_reset_cooldown_minutes),
            retention=timedelta(days=self.settings.password_reset_retention_days),
        )
        self.users = UserService(self.store, self.auth)
        self.maintenance = MaintenanceWorker(
            self.store,
            self.blacklist,
            self.password_reset,
            poll_interval=self.settings.maintenance_poll_interval,
            blacklist_interval=self.settings.blacklist_sweep_interval_hours * HOUR,
            reset_interval=self.settings.reset_sweep_interval_hours * HOUR,
            used_reset_interval=self.settings.used_reset_sweep_interval_hours * HOUR,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=not isinstance(self.cache, MemoryCache),
            email_configured=self.email.is_configured,
            oauth_google_configured=bool(self.settings.oauth_google_client_id),
        )

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for the blacklist cache, exemptions and sessions; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions, exemptions and "
                "blacklist lookups are cached per process only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.maintenance.stop()
        await self.cache.close()
        if hasattr(self.store, "close"):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check prevents two threads from building it at once.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            try:
                runtime.cache.client.close()
            except Exception as exc:
                logger.warning("runtime_reset_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
