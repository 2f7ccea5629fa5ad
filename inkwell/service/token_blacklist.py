from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from inkwell.logging import get_logger
from inkwell.service.tokens import TokenSigner, token_fingerprint
from inkwell.storage.models import (
    PASSWORD_RELATED_REASONS,
    BlacklistEntry,
    BlacklistReason,
    utc_now,
)

logger = get_logger(__name__)

ALL_TOKENS_PREFIX = "ALL_TOKENS_FOR_USER:"


def sentinel_key(user_id: str) -> str:
    return f"{ALL_TOKENS_PREFIX}{user_id}"


class TokenBlacklistService:
    """Revocation ledger for already-signed tokens.

    The durable store is the source of truth. The cache holds short-lived
    answers for the hot path plus exemption records that let one specific
    token survive a mass revocation for a few seconds.

    Cache keys:
    - ``blacklist:token:{sha256}``: "1"/"0" for a single token
    - ``blacklist:user:{user_id}``: "1"/"0" for sentinel presence
    - ``blacklist:exempt:{sha256}``: exempt-until epoch seconds
    """

    def __init__(
        self,
        store,
        cache,
        signer: TokenSigner,
        *,
        cache_ttl_seconds: int = 300,
        exemption_seconds: int = 30,
        sentinel_ttl: timedelta = timedelta(hours=24),
    ) -> None:
        self.store = store
        self.cache = cache
        self.signer = signer
        self.cache_ttl_seconds = cache_ttl_seconds
        self.exemption_seconds = exemption_seconds
        self.sentinel_ttl = sentinel_ttl

    @staticmethod
    def _token_key(token: str) -> str:
        return f"blacklist:token:{token_fingerprint(token)}"

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"blacklist:user:{user_id}"

    @staticmethod
    def _exempt_key(token: str) -> str:
        return f"blacklist:exempt:{token_fingerprint(token)}"

    async def _exempt(self, token: str) -> None:
        until = time.time() + self.exemption_seconds
        await self.cache.set(self._exempt_key(token), repr(until), self.exemption_seconds)

    async def _is_exempt(self, token: Optional[str]) -> bool:
        if not token:
            return False
        raw = await self.cache.get(self._exempt_key(token))
        if raw is None:
            return False
        try:
            return float(raw) > time.time()
        except ValueError:
            return False

    async def add_to_blacklist(
        self, token: str, user_id: str, reason: BlacklistReason = BlacklistReason.LOGOUT
    ) -> None:
        claims = self.signer.decode(token)
        exp = claims.get("exp") if claims else None
        if exp is None:
            # Undecodable tokens can never authenticate anyway
            logger.warning("blacklist_token_undecodable", user_id=user_id)
            return
        try:
            expires_at = datetime.fromtimestamp(float(exp), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            logger.warning("blacklist_token_bad_exp", user_id=user_id)
            return
        self.store.upsert_blacklist_entry(
            BlacklistEntry(
                token=token,
                user_id=user_id,
                expires_at=expires_at,
                reason=BlacklistReason(reason).value,
            )
        )
        await self.cache.set(self._token_key(token), "1", self.cache_ttl_seconds)
        logger.info("token_blacklisted", user_id=user_id, reason=BlacklistReason(reason).value)

    async def is_token_blacklisted(self, token: str) -> bool:
        if await self._is_exempt(token):
            return False
        key = self._token_key(token)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached == "1"
        if self._token_revoked(token):
            await self.cache.set(key, "1", self.cache_ttl_seconds)
            return True
        await self._cache_negative(key, lambda: self._token_revoked(token))
        return False

    def _token_revoked(self, token: str) -> bool:
        entry = self.store.get_blacklist_entry(token)
        return entry is not None and not entry.is_expired()

    async def _cache_negative(self, key: str, recheck) -> None:
        """Cache a "0" answer, then drop it if a revocation landed meanwhile.

        Revocations write the store before invalidating the cache, so a
        revocation that raced the first read is visible to ``recheck``.
        """
        await self.cache.set(key, "0", self.cache_ttl_seconds)
        if recheck():
            await self.cache.delete(key)

    async def blacklist_all_user_tokens(
        self,
        user_id: str,
        reason: BlacklistReason = BlacklistReason.SECURITY,
        exclude_token: Optional[str] = None,
    ) -> BlacklistEntry:
        """Revoke every token issued to ``user_id`` up to now.

        ``exclude_token`` is exempted first so it never observes the new
        cutoff during its grace window.
        """
        if exclude_token:
            await self._exempt(exclude_token)
        now = utc_now()
        entry = self.store.upsert_blacklist_entry(
            BlacklistEntry(
                token=sentinel_key(user_id),
                user_id=user_id,
                expires_at=now + self.sentinel_ttl,
                reason=BlacklistReason(reason).value,
                created_at=now,
            )
        )
        await self.cache.delete(self._user_key(user_id))
        logger.info(
            "user_tokens_blacklisted",
            user_id=user_id,
            reason=entry.reason,
            exempted=bool(exclude_token),
        )
        return entry

    async def is_user_tokens_blacklisted(
        self,
        user_id: str,
        current_token: Optional[str] = None,
        token_issued_at: Optional[float] = None,
    ) -> bool:
        if await self._is_exempt(current_token):
            return False
        user_key = self._user_key(user_id)
        if await self.cache.get(user_key) == "0":
            return False
        sentinel = self.get_user_sentinel(user_id)
        if sentinel is None:
            await self._cache_negative(
                user_key, lambda: self.get_user_sentinel(user_id) is not None
            )
            return False
        await self.cache.set(user_key, "1", self.cache_ttl_seconds)
        if token_issued_at is None:
            return True
        try:
            issued_at = float(token_issued_at)
        except (TypeError, ValueError):
            return True
        return issued_at <= sentinel.created_at.timestamp()

    def get_user_sentinel(self, user_id: str) -> Optional[BlacklistEntry]:
        entry = self.store.get_blacklist_entry(sentinel_key(user_id))
        if entry is None or entry.is_expired():
            return None
        return entry

    async def clear_user_blacklist(self, user_id: str) -> int:
        """Lift password-related revocations only.

        Logout-all-devices, admin and security revocations are left in place.
        """
        removed = self.store.delete_blacklist_entries_for_user(user_id, PASSWORD_RELATED_REASONS)
        keys = [self._token_key(token) for token in removed if token != sentinel_key(user_id)]
        await self.cache.delete(self._user_key(user_id), *keys)
        logger.info("user_blacklist_cleared", user_id=user_id, removed=len(removed))
        return len(removed)

    async def clear_user_all_tokens_blacklist(self, user_id: str) -> bool:
        removed = self.store.delete_blacklist_entry(sentinel_key(user_id))
        await self.cache.delete(self._user_key(user_id))
        if removed:
            logger.info("user_all_tokens_blacklist_cleared", user_id=user_id)
        return removed

    def count(self) -> int:
        return self.store.count_blacklist_entries()

    def cleanup_expired_tokens(self) -> int:
        """Purge durable entries past their expiry; cache entries age out on their own."""
        removed = self.store.delete_expired_blacklist_entries(utc_now())
        logger.info("blacklist_sweep_complete", removed=removed)
        return removed
