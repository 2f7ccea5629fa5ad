from __future__ import annotations

import asyncio
import secrets
import string
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from inkwell.logging import get_logger
from inkwell.service.email import EmailService
from inkwell.service.errors import AuthenticationError, DeliveryError
from inkwell.service.passwords import PasswordService
from inkwell.service.sessions import SessionRegistry
from inkwell.service.token_blacklist import TokenBlacklistService
from inkwell.storage.models import BlacklistReason, PasswordResetRecord, utc_now

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = "If the email exists, a password reset link has been sent."
RESET_SUCCESS_MESSAGE = "Password has been reset successfully. Please login with your new password."

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_reset_token() -> str:
    """uuid4 hex, base-36 millisecond timestamp and 9 random base-36 characters."""
    stamp = _to_base36(int(time.time() * 1000))
    tail = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{uuid.uuid4().hex}-{stamp}-{tail}"


@dataclass
class ResetTokenStatus:
    valid: bool
    email: Optional[str] = None


class PasswordResetService:
    def __init__(
        self,
        store,
        email: EmailService,
        blacklist: TokenBlacklistService,
        passwords: PasswordService,
        *,
        sessions: Optional[SessionRegistry] = None,
        ttl: timedelta = timedelta(hours=1),
        cooldown: timedelta = timedelta(minutes=5),
        retention: timedelta = timedelta(days=7),
    ) -> None:
        self.store = store
        self.email = email
        self.blacklist = blacklist
        self.passwords = passwords
        self.sessions = sessions
        self.ttl = ttl
        self.cooldown = cooldown
        self.retention = retention

    async def request_password_reset(self, email: str) -> dict:
        """Issue a reset link if the account exists.

        The response is identical whether or not the account exists, and
        whether or not a recent request is still cooling down.
        """
        user = self.store.get_user_by_email(email)
        if not user:
            logger.info("password_reset_unknown_email")
            return {"message": GENERIC_RESET_MESSAGE}

        now = utc_now()
        latest = self.store.get_latest_live_password_reset(user.id, now)
        if latest and now - latest.created_at < self.cooldown:
            logger.info("password_reset_cooldown", user_id=user.id)
            return {"message": GENERIC_RESET_MESSAGE}

        invalidated = self.store.invalidate_password_resets(user.id)
        record = self.store.create_password_reset(
            PasswordResetRecord.new(user.id, generate_reset_token(), self.ttl)
        )

        try:
            sent = await asyncio.to_thread(
                self.email.send_password_reset, user.email, record.token, user.first_name
            )
        except Exception as exc:
            logger.error("password_reset_dispatch_error", user_id=user.id, error=str(exc))
            sent = False
        if not sent:
            self.store.delete_password_reset(record.id)
            raise DeliveryError("failed to send password reset email, please try again later")

        logger.info(
            "password_reset_requested",
            user_id=user.id,
            superseded=invalidated,
            expires_at=record.expires_at.isoformat(),
        )
        return {"message": GENERIC_RESET_MESSAGE}

    async def validate_reset_token(self, token: str) -> ResetTokenStatus:
        record = self.store.get_password_reset(token) if token else None
        if not record or not record.is_live():
            return ResetTokenStatus(valid=False)
        user = self.store.get_user(record.user_id)
        if not user:
            return ResetTokenStatus(valid=False)
        return ResetTokenStatus(valid=True, email=user.email)

    async def reset_password(self, token: str, new_password: str) -> dict:
        pending = self.store.get_password_reset(token) if token else None
        if not pending or not pending.is_live():
            raise AuthenticationError("invalid or expired reset token")

        # Hash before consuming so a hashing failure leaves the link usable
        pwd_hash, algo = await self.passwords.hash(new_password)
        record = self.store.consume_password_reset(token)
        if not record:
            raise AuthenticationError("invalid or expired reset token")
        if not self.store.get_user(record.user_id):
            raise AuthenticationError("invalid or expired reset token")

        self.store.save_password(record.user_id, pwd_hash, algo)
        self.store.set_refresh_token(record.user_id, None)

        try:
            await self.blacklist.blacklist_all_user_tokens(
                record.user_id, BlacklistReason.PASSWORD_RESET
            )
            if self.sessions is not None:
                await self.sessions.destroy_user_sessions(record.user_id)
        except Exception as exc:
            logger.error(
                "password_reset_revocation_failed", user_id=record.user_id, error=str(exc)
            )

        logger.info("password_reset_completed", user_id=record.user_id)
        return {"message": RESET_SUCCESS_MESSAGE}

    def cleanup_expired_tokens(self) -> int:
        removed = self.store.delete_expired_password_resets(utc_now())
        logger.info("password_reset_sweep_complete", kind="expired", removed=removed)
        return removed

    def cleanup_used_tokens(self) -> int:
        removed = self.store.delete_used_password_resets(utc_now() - self.retention)
        logger.info("password_reset_sweep_complete", kind="used", removed=removed)
        return removed
