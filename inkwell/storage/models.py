from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Roles in ascending order of privilege."""

    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


ROLE_RANK = {UserRole.USER.value: 0, UserRole.ADMIN.value: 1, UserRole.SUPER_ADMIN.value: 2}


class BlacklistReason(str, Enum):
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"
    LOGOUT_ALL_DEVICES = "logout_all_devices"
    ADMIN_REVOKE = "admin_revoke"
    SECURITY = "security"


# Only these reasons are lifted by clear_user_blacklist
PASSWORD_RELATED_REASONS = frozenset(
    {BlacklistReason.PASSWORD_CHANGE.value, BlacklistReason.PASSWORD_RESET.value}
)


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str = UserRole.USER.value
    google_id: Optional[str] = None
    picture: Optional[str] = None
    is_email_verified: bool = False
    refresh_token_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_privileged(self) -> bool:
        return ROLE_RANK.get(self.role, 0) > 0


@dataclass
class Session:
    """Volatile registry record; lives only in the cache."""

    id: str
    user_id: str
    created_at: datetime
    last_activity: datetime

    @classmethod
    def new(cls, user_id: str) -> "Session":
        now = utc_now()
        return cls(id=uuid.uuid4().hex, user_id=user_id, created_at=now, last_activity=now)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }

    @classmethod
    def from_dict(cls, session_id: str, data: dict) -> "Session":
        return cls(
            id=session_id,
            user_id=data["user_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            last_activity=datetime.fromisoformat(data["last_activity"]),
        )


@dataclass
class BlacklistEntry:
    """A revoked token, or a per-user cutoff sentinel when ``token`` is
    ``ALL_TOKENS_FOR_USER:<user_id>``."""

    token: str
    user_id: str
    expires_at: datetime
    reason: str = BlacklistReason.LOGOUT.value
    created_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utc_now())


@dataclass
class PasswordResetRecord:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    is_used: bool = False
    created_at: datetime = field(default_factory=utc_now)

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return not self.is_used and self.expires_at > (now or utc_now())

    @classmethod
    def new(cls, user_id: str, token: str, ttl: timedelta) -> "PasswordResetRecord":
        now = utc_now()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=now + ttl,
            created_at=now,
        )
