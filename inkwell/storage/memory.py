from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from inkwell.logging import get_logger
from inkwell.storage.errors import ConstraintViolation
from inkwell.storage.models import (
    BlacklistEntry,
    PasswordResetRecord,
    User,
    utc_now,
)

# Columns callers may change through update_user
USER_MUTABLE_FIELDS = frozenset(
    {"email", "first_name", "last_name", "role", "google_id", "picture", "is_email_verified"}
)


class MemoryStore:
    """In-process backing store persisted to a JSON snapshot under fs_root."""

    def __init__(self, fs_root: str = "/tmp/inkwell") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.blacklist: Dict[str, BlacklistEntry] = {}
        self.password_resets: Dict[str, PasswordResetRecord] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        first_name: str = "",
        last_name: str = "",
        *,
        role: str = "user",
        google_id: Optional[str] = None,
        picture: Optional[str] = None,
        is_email_verified: bool = False,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
                google_id=google_id,
                picture=picture,
                is_email_verified=is_email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = fields.get("email")
            if new_email and new_email != user.email:
                if any(u.email == new_email for u in self.users.values() if u.id != user_id):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utc_now()
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for token, record in list(self.password_resets.items()):
                if record.user_id == user_id:
                    self.password_resets.pop(token, None)
            self._persist_state()
            return True

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def set_refresh_token(self, user_id: str, token_hash: Optional[str]) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.refresh_token_hash = token_hash
            user.updated_at = utc_now()
            self._persist_state()

    def get_user_by_refresh_token(self, token_hash: str) -> Optional[User]:
        if not token_hash:
            return None
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.refresh_token_hash == token_hash), None
            )

    def rotate_refresh_token(self, old_hash: str, new_hash: str) -> Optional[User]:
        """Swap the stored refresh token only if it still equals ``old_hash``."""
        with self._data_lock:
            user = self.get_user_by_refresh_token(old_hash)
            if not user:
                return None
            user.refresh_token_hash = new_hash
            user.updated_at = utc_now()
            self._persist_state()
            return user

    def list_users_with_pending_reset(self, now: Optional[datetime] = None) -> List[User]:
        now = now or utc_now()
        with self._data_lock:
            user_ids = {r.user_id for r in self.password_resets.values() if r.is_live(now)}
            return [self.users[uid] for uid in user_ids if uid in self.users]

    # -- blacklist ---------------------------------------------------------

    def upsert_blacklist_entry(self, entry: BlacklistEntry) -> BlacklistEntry:
        with self._data_lock:
            self.blacklist[entry.token] = entry
            self._persist_state()
            return entry

    def get_blacklist_entry(self, token: str) -> Optional[BlacklistEntry]:
        with self._data_lock:
            return self.blacklist.get(token)

    def delete_blacklist_entry(self, token: str) -> bool:
        with self._data_lock:
            removed = self.blacklist.pop(token, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_blacklist_entries_for_user(
        self, user_id: str, reasons: Iterable[str]
    ) -> List[str]:
        wanted = set(reasons)
        with self._data_lock:
            tokens = [
                token
                for token, entry in self.blacklist.items()
                if entry.user_id == user_id and entry.reason in wanted
            ]
            for token in tokens:
                self.blacklist.pop(token, None)
            if tokens:
                self._persist_state()
            return tokens

    def delete_expired_blacklist_entries(self, before: datetime) -> int:
        with self._data_lock:
            expired = [t for t, e in self.blacklist.items() if e.expires_at < before]
            for token in expired:
                self.blacklist.pop(token, None)
            if expired:
                self._persist_state()
            return len(expired)

    def count_blacklist_entries(self) -> int:
        with self._data_lock:
            return len(self.blacklist)

    # -- password resets ---------------------------------------------------

    def create_password_reset(self, record: PasswordResetRecord) -> PasswordResetRecord:
        with self._data_lock:
            if record.token in self.password_resets:
                raise ConstraintViolation("reset token already exists", {"field": "token"})
            if record.user_id not in self.users:
                raise ConstraintViolation("user not found for reset", {"user_id": record.user_id})
            self.password_resets[record.token] = record
            self._persist_state()
            return record

    def get_password_reset(self, token: str) -> Optional[PasswordResetRecord]:
        with self._data_lock:
            return self.password_resets.get(token)

    def get_latest_live_password_reset(
        self, user_id: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetRecord]:
        now = now or utc_now()
        with self._data_lock:
            live = [
                r for r in self.password_resets.values() if r.user_id == user_id and r.is_live(now)
            ]
            return max(live, key=lambda r: r.created_at, default=None)

    def invalidate_password_resets(self, user_id: str) -> int:
        """Mark every unused reset record for the user as used."""
        with self._data_lock:
            count = 0
            for record in self.password_resets.values():
                if record.user_id == user_id and not record.is_used:
                    record.is_used = True
                    count += 1
            if count:
                self._persist_state()
            return count

    def consume_password_reset(
        self, token: str, now: Optional[datetime] = None
    ) -> Optional[PasswordResetRecord]:
        """Atomically flip a live record to used; None if it was not live."""
        now = now or utc_now()
        with self._data_lock:
            record = self.password_resets.get(token)
            if not record or not record.is_live(now):
                return None
            record.is_used = True
            self._persist_state()
            return record

    def delete_password_reset(self, reset_id: str) -> None:
        with self._data_lock:
            for token, record in list(self.password_resets.items()):
                if record.id == reset_id:
                    self.password_resets.pop(token, None)
                    self._persist_state()
                    return

    def delete_expired_password_resets(self, before: datetime) -> int:
        with self._data_lock:
            expired = [t for t, r in self.password_resets.items() if r.expires_at < before]
            for token in expired:
                self.password_resets.pop(token, None)
            if expired:
                self._persist_state()
            return len(expired)

    def delete_used_password_resets(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                t
                for t, r in self.password_resets.items()
                if r.is_used and r.created_at < before
            ]
            for token in stale:
                self.password_resets.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "blacklist": [self._serialize_blacklist_entry(e) for e in self.blacklist.values()],
            "password_resets": [
                self._serialize_password_reset(r) for r in self.password_resets.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.blacklist = {
            e["token"]: self._deserialize_blacklist_entry(e) for e in data.get("blacklist", [])
        }
        self.password_resets = {
            r["token"]: self._deserialize_password_reset(r)
            for r in data.get("password_resets", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role": user.role,
            "google_id": user.google_id,
            "picture": user.picture,
            "is_email_verified": user.is_email_verified,
            "refresh_token_hash": user.refresh_token_hash,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role=data.get("role", "user"),
            google_id=data.get("google_id"),
            picture=data.get("picture"),
            is_email_verified=data.get("is_email_verified", False),
            refresh_token_hash=data.get("refresh_token_hash"),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at", data["created_at"])),
        )

    def _serialize_blacklist_entry(self, entry: BlacklistEntry) -> dict:
        return {
            "id": entry.id,
            "token": entry.token,
            "user_id": entry.user_id,
            "expires_at": self._serialize_datetime(entry.expires_at),
            "reason": entry.reason,
            "created_at": self._serialize_datetime(entry.created_at),
        }

    def _deserialize_blacklist_entry(self, data: dict) -> BlacklistEntry:
        return BlacklistEntry(
            id=data["id"],
            token=data["token"],
            user_id=str(data["user_id"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            reason=data.get("reason", "logout"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_password_reset(self, record: PasswordResetRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token": record.token,
            "expires_at": self._serialize_datetime(record.expires_at),
            "is_used": record.is_used,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_password_reset(self, data: dict) -> PasswordResetRecord:
        return PasswordResetRecord(
            id=data["id"],
            user_id=str(data["user_id"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            is_used=data.get("is_used", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
