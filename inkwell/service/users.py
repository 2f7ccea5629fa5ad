from __future__ import annotations

from typing import List, Optional

from inkwell.logging import get_logger
from inkwell.service.auth import AuthContext, AuthService
from inkwell.service.errors import ConflictError, ForbiddenError, NotFoundError
from inkwell.storage.errors import ConstraintViolation
from inkwell.storage.models import ROLE_RANK, BlacklistReason, User, UserRole

logger = get_logger(__name__)


def _is_super_admin(actor: AuthContext) -> bool:
    return actor.role == UserRole.SUPER_ADMIN.value


class UserService:
    """User administration with ownership and role checks.

    A plain user may only touch their own record. Listing, role changes,
    deleting someone else and forced revocation need ``super_admin``. Admins
    and super admins cannot delete or demote themselves.
    """

    def __init__(self, store, auth: AuthService) -> None:
        self.store = store
        self.auth = auth

    def _require_self_or_super_admin(self, actor: AuthContext, user_id: str) -> None:
        if actor.user_id != user_id and not _is_super_admin(actor):
            raise ForbiddenError("not allowed to access this user")

    def _require_super_admin(self, actor: AuthContext) -> None:
        if not _is_super_admin(actor):
            raise ForbiddenError("super admin role required")

    def _load(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def get_user(self, actor: AuthContext, user_id: str) -> User:
        self._require_self_or_super_admin(actor, user_id)
        return self._load(user_id)

    def list_users(self, actor: AuthContext, limit: int = 100) -> List[User]:
        self._require_super_admin(actor)
        return self.store.list_users(limit=limit)

    def update_user(
        self,
        actor: AuthContext,
        user_id: str,
        *,
        email: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        self._require_self_or_super_admin(actor, user_id)
        self._load(user_id)
        updates = {}
        if email:
            updates["email"] = email
        if first_name:
            updates["first_name"] = first_name
        if last_name:
            updates["last_name"] = last_name
        if not updates:
            return self._load(user_id)
        try:
            user = self.store.update_user(user_id, **updates)
        except ConstraintViolation as exc:
            raise ConflictError("email already in use") from exc
        if not user:
            raise NotFoundError("user not found")
        logger.info("user_updated", user_id=user_id, actor=actor.user_id, fields=sorted(updates))
        return user

    def set_role(self, actor: AuthContext, user_id: str, role: str) -> User:
        self._require_super_admin(actor)
        target = self._load(user_id)
        new_role = UserRole(role).value
        if actor.user_id == user_id and ROLE_RANK[new_role] < ROLE_RANK.get(target.role, 0):
            raise ForbiddenError("cannot demote your own account")
        user = self.store.update_user(user_id, role=new_role)
        if not user:
            raise NotFoundError("user not found")
        logger.info("user_role_changed", user_id=user_id, actor=actor.user_id, role=new_role)
        return user

    async def delete_user(self, actor: AuthContext, user_id: str) -> None:
        self._require_self_or_super_admin(actor, user_id)
        target = self._load(user_id)
        if actor.user_id == user_id and target.is_privileged:
            raise ForbiddenError("cannot delete your own privileged account")
        await self.auth.sessions.destroy_user_sessions(user_id)
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found")
        logger.info("user_deleted", user_id=user_id, actor=actor.user_id)

    async def revoke_user_tokens(self, actor: AuthContext, user_id: str) -> None:
        self._require_super_admin(actor)
        self._load(user_id)
        await self.auth.revoke_user_tokens(user_id, BlacklistReason.ADMIN_REVOKE)
        logger.info("user_tokens_revoked", user_id=user_id, actor=actor.user_id)
