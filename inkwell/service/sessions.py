from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

from inkwell.logging import get_logger
from inkwell.storage.models import Session, utc_now

logger = get_logger(__name__)

SESSION_PREFIX = "session:"


@dataclass
class SessionCheck:
    valid: bool
    user_id: Optional[str] = None


class SessionRegistry:
    """Sliding-TTL session records kept in the shared cache.

    A session lives only as long as it keeps being used: every successful
    validation pushes its expiry ``ttl_seconds`` into the future, and a miss
    means the session expired or never existed.
    """

    def __init__(self, cache, ttl_seconds: int = 60) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_PREFIX}{session_id}"

    @staticmethod
    def _user_index_key(user_id: str) -> str:
        return f"{SESSION_PREFIX}user:{user_id}"

    async def create_session(self, user_id: str) -> str:
        session = Session.new(user_id)
        await self.cache.set(self._key(session.id), json.dumps(session.to_dict()), self.ttl_seconds)
        # The index outlives individual sessions; members are pruned on read
        await self.cache.add_to_set(
            self._user_index_key(user_id), session.id, self.ttl_seconds * 2
        )
        logger.info("session_created", user_id=user_id, session_id=session.id)
        return session.id

    async def get_session_info(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        raw = await self.cache.get(self._key(session_id))
        if raw is None:
            return None
        try:
            return Session.from_dict(session_id, json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_record_corrupt", session_id=session_id, error=str(exc))
            return None

    async def validate_and_refresh_session(self, session_id: Optional[str]) -> SessionCheck:
        session = await self.get_session_info(session_id)
        if session is None:
            return SessionCheck(valid=False)
        session.last_activity = utc_now()
        await self.cache.set(self._key(session.id), json.dumps(session.to_dict()), self.ttl_seconds)
        await self.cache.add_to_set(
            self._user_index_key(session.user_id), session.id, self.ttl_seconds * 2
        )
        return SessionCheck(valid=True, user_id=session.user_id)

    async def destroy_session(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        session = await self.get_session_info(session_id)
        await self.cache.delete(self._key(session_id))
        if session is not None:
            await self.cache.remove_from_set(self._user_index_key(session.user_id), session_id)
            logger.info("session_destroyed", user_id=session.user_id, session_id=session_id)

    async def destroy_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        """Destroy every registry session of a user, optionally keeping one."""
        index_key = self._user_index_key(user_id)
        session_ids = await self.cache.set_members(index_key)
        doomed = [sid for sid in session_ids if sid != except_session_id]
        if not doomed:
            return 0
        await self.cache.delete(*(self._key(sid) for sid in doomed))
        await self.cache.remove_from_set(index_key, *doomed)
        logger.info("user_sessions_destroyed", user_id=user_id, revoked=len(doomed))
        return len(doomed)
