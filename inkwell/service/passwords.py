from __future__ import annotations

import asyncio
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from inkwell.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordService:
    """argon2id hashing run in worker threads so it never stalls the event loop."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against for unknown accounts so login timing does not reveal them
        self._dummy_hash = self._hasher.hash("inkwell-timing-equalizer")

    def _hash_sync(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def _verify_sync(self, stored_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def hash(self, password: str) -> Tuple[str, str]:
        return await asyncio.to_thread(self._hash_sync, password)

    async def verify(self, record: Optional[tuple[str, str]], password: str) -> bool:
        """Check ``password`` against a stored (hash, algo) record."""
        if not record:
            await asyncio.to_thread(self._verify_sync, self._dummy_hash, password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        return await asyncio.to_thread(self._verify_sync, stored_hash, password)
