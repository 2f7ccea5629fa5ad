"""Tests for the sliding-TTL session registry."""

import pytest

from inkwell.service.sessions import SessionRegistry
from inkwell.storage.memory_cache import MemoryCache


@pytest.fixture
def registry(clock):
    return SessionRegistry(MemoryCache(clock=clock), ttl_seconds=60)


class TestSessionLifetime:
    """Sessions expire after a period without activity."""

    async def test_new_session_is_valid(self, registry):
        session_id = await registry.create_session("user-1")
        check = await registry.validate_and_refresh_session(session_id)
        assert check.valid is True
        assert check.user_id == "user-1"

    async def test_idle_session_expires(self, registry, clock):
        session_id = await registry.create_session("user-1")
        clock.advance(61)
        check = await registry.validate_and_refresh_session(session_id)
        assert check.valid is False
        assert check.user_id is None

    async def test_activity_slides_the_expiry(self, registry, clock):
        session_id = await registry.create_session("user-1")
        for _ in range(5):
            clock.advance(50)
            assert (await registry.validate_and_refresh_session(session_id)).valid
        clock.advance(61)
        assert not (await registry.validate_and_refresh_session(session_id)).valid

    async def test_refresh_updates_last_activity(self, registry, clock):
        session_id = await registry.create_session("user-1")
        before = await registry.get_session_info(session_id)
        clock.advance(5)
        await registry.validate_and_refresh_session(session_id)
        after = await registry.get_session_info(session_id)
        assert after.created_at == before.created_at
        assert after.last_activity >= before.last_activity

    @pytest.mark.parametrize("session_id", [None, "", "does-not-exist"])
    async def test_unknown_session_is_invalid(self, registry, session_id):
        check = await registry.validate_and_refresh_session(session_id)
        assert check.valid is False

    async def test_corrupt_record_is_treated_as_missing(self, registry):
        await registry.cache.set("session:broken", "{not json", 60)
        assert await registry.get_session_info("broken") is None


class TestSessionDestruction:
    """Explicit destruction, single and per user."""

    async def test_destroy_session_is_idempotent(self, registry):
        session_id = await registry.create_session("user-1")
        await registry.destroy_session(session_id)
        await registry.destroy_session(session_id)
        await registry.destroy_session(None)
        assert not (await registry.validate_and_refresh_session(session_id)).valid

    async def test_destroy_user_sessions_spares_other_users(self, registry):
        first = await registry.create_session("user-1")
        second = await registry.create_session("user-1")
        other = await registry.create_session("user-2")

        removed = await registry.destroy_user_sessions("user-1")

        assert removed == 2
        assert not (await registry.validate_and_refresh_session(first)).valid
        assert not (await registry.validate_and_refresh_session(second)).valid
        assert (await registry.validate_and_refresh_session(other)).valid

    async def test_destroy_user_sessions_can_keep_one(self, registry):
        keep = await registry.create_session("user-1")
        drop = await registry.create_session("user-1")

        removed = await registry.destroy_user_sessions("user-1", except_session_id=keep)

        assert removed == 1
        assert (await registry.validate_and_refresh_session(keep)).valid
        assert not (await registry.validate_and_refresh_session(drop)).valid

    async def test_destroy_user_sessions_without_sessions(self, registry):
        assert await registry.destroy_user_sessions("nobody") == 0
