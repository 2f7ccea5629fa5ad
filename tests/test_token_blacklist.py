"""Tests for the token revocation ledger."""

from datetime import datetime, timedelta, timezone

import pytest

from inkwell.service.token_blacklist import TokenBlacklistService, sentinel_key
from inkwell.service.tokens import TokenSigner
from inkwell.storage.memory import MemoryStore
from inkwell.storage.memory_cache import MemoryCache
from inkwell.storage.models import BlacklistEntry, BlacklistReason, utc_now


@pytest.fixture
def signer():
    return TokenSigner(
        "Test-Secret-Key_for-Automation-Only-987654321!",
        issuer="inkwell",
        audience="inkwell-clients",
        access_ttl=timedelta(minutes=15),
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def blacklist(store, cache, signer):
    return TokenBlacklistService(store, cache, signer, exemption_seconds=30)


def _token(signer, user_id="user-1", issued_at=None):
    return signer.sign({"sub": user_id, "token_type": "access"}, issued_at=issued_at)


class TestSingleTokenRevocation:
    """add_to_blacklist and is_token_blacklisted."""

    async def test_revoked_token_is_blacklisted(self, blacklist, signer):
        token = _token(signer)
        assert await blacklist.is_token_blacklisted(token) is False
        await blacklist.add_to_blacklist(token, "user-1", BlacklistReason.LOGOUT)
        assert await blacklist.is_token_blacklisted(token) is True

    async def test_entry_expires_with_the_token(self, blacklist, signer, store):
        token = _token(signer)
        await blacklist.add_to_blacklist(token, "user-1")
        entry = store.get_blacklist_entry(token)
        assert entry.reason == BlacklistReason.LOGOUT.value
        assert entry.expires_at == datetime.fromtimestamp(
            signer.decode(token)["exp"], tz=timezone.utc
        )

    async def test_revoking_twice_is_a_no_op(self, blacklist, signer, store):
        token = _token(signer)
        await blacklist.add_to_blacklist(token, "user-1")
        await blacklist.add_to_blacklist(token, "user-1")
        assert store.count_blacklist_entries() == 1
        assert await blacklist.is_token_blacklisted(token) is True

    async def test_undecodable_token_is_ignored(self, blacklist, store):
        await blacklist.add_to_blacklist("not-a-jwt", "user-1")
        assert store.count_blacklist_entries() == 0

    async def test_lookup_falls_back_to_store_on_cache_miss(self, blacklist, signer, cache, clock):
        token = _token(signer)
        await blacklist.add_to_blacklist(token, "user-1")
        # Cached answers age out; the durable entry still decides
        clock.advance(blacklist.cache_ttl_seconds + 1)
        assert await blacklist.is_token_blacklisted(token) is True

    async def test_other_instance_sees_revocation(self, blacklist, signer, store, clock):
        token = _token(signer)
        await blacklist.add_to_blacklist(token, "user-1")
        peer = TokenBlacklistService(store, MemoryCache(clock=clock), signer)
        assert await peer.is_token_blacklisted(token) is True


class TestUserWideRevocation:
    """Sentinel-based revocation with the issued-at cutoff."""

    async def test_tokens_issued_before_cutoff_are_revoked(self, blacklist, signer):
        entry = await blacklist.blacklist_all_user_tokens("user-1", BlacklistReason.SECURITY)
        cutoff = entry.created_at

        older = cutoff - timedelta(seconds=5)
        assert await blacklist.is_user_tokens_blacklisted(
            "user-1", _token(signer, issued_at=older), older.timestamp()
        )
        assert await blacklist.is_user_tokens_blacklisted(
            "user-1", _token(signer, issued_at=cutoff), cutoff.timestamp()
        )

    async def test_tokens_issued_after_cutoff_pass(self, blacklist, signer):
        entry = await blacklist.blacklist_all_user_tokens("user-1", BlacklistReason.SECURITY)
        later = entry.created_at + timedelta(milliseconds=1)
        token = _token(signer, issued_at=later)
        iat = signer.decode(token)["iat"]
        assert not await blacklist.is_user_tokens_blacklisted("user-1", token, iat)

    async def test_missing_iat_is_treated_as_revoked(self, blacklist, signer):
        await blacklist.blacklist_all_user_tokens("user-1")
        assert await blacklist.is_user_tokens_blacklisted("user-1", _token(signer), None)

    async def test_other_users_are_unaffected(self, blacklist, signer):
        await blacklist.blacklist_all_user_tokens("user-1")
        token = _token(signer, user_id="user-2")
        assert not await blacklist.is_user_tokens_blacklisted(
            "user-2", token, signer.decode(token)["iat"]
        )

    async def test_cached_negative_answer_is_invalidated(self, blacklist, signer):
        token = _token(signer)
        iat = signer.decode(token)["iat"]
        assert not await blacklist.is_user_tokens_blacklisted("user-1", token, iat)
        await blacklist.blacklist_all_user_tokens("user-1")
        assert await blacklist.is_user_tokens_blacklisted("user-1", token, iat)

    async def test_sentinel_is_stored_under_reserved_key(self, blacklist, store):
        await blacklist.blacklist_all_user_tokens("user-1", BlacklistReason.ADMIN_REVOKE)
        entry = store.get_blacklist_entry(sentinel_key("user-1"))
        assert entry.token == "ALL_TOKENS_FOR_USER:user-1"
        assert entry.reason == BlacklistReason.ADMIN_REVOKE.value
        assert entry.expires_at - entry.created_at == timedelta(hours=24)

    async def test_repeated_revocation_moves_the_cutoff(self, blacklist, store):
        first = await blacklist.blacklist_all_user_tokens("user-1")
        second = await blacklist.blacklist_all_user_tokens("user-1")
        assert second.created_at >= first.created_at
        assert store.count_blacklist_entries() == 1

    async def test_expired_sentinel_is_ignored(self, blacklist, signer, store):
        past = utc_now() - timedelta(days=2)
        store.upsert_blacklist_entry(
            BlacklistEntry(
                token=sentinel_key("user-1"),
                user_id="user-1",
                expires_at=past + timedelta(hours=24),
                reason=BlacklistReason.SECURITY.value,
                created_at=past,
            )
        )
        assert blacklist.get_user_sentinel("user-1") is None
        assert not await blacklist.is_user_tokens_blacklisted("user-1", _token(signer), None)


class TestExemption:
    """The token that triggered a mass revocation keeps working briefly."""

    async def test_excluded_token_survives_the_grace_window(self, blacklist, signer, clock):
        issued = utc_now() - timedelta(seconds=1)
        current = _token(signer, issued_at=issued)
        other = _token(signer, issued_at=issued)

        await blacklist.blacklist_all_user_tokens(
            "user-1", BlacklistReason.LOGOUT_ALL_DEVICES, exclude_token=current
        )

        assert not await blacklist.is_user_tokens_blacklisted(
            "user-1", current, issued.timestamp()
        )
        assert await blacklist.is_user_tokens_blacklisted("user-1", other, issued.timestamp())

        clock.advance(31)
        assert await blacklist.is_user_tokens_blacklisted("user-1", current, issued.timestamp())

    async def test_exemption_is_shared_through_the_cache(self, blacklist, signer, store, cache):
        current = _token(signer, issued_at=utc_now() - timedelta(seconds=1))
        await blacklist.blacklist_all_user_tokens("user-1", exclude_token=current)
        # Another instance on the same cache honours the exemption
        peer = TokenBlacklistService(store, cache, signer)
        assert not await peer.is_user_tokens_blacklisted(
            "user-1", current, signer.decode(current)["iat"]
        )

    async def test_stale_exemption_value_is_ignored(self, blacklist, signer, cache):
        current = _token(signer, issued_at=utc_now() - timedelta(seconds=1))
        await blacklist.blacklist_all_user_tokens("user-1")
        await cache.set(blacklist._exempt_key(current), "0", 30)
        assert await blacklist.is_user_tokens_blacklisted(
            "user-1", current, signer.decode(current)["iat"]
        )


class TestClearing:
    """Lifting revocations and the maintenance sweep."""

    async def test_clear_user_blacklist_only_lifts_password_reasons(
        self, blacklist, signer, store
    ):
        logout_token = _token(signer)
        await blacklist.add_to_blacklist(logout_token, "user-1", BlacklistReason.LOGOUT)
        await blacklist.blacklist_all_user_tokens("user-1", BlacklistReason.PASSWORD_CHANGE)

        removed = await blacklist.clear_user_blacklist("user-1")

        assert removed == 1
        assert blacklist.get_user_sentinel("user-1") is None
        assert await blacklist.is_token_blacklisted(logout_token) is True

    async def test_clear_user_blacklist_keeps_admin_revocation(self, blacklist):
        await blacklist.blacklist_all_user_tokens("user-1", BlacklistReason.ADMIN_REVOKE)
        assert await blacklist.clear_user_blacklist("user-1") == 0
        assert blacklist.get_user_sentinel("user-1") is not None

    async def test_clear_all_tokens_sentinel(self, blacklist, signer):
        token = _token(signer, issued_at=utc_now() - timedelta(seconds=1))
        iat = signer.decode(token)["iat"]
        await blacklist.blacklist_all_user_tokens("user-1", BlacklistReason.ADMIN_REVOKE)
        assert await blacklist.is_user_tokens_blacklisted("user-1", token, iat)

        assert await blacklist.clear_user_all_tokens_blacklist("user-1") is True
        assert not await blacklist.is_user_tokens_blacklisted("user-1", token, iat)
        assert await blacklist.clear_user_all_tokens_blacklist("user-1") is False

    async def test_cleanup_expired_tokens(self, blacklist, signer, store):
        expired = _token(signer, issued_at=utc_now() - timedelta(hours=2))
        live = _token(signer)
        await blacklist.add_to_blacklist(expired, "user-1")
        await blacklist.add_to_blacklist(live, "user-1")
        assert blacklist.count() == 2

        assert blacklist.cleanup_expired_tokens() == 1
        assert blacklist.count() == 1
        assert store.get_blacklist_entry(live) is not None


def _revoke_during_first_lookup(monkeypatch, store, entry_factory):
    """Make the first store read return, then land a revocation before the caller continues."""
    original = store.get_blacklist_entry
    calls = []

    def interleaved(token):
        result = original(token)
        if not calls:
            calls.append(token)
            store.upsert_blacklist_entry(entry_factory())
        return result

    monkeypatch.setattr(store, "get_blacklist_entry", interleaved)
    return calls


class TestConcurrentRevocation:
    """A revocation racing a cache fill must not leave a stale negative answer."""

    async def test_user_cutoff_landing_mid_lookup(self, blacklist, signer, store, monkeypatch):
        token = _token(signer)
        iat = signer.decode(token)["iat"]

        def sentinel():
            now = utc_now()
            return BlacklistEntry(
                token=sentinel_key("user-1"),
                user_id="user-1",
                expires_at=now + timedelta(hours=24),
                reason=BlacklistReason.PASSWORD_CHANGE.value,
                created_at=now,
            )

        calls = _revoke_during_first_lookup(monkeypatch, store, sentinel)
        assert not await blacklist.is_user_tokens_blacklisted("user-1", token, iat)
        assert calls == [sentinel_key("user-1")]
        assert await blacklist.is_user_tokens_blacklisted("user-1", token, iat)

    async def test_single_token_revoked_mid_lookup(self, blacklist, signer, store, monkeypatch):
        token = _token(signer)
        exp = datetime.fromtimestamp(signer.decode(token)["exp"], tz=timezone.utc)

        def entry():
            return BlacklistEntry(
                token=token,
                user_id="user-1",
                expires_at=exp,
                reason=BlacklistReason.LOGOUT.value,
            )

        _revoke_during_first_lookup(monkeypatch, store, entry)
        assert await blacklist.is_token_blacklisted(token) is False
        assert await blacklist.is_token_blacklisted(token) is True
