"""
Unit tests for CachedGrantStore: read-through population and invalidation
strictly after the durable write.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from backend.authority.services.cached_store import (
    MAX_ENTRY_TTL_SECONDS,
    CachedGrantStore,
    refresh_cache_key,
)
from backend.authority.services.grant_store import RefreshTokenRecord
from backend.authority.services.memory_store import MemoryGrantStore
from backend.tests.support import START, FlakyCache


def record(n: int = 1, **overrides) -> RefreshTokenRecord:
    values = dict(
        id=f"rt-{n}",
        token_hash=f"{n:064x}",
        principal_id="alice",
        client_id="web",
        scopes=frozenset({"read"}),
        expires_at=START + timedelta(days=7),
        access_token_id=f"jti-{n}",
        access_token_expires_at=START + timedelta(minutes=15),
    )
    values.update(overrides)
    return RefreshTokenRecord(**values)


@pytest.fixture
def backing():
    return MemoryGrantStore()


@pytest.fixture
def cache():
    return FlakyCache()


@pytest.fixture
def cached(backing, cache, clock):
    return CachedGrantStore(backing, cache, clock)


class TestReadThrough:

    def test_miss_populates_and_hit_skips_the_store(self, cached, backing, cache):
        backing.create_refresh_token(record())

        assert cached.find_refresh_token(record().token_hash) == record()
        assert cache.get(refresh_cache_key(record().token_hash)) is not None

        spy = MagicMock(wraps=backing)
        cached._store = spy
        assert cached.find_refresh_token(record().token_hash) == record()
        spy.find_refresh_token.assert_not_called()

    def test_entry_ttl_is_capped(self, backing, clock):
        cache = MagicMock()
        cache.get.return_value = None
        backing.create_refresh_token(record())

        CachedGrantStore(backing, cache, clock).find_refresh_token(record().token_hash)

        _, _, ttl = cache.set_with_ttl.call_args.args
        assert ttl == MAX_ENTRY_TTL_SECONDS

    def test_revoked_records_are_not_cached(self, cached, backing, cache):
        backing.create_refresh_token(record(revoked=True, revoked_reason="revoked"))
        assert cached.find_refresh_token(record().token_hash).revoked
        assert cache.get(refresh_cache_key(record().token_hash)) is None

    def test_unknown_token_is_not_cached(self, cached, cache):
        assert cached.find_refresh_token("9" * 64) is None
        assert cache.get(refresh_cache_key("9" * 64)) is None

    def test_cache_outage_falls_through_to_store(self, cached, backing, cache):
        backing.create_refresh_token(record())
        cache.down = True
        assert cached.find_refresh_token(record().token_hash) == record()

    def test_undecodable_entry_is_a_miss(self, cached, backing, cache):
        backing.create_refresh_token(record())
        cache.set(refresh_cache_key(record().token_hash), "{not json")
        assert cached.find_refresh_token(record().token_hash) == record()


class TestInvalidation:

    def test_rotation_invalidates_the_old_entry(self, cached, backing, cache):
        old = record(1)
        backing.create_refresh_token(old)
        cached.find_refresh_token(old.token_hash)

        result = cached.rotate_refresh_token(old, record(2, predecessor_id=old.id), START)

        assert result.ok
        assert cache.get(refresh_cache_key(old.token_hash)) is None
        assert cached.find_refresh_token(old.token_hash).revoked

    def test_chain_revocation_invalidates_descendants(self, cached, backing, cache):
        first, second = record(1), record(2, predecessor_id="rt-1")
        backing.create_refresh_token(first)
        cached.rotate_refresh_token(first, second, START)
        cached.find_refresh_token(second.token_hash)

        result = cached.rotate_refresh_token(first, record(3, predecessor_id="rt-1"), START)

        assert result.chain_revoked
        assert cache.get(refresh_cache_key(second.token_hash)) is None
        assert cached.find_refresh_token(second.token_hash).revoked

    def test_invalidation_happens_after_the_durable_write(self, clock):
        calls = []
        store = MagicMock()
        store.revoke_for_principal.side_effect = lambda *a: calls.append("store") or (record(),)
        cache = MagicMock()
        cache.delete.side_effect = lambda *keys: calls.append("cache")

        CachedGrantStore(store, cache, clock).revoke_for_principal("alice", START)

        assert calls == ["store", "cache"]

    def test_failed_durable_write_leaves_cache_untouched(self, clock):
        store = MagicMock()
        store.revoke_refresh_token.side_effect = RuntimeError("boom")
        cache = MagicMock()

        with pytest.raises(RuntimeError):
            CachedGrantStore(store, cache, clock).revoke_refresh_token("a" * 64, START)
        cache.delete.assert_not_called()

    def test_failed_invalidation_does_not_fail_the_write(self, cached, backing, cache):
        backing.create_refresh_token(record())
        cache.down = True
        revoked = cached.revoke_refresh_token(record().token_hash, START)
        assert [r.id for r in revoked] == ["rt-1"]
