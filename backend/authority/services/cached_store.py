"""
services/cached_store.py — Write-through cache in front of a GrantRecordStore.

Only the read-mostly lookup (find_refresh_token) is served from the cache.
Every mutation goes to the durable store first; affected cache entries are
invalidated only after the store call has returned (i.e. committed).

A stale cache entry can only ever claim a token is still live. That is safe:
the decision that matters, rotate_refresh_token, is a compare-and-swap in the
durable store and rejects a token the cache wrongly reported as live.

Cache failures never fail a grant here. Reads fall through to the store;
failed invalidations are logged and left to expire (entries are short-lived).
"""

from __future__ import annotations

import logging
from datetime import datetime

from marshmallow import ValidationError

from backend.authority.errors import CacheUnavailable
from backend.authority.schemas.record_schema import refresh_record_schema
from backend.authority.services.grant_store import (
    AuthorizationCodeRecord,
    ConsumeResult,
    GrantRecordStore,
    RefreshTokenRecord,
    RotationResult,
    SweepResult,
)
from backend.authority.services.interfaces import Clock, KeyValueCache

logger = logging.getLogger(__name__)

# Upper bound on how long a cached lookup may outlive a missed invalidation.
MAX_ENTRY_TTL_SECONDS = 300


def refresh_cache_key(token_hash: str) -> str:
    return f"grant:rt:{token_hash}"


class CachedGrantStore:

    def __init__(self, store: GrantRecordStore, cache: KeyValueCache, clock: Clock) -> None:
        self._store = store
        self._cache = cache
        self._clock = clock

    # ── Reads ──────────────────────────────────────────────────────────────

    def find_refresh_token(self, token_hash: str) -> RefreshTokenRecord | None:
        key = refresh_cache_key(token_hash)
        try:
            cached = self._cache.get(key)
        except CacheUnavailable:
            cached = None
        if cached is not None:
            try:
                return refresh_record_schema.loads(cached)
            except (ValidationError, ValueError):
                logger.warning("Discarding undecodable cache entry %s", key)

        record = self._store.find_refresh_token(token_hash)
        if record is not None and not record.revoked:
            self._populate(record)
        return record

    # ── Writes (durable first, then invalidate) ────────────────────────────

    def create_authorization_code(self, record: AuthorizationCodeRecord) -> None:
        self._store.create_authorization_code(record)

    def consume_authorization_code(self, code_hash: str, now: datetime) -> ConsumeResult:
        return self._store.consume_authorization_code(code_hash, now)

    def create_refresh_token(self, record: RefreshTokenRecord) -> None:
        self._store.create_refresh_token(record)

    def rotate_refresh_token(
            self,
            old: RefreshTokenRecord,
            new_record: RefreshTokenRecord,
            now: datetime,
    ) -> RotationResult:
        result = self._store.rotate_refresh_token(old, new_record, now)
        self._invalidate([old.token_hash, *(record.token_hash for record in result.revoked)])
        return result

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        revoked = self._store.revoke_refresh_token(token_hash, now)
        self._invalidate([token_hash, *(record.token_hash for record in revoked)])
        return revoked

    def revoke_for_principal(self, principal_id: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        revoked = self._store.revoke_for_principal(principal_id, now)
        self._invalidate([record.token_hash for record in revoked])
        return revoked

    def revoke_for_client(self, client_id: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        revoked = self._store.revoke_for_client(client_id, now)
        self._invalidate([record.token_hash for record in revoked])
        return revoked

    def sweep_expired(self, cutoff: datetime) -> SweepResult:
        # Swept rows are long expired; their cache entries expired with them.
        return self._store.sweep_expired(cutoff)

    # ── Private helpers ────────────────────────────────────────────────────

    def _populate(self, record: RefreshTokenRecord) -> None:
        remaining = int((record.expires_at - self._clock.now_utc()).total_seconds())
        if remaining <= 0:
            return
        try:
            self._cache.set_with_ttl(
                refresh_cache_key(record.token_hash),
                refresh_record_schema.dumps(record),
                min(remaining, MAX_ENTRY_TTL_SECONDS),
            )
        except CacheUnavailable:
            pass

    def _invalidate(self, token_hashes: list[str]) -> None:
        if not token_hashes:
            return
        try:
            self._cache.delete(*(refresh_cache_key(h) for h in token_hashes))
        except CacheUnavailable:
            logger.warning(
                "Cache invalidation failed for %d refresh token(s); entries expire within %ds",
                len(token_hashes), MAX_ENTRY_TTL_SECONDS,
            )
