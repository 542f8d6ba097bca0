"""
services/revocation.py — Revocation index for access-token identifiers.

Two tiers:
  cache    revoked:<jti> with TTL = remaining token lifetime (fast path)
  durable  revoked_tokens table (SqlRevocationStore), consulted on a cache
           miss unless the cache itself is declared durable

Lookup policy (is_revoked):
  cache hit                         → revoked
  cache miss, cache durable         → not revoked
  cache miss, cache not durable     → durable table decides
  cache unavailable, sensitivity ≥ threshold → fail closed (temporarily_unavailable)
  cache unavailable, below threshold         → durable table decides
  durable table unavailable         → fail closed

revoke() writes the durable row first, then the cache entry.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from backend.authority.errors import CacheUnavailable, ErrorCode, StoreUnavailable, TokenError
from backend.authority.models.revoked_token import RevokedToken
from backend.authority.services.grant_store import store_transaction
from backend.authority.services.interfaces import Clock, KeyValueCache, Sensitivity

logger = logging.getLogger(__name__)


def revocation_cache_key(token_id: str) -> str:
    return f"revoked:{token_id}"


class SqlRevocationStore:
    """Durable backing rows; one per revoked, not yet expired, token id."""

    def __init__(
            self,
            session_factory: sessionmaker,
            *,
            statement_timeout_ms: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._statement_timeout_ms = statement_timeout_ms

    def add(self, token_id: str, expires_at: datetime) -> None:
        with store_transaction(self._session_factory, self._statement_timeout_ms) as session:
            # merge() makes a repeated revoke of the same id idempotent.
            session.merge(RevokedToken(token_id=token_id, expires_at=expires_at))

    def contains(self, token_id: str, now: datetime) -> bool:
        with store_transaction(self._session_factory, self._statement_timeout_ms) as session:
            found = session.execute(
                select(RevokedToken.token_id).where(
                    RevokedToken.token_id == token_id,
                    RevokedToken.expires_at > now,
                )
            ).first()
            return found is not None

    def sweep(self, cutoff: datetime) -> int:
        with store_transaction(self._session_factory, self._statement_timeout_ms) as session:
            result = session.execute(
                delete(RevokedToken)
                .where(RevokedToken.expires_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0


class RevocationIndex:

    def __init__(
            self,
            cache: KeyValueCache,
            durable: SqlRevocationStore | None,
            clock: Clock,
            *,
            cache_is_durable: bool = False,
            fail_closed_at: Sensitivity = Sensitivity.STANDARD,
    ) -> None:
        if durable is None and not cache_is_durable:
            raise ValueError("a durable revocation store is required unless the cache is durable")
        self._cache = cache
        self._durable = durable
        self._clock = clock
        self._cache_is_durable = cache_is_durable
        self._fail_closed_at = fail_closed_at

    def revoke(self, token_id: str, expires_at: datetime) -> bool:
        """
        Denylists `token_id` until `expires_at`.

        Returns False (and writes nothing) for a token that has already
        expired; an expired token is rejected by the codec anyway.
        Raises StoreUnavailable / CacheUnavailable when the entry could not
        be made durable.
        """
        ttl = int((expires_at - self._clock.now_utc()).total_seconds())
        if ttl <= 0:
            return False

        if self._durable is not None:
            self._durable.add(token_id, expires_at)
        try:
            self._cache.set_with_ttl(revocation_cache_key(token_id), "1", ttl)
        except CacheUnavailable:
            if self._durable is None:
                raise
            # Lookups fall through to the durable row on a miss.
            logger.warning("Revocation cache write failed for a token; durable row stands")
        return True

    def is_revoked(self, token_id: str, sensitivity: Sensitivity = Sensitivity.STANDARD) -> bool:
        try:
            if self._cache.get(revocation_cache_key(token_id)) is not None:
                return True
            if self._cache_is_durable:
                return False
        except CacheUnavailable:
            if sensitivity >= self._fail_closed_at or self._durable is None:
                logger.warning(
                    "Revocation index unavailable; failing closed (sensitivity=%s)",
                    sensitivity.name,
                )
                raise TokenError(ErrorCode.TEMPORARILY_UNAVAILABLE)

        try:
            return self._durable.contains(token_id, self._clock.now_utc())
        except StoreUnavailable:
            raise TokenError(ErrorCode.TEMPORARILY_UNAVAILABLE)

    def sweep(self, cutoff: datetime) -> int:
        if self._durable is None:
            return 0
        return self._durable.sweep(cutoff)
