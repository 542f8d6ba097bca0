"""
services/memory_store.py — In-process GrantRecordStore.

Same contract as SqlGrantStore, with one lock standing in for the database's
row-level serialisation. Used by unit tests and the concurrency suite, where
many threads race the consume / rotate primitives against one store.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime

from backend.authority.models.refresh_token import RevocationReason
from backend.authority.services.grant_store import (
    AuthorizationCodeRecord,
    ConsumeResult,
    RefreshTokenRecord,
    RotationResult,
    SweepResult,
)


class MemoryGrantStore:

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._codes: dict[str, AuthorizationCodeRecord] = {}
        self._tokens: dict[str, RefreshTokenRecord] = {}
        self._by_hash: dict[str, str] = {}

    # ── Authorization codes ────────────────────────────────────────────────

    def create_authorization_code(self, record: AuthorizationCodeRecord) -> None:
        with self._lock:
            if record.code_hash in self._codes:
                raise ValueError("duplicate authorization code")
            self._codes[record.code_hash] = record

    def consume_authorization_code(self, code_hash: str, now: datetime) -> ConsumeResult:
        with self._lock:
            record = self._codes.get(code_hash)
            if record is None:
                return ConsumeResult(record=None, already_consumed=False)
            if record.consumed:
                return ConsumeResult(record=record, already_consumed=True)
            record = replace(record, consumed=True)
            self._codes[code_hash] = record
            return ConsumeResult(record=record, already_consumed=False)

    # ── Refresh tokens ─────────────────────────────────────────────────────

    def create_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._lock:
            self._insert(record)

    def find_refresh_token(self, token_hash: str) -> RefreshTokenRecord | None:
        with self._lock:
            token_id = self._by_hash.get(token_hash)
            return self._tokens.get(token_id) if token_id is not None else None

    def rotate_refresh_token(
            self,
            old: RefreshTokenRecord,
            new_record: RefreshTokenRecord,
            now: datetime,
    ) -> RotationResult:
        with self._lock:
            current = self._tokens.get(old.id)
            if current is None:
                return RotationResult(ok=False, chain_revoked=False)
            if not current.revoked:
                self._tokens[current.id] = replace(
                    current, revoked=True, revoked_reason=RevocationReason.ROTATED,
                )
                self._insert(new_record)
                return RotationResult(ok=True, chain_revoked=False)
            return RotationResult(
                ok=False,
                chain_revoked=True,
                revoked=self._revoke_descendants(old.id),
            )

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        with self._lock:
            token_id = self._by_hash.get(token_hash)
            if token_id is None:
                return ()
            revoked = []
            record = self._tokens[token_id]
            if not record.revoked:
                record = replace(record, revoked=True, revoked_reason=RevocationReason.REVOKED)
                self._tokens[token_id] = record
                revoked.append(record)
            revoked.extend(self._revoke_descendants(token_id))
            return tuple(revoked)

    def revoke_for_principal(self, principal_id: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        with self._lock:
            self._expire_codes(lambda code: code.principal_id == principal_id, now)
            return self._revoke_matching(lambda token: token.principal_id == principal_id)

    def revoke_for_client(self, client_id: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        with self._lock:
            self._expire_codes(lambda code: code.client_id == client_id, now)
            return self._revoke_matching(lambda token: token.client_id == client_id)

    def sweep_expired(self, cutoff: datetime) -> SweepResult:
        with self._lock:
            stale_codes = [h for h, c in self._codes.items() if c.expires_at < cutoff]
            for code_hash in stale_codes:
                del self._codes[code_hash]

            stale_tokens = [t for t in self._tokens.values() if t.expires_at < cutoff]
            stale_ids = {t.id for t in stale_tokens}
            for token in stale_tokens:
                del self._tokens[token.id]
                del self._by_hash[token.token_hash]
            for token_id, token in list(self._tokens.items()):
                if token.predecessor_id in stale_ids:
                    self._tokens[token_id] = replace(token, predecessor_id=None)

            return SweepResult(
                authorization_codes=len(stale_codes),
                refresh_tokens=len(stale_tokens),
            )

    # ── Private helpers (caller holds the lock) ────────────────────────────

    def _insert(self, record: RefreshTokenRecord) -> None:
        if record.id in self._tokens or record.token_hash in self._by_hash:
            raise ValueError("duplicate refresh token")
        self._tokens[record.id] = record
        self._by_hash[record.token_hash] = record.id

    def _revoke_descendants(self, root_id: str) -> tuple[RefreshTokenRecord, ...]:
        revoked = []
        frontier = {root_id}
        while frontier:
            children = [t for t in self._tokens.values() if t.predecessor_id in frontier]
            frontier = set()
            for child in children:
                if not child.revoked:
                    child = replace(child, revoked=True, revoked_reason=RevocationReason.CHAIN)
                    self._tokens[child.id] = child
                    revoked.append(child)
                frontier.add(child.id)
        return tuple(revoked)

    def _revoke_matching(self, predicate) -> tuple[RefreshTokenRecord, ...]:
        revoked = []
        for token_id, token in list(self._tokens.items()):
            if not token.revoked and predicate(token):
                token = replace(token, revoked=True, revoked_reason=RevocationReason.REVOKED)
                self._tokens[token_id] = token
                revoked.append(token)
        return tuple(revoked)

    def _expire_codes(self, predicate, now: datetime) -> None:
        for code_hash, code in list(self._codes.items()):
            if not code.consumed and code.expires_at > now and predicate(code):
                self._codes[code_hash] = replace(code, expires_at=now)
