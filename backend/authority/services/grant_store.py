"""
services/grant_store.py — Durable storage of authorization codes and refresh tokens.

The relational store is the durability authority for every single-use and
rotation decision. Two primitives carry the security invariants and are
compare-and-swap operations, never read-then-write:

  consume_authorization_code(code_hash, now)
    UPDATE ... SET consumed = true WHERE code_hash = ? AND consumed = false.
    Under N concurrent callers exactly one UPDATE matches a row; the others
    re-evaluate the WHERE clause after the winner commits and match nothing.

  rotate_refresh_token(old, new_record, now)
    UPDATE ... SET revoked = true WHERE id = ? AND revoked = false, then
    INSERT the successor, in one transaction. If the UPDATE matched nothing,
    the old token was already revoked: every descendant is revoked instead
    (chain revocation) and the rotation fails.

Every primitive runs in its own short transaction, committed before it
returns, so callers can update the cache strictly after the durable write.
Driver errors and deadline overruns surface as StoreUnavailable.

Layer rules:
  - No Flask imports. Receives plain values; returns frozen records.
  - `now` is always passed in by the caller (the authority owns the clock).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Protocol

from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from backend.authority.errors import StoreUnavailable
from backend.authority.models.authorization_code import AuthorizationCode
from backend.authority.models.refresh_token import RefreshToken, RevocationReason
from backend.authority.services.clock import as_utc
from backend.authority.services.token_codec import canonical_scope, parse_scope

logger = logging.getLogger(__name__)


# ── Records ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AuthorizationCodeRecord:
    id: str
    code_hash: str
    principal_id: str
    client_id: str
    redirect_uri: str
    scopes: frozenset[str]
    expires_at: datetime
    consumed: bool = False


@dataclass(frozen=True)
class RefreshTokenRecord:
    id: str
    token_hash: str
    principal_id: str
    client_id: str
    scopes: frozenset[str]
    expires_at: datetime
    revoked: bool = False
    revoked_reason: str | None = None
    predecessor_id: str | None = None
    access_token_id: str | None = None
    access_token_expires_at: datetime | None = None

    @property
    def rotated_out(self) -> bool:
        return self.revoked and self.revoked_reason == RevocationReason.ROTATED


@dataclass(frozen=True)
class ConsumeResult:
    record: AuthorizationCodeRecord | None
    already_consumed: bool


@dataclass(frozen=True)
class RotationResult:
    ok: bool
    chain_revoked: bool
    # Records this call revoked as part of a chain walk.
    revoked: tuple[RefreshTokenRecord, ...] = ()


@dataclass(frozen=True)
class SweepResult:
    authorization_codes: int
    refresh_tokens: int


class GrantRecordStore(Protocol):
    def create_authorization_code(self, record: AuthorizationCodeRecord) -> None:
        ...

    def consume_authorization_code(self, code_hash: str, now: datetime) -> ConsumeResult:
        ...

    def create_refresh_token(self, record: RefreshTokenRecord) -> None:
        ...

    def find_refresh_token(self, token_hash: str) -> RefreshTokenRecord | None:
        ...

    def rotate_refresh_token(
            self,
            old: RefreshTokenRecord,
            new_record: RefreshTokenRecord,
            now: datetime,
    ) -> RotationResult:
        ...

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        ...

    def revoke_for_principal(self, principal_id: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        ...

    def revoke_for_client(self, client_id: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        ...

    def sweep_expired(self, cutoff: datetime) -> SweepResult:
        ...


# ── Row ↔ record mapping ───────────────────────────────────────────────────

def _code_record(row: AuthorizationCode) -> AuthorizationCodeRecord:
    return AuthorizationCodeRecord(
        id=row.id,
        code_hash=row.code_hash,
        principal_id=row.principal_id,
        client_id=row.client_id,
        redirect_uri=row.redirect_uri,
        scopes=parse_scope(row.scope),
        expires_at=as_utc(row.expires_at),
        consumed=row.consumed,
    )


def _refresh_record(row: RefreshToken) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        token_hash=row.token_hash,
        principal_id=row.principal_id,
        client_id=row.client_id,
        scopes=parse_scope(row.scope),
        expires_at=as_utc(row.expires_at),
        revoked=row.revoked,
        revoked_reason=row.revoked_reason,
        predecessor_id=row.predecessor_id,
        access_token_id=row.access_token_id,
        access_token_expires_at=(
            as_utc(row.access_token_expires_at)
            if row.access_token_expires_at is not None
            else None
        ),
    )


def _refresh_row(record: RefreshTokenRecord) -> RefreshToken:
    return RefreshToken(
        id=record.id,
        token_hash=record.token_hash,
        principal_id=record.principal_id,
        client_id=record.client_id,
        scope=canonical_scope(record.scopes),
        expires_at=record.expires_at,
        revoked=record.revoked,
        revoked_reason=record.revoked_reason,
        predecessor_id=record.predecessor_id,
        access_token_id=record.access_token_id,
        access_token_expires_at=record.access_token_expires_at,
    )


# ── SQL implementation ─────────────────────────────────────────────────────

@contextmanager
def store_transaction(
        session_factory: sessionmaker,
        statement_timeout_ms: int | None = None,
) -> Iterator[Session]:
    """
    One committed transaction per store primitive.

    On PostgreSQL every statement inside it is bounded by SET LOCAL
    statement_timeout; pool_timeout (engine options) bounds the wait for
    a connection. Any SQLAlchemy failure becomes StoreUnavailable; the
    caller cannot know whether the write happened and must fail closed.
    """
    try:
        with session_factory.begin() as session:
            if statement_timeout_ms and session.get_bind().dialect.name == "postgresql":
                session.execute(
                    text(f"SET LOCAL statement_timeout = {int(statement_timeout_ms)}")
                )
            yield session
    except SQLAlchemyError as exc:
        logger.warning("Store operation failed: %s", type(exc).__name__)
        raise StoreUnavailable("store unavailable") from exc


class SqlGrantStore:

    def __init__(
            self,
            session_factory: sessionmaker,
            *,
            statement_timeout_ms: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._statement_timeout_ms = statement_timeout_ms

    def _transaction(self):
        return store_transaction(self._session_factory, self._statement_timeout_ms)

    # ── Authorization codes ────────────────────────────────────────────────

    def create_authorization_code(self, record: AuthorizationCodeRecord) -> None:
        with self._transaction() as session:
            session.add(AuthorizationCode(
                id=record.id,
                code_hash=record.code_hash,
                principal_id=record.principal_id,
                client_id=record.client_id,
                redirect_uri=record.redirect_uri,
                scope=canonical_scope(record.scopes),
                expires_at=record.expires_at,
                consumed=record.consumed,
            ))

    def consume_authorization_code(self, code_hash: str, now: datetime) -> ConsumeResult:
        with self._transaction() as session:
            result = session.execute(
                update(AuthorizationCode)
                .where(
                    AuthorizationCode.code_hash == code_hash,
                    AuthorizationCode.consumed.is_(False),
                )
                .values(consumed=True, consumed_at=now)
                .execution_options(synchronize_session=False)
            )
            row = session.execute(
                select(AuthorizationCode).where(AuthorizationCode.code_hash == code_hash)
            ).scalar_one_or_none()

            if row is None:
                return ConsumeResult(record=None, already_consumed=False)
            return ConsumeResult(
                record=_code_record(row),
                already_consumed=result.rowcount != 1,
            )

    # ── Refresh tokens ─────────────────────────────────────────────────────

    def create_refresh_token(self, record: RefreshTokenRecord) -> None:
        with self._transaction() as session:
            session.add(_refresh_row(record))

    def find_refresh_token(self, token_hash: str) -> RefreshTokenRecord | None:
        with self._transaction() as session:
            row = session.execute(
                select(RefreshToken).where(RefreshToken.token_hash == token_hash)
            ).scalar_one_or_none()
            return _refresh_record(row) if row is not None else None

    def rotate_refresh_token(
            self,
            old: RefreshTokenRecord,
            new_record: RefreshTokenRecord,
            now: datetime,
    ) -> RotationResult:
        with self._transaction() as session:
            result = session.execute(
                update(RefreshToken)
                .where(
                    RefreshToken.id == old.id,
                    RefreshToken.revoked.is_(False),
                )
                .values(
                    revoked=True,
                    revoked_reason=RevocationReason.ROTATED,
                    revoked_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                # Same transaction: the successor becomes visible together
                # with the predecessor's revocation, or not at all.
                session.add(_refresh_row(new_record))
                return RotationResult(ok=True, chain_revoked=False)

            if session.get(RefreshToken, old.id) is None:
                return RotationResult(ok=False, chain_revoked=False)

            revoked = self._revoke_descendants(session, [old.id], now)
            return RotationResult(ok=False, chain_revoked=True, revoked=revoked)

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        """Revokes the token and everything rotated out of it."""
        with self._transaction() as session:
            row = session.execute(
                select(RefreshToken)
                .where(RefreshToken.token_hash == token_hash)
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                return ()

            revoked = []
            if not row.revoked:
                self._mark_revoked(row, RevocationReason.REVOKED, now)
                revoked.append(_refresh_record(row))
            revoked.extend(self._revoke_descendants(session, [row.id], now))
            return tuple(revoked)

    def revoke_for_principal(self, principal_id: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        with self._transaction() as session:
            self._expire_pending_codes(session, AuthorizationCode.principal_id == principal_id, now)
            return self._revoke_where(session, RefreshToken.principal_id == principal_id, now)

    def revoke_for_client(self, client_id: str, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        with self._transaction() as session:
            self._expire_pending_codes(session, AuthorizationCode.client_id == client_id, now)
            return self._revoke_where(session, RefreshToken.client_id == client_id, now)

    # ── Sweep ──────────────────────────────────────────────────────────────

    def sweep_expired(self, cutoff: datetime) -> SweepResult:
        """
        Deletes records whose expiry is before `cutoff`.

        Expired codes and tokens can no longer win a consume or rotate (the
        authority rejects them on expiry before or after the CAS), so deleting
        them cannot race a live exchange.
        """
        with self._transaction() as session:
            codes = session.execute(
                delete(AuthorizationCode)
                .where(AuthorizationCode.expires_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            # Unlink successors first so the delete never trips the
            # self-referencing FK on backends without ON DELETE SET NULL.
            expired_ids = select(RefreshToken.id).where(RefreshToken.expires_at < cutoff)
            session.execute(
                update(RefreshToken)
                .where(RefreshToken.predecessor_id.in_(expired_ids))
                .values(predecessor_id=None)
                .execution_options(synchronize_session=False)
            )
            tokens = session.execute(
                delete(RefreshToken)
                .where(RefreshToken.expires_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            return SweepResult(
                authorization_codes=codes.rowcount or 0,
                refresh_tokens=tokens.rowcount or 0,
            )

    # ── Private helpers ────────────────────────────────────────────────────

    @staticmethod
    def _mark_revoked(row: RefreshToken, reason: str, now: datetime) -> None:
        row.revoked = True
        row.revoked_reason = reason
        row.revoked_at = now

    def _revoke_descendants(
            self,
            session: Session,
            root_ids: list[str],
            now: datetime,
    ) -> tuple[RefreshTokenRecord, ...]:
        """Walks successors breadth-first from `root_ids`, revoking each live one."""
        revoked = []
        frontier = list(root_ids)
        while frontier:
            children = session.execute(
                select(RefreshToken)
                .where(RefreshToken.predecessor_id.in_(frontier))
                .with_for_update()
            ).scalars().all()
            frontier = []
            for child in children:
                if not child.revoked:
                    self._mark_revoked(child, RevocationReason.CHAIN, now)
                    revoked.append(_refresh_record(child))
                frontier.append(child.id)
        return tuple(revoked)

    def _revoke_where(self, session: Session, condition, now: datetime) -> tuple[RefreshTokenRecord, ...]:
        rows = session.execute(
            select(RefreshToken)
            .where(condition, RefreshToken.revoked.is_(False))
            .with_for_update()
        ).scalars().all()
        for row in rows:
            self._mark_revoked(row, RevocationReason.REVOKED, now)
        return tuple(_refresh_record(row) for row in rows)

    @staticmethod
    def _expire_pending_codes(session: Session, condition, now: datetime) -> None:
        session.execute(
            update(AuthorizationCode)
            .where(
                condition,
                AuthorizationCode.consumed.is_(False),
                AuthorizationCode.expires_at > now,
            )
            .values(expires_at=now)
            .execution_options(synchronize_session=False)
        )
