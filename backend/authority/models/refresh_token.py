"""
models/refresh_token.py — RefreshToken table definition.

Each row is one link of a rotation chain. predecessor_id points at the token
this one replaced; the chain is walked forward (predecessor → successors)
when a rotated-out token is replayed.

Stores the SHA-256 hex digest of the raw refresh token, never the token
itself. A compromised DB does not expose valid raw tokens.

FK policy: predecessor_id ON DELETE SET NULL; the sweep may delete a long
expired ancestor without touching its live descendants.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from backend.authority.extensions import db


class RevocationReason:
    ROTATED = "rotated"   # replaced by a successor; reuse is a replay
    CHAIN   = "chain"     # descendant of a replayed token
    REVOKED = "revoked"   # explicit revoke / logout / admin action


class RefreshToken(db.Model):
    __tablename__ = "refresh_tokens"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    token_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    principal_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    scope: Mapped[str] = mapped_column(String(1024), nullable=False, default="")

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    revoked: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )
    revoked_reason: Mapped[str | None] = mapped_column(String(16), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    predecessor_id: Mapped[str | None] = mapped_column(
        ForeignKey("refresh_tokens.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # The access token minted together with this refresh token. Revoking the
    # refresh token also denylists that access token for its remaining life.
    access_token_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    access_token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<RefreshToken id={self.id!r} "
            f"principal_id={self.principal_id!r} "
            f"revoked={self.revoked}>"
        )
