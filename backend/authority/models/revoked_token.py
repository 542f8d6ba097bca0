"""
models/revoked_token.py — Durable backing for the revocation index.

The cache entry (revoked:<jti>) is the fast path; this row is what survives
a cache flush. Rows are useless once expires_at passes and are deleted by
the sweep.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from backend.authority.extensions import db


class RevokedToken(db.Model):
    __tablename__ = "revoked_tokens"

    token_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Natural expiry of the revoked access token.
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    revoked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<RevokedToken token_id={self.token_id!r}>"
