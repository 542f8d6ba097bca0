"""
models/authorization_code.py — AuthorizationCode table definition.

One row per interactive authorization. The raw code is returned to the
client once; only its SHA-256 hex digest is stored.

`consumed` is flipped exactly once, by the conditional UPDATE in
SqlGrantStore.consume_authorization_code. Nothing else writes it.

principal_id / client_id are plain indexed references, not foreign keys:
users and clients belong to external collaborators that may live elsewhere.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from backend.authority.extensions import db


class AuthorizationCode(db.Model):
    __tablename__ = "authorization_codes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    code_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    principal_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Compared byte-for-byte at exchange time.
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)

    # Canonical space-joined scope set granted at authorization time.
    scope: Mapped[str] = mapped_column(String(1024), nullable=False, default="")

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    consumed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )

    consumed_at: Mapped[datetime | None] = mapped_column(
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
            f"<AuthorizationCode id={self.id!r} "
            f"client_id={self.client_id!r} "
            f"consumed={self.consumed}>"
        )
