"""
models/user.py — User (principal) table definition.

Owned by the user-management collaborator; the authority only reads the
password hash (via the credential verifier) and the active flag.
No business logic. No imports from services or routes.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from backend.authority.extensions import db


class User(db.Model):
    __tablename__ = "users"

    __table_args__ = (
        CheckConstraint(
            "LENGTH(TRIM(id)) > 0",
            name="ck_users_id_nonempty",
        ),
    )

    # Stable principal identifier; also the login name for the password grant.
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    password_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Re-checked at every issuance: suspending a user stops refreshes at once.
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User id={self.id!r} is_active={self.is_active}>"
