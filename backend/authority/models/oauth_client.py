"""
models/oauth_client.py — OAuthClient table definition.

Owned by the client-registration collaborator. The authority reads the
allow-lists (scopes, grant types, redirect URIs), the secret hash, and the
active flag. List columns are JSON so the same model works on PostgreSQL
and SQLite.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from backend.authority.extensions import db


class OAuthClient(db.Model):
    __tablename__ = "oauth_clients"

    client_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    client_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # bcrypt hash. NULL means a public client (no secret can be presented).
    client_secret_hash: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    redirect_uris: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    allowed_scopes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    grant_types: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
        default=lambda: ["authorization_code", "refresh_token"],
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<OAuthClient client_id={self.client_id!r} is_active={self.is_active}>"
