"""Initial schema — grant authority tables, constraints, and indexes.

Revision: 001_initial_schema
Created:  2026-10-19

Append-only:
  This file must NEVER be edited after it has been applied to any database.
  If a schema change is required, create a NEW migration file.

Creation order:
  1. Collaborator tables (users, oauth_clients)
  2. Grant tables (authorization_codes, refresh_tokens, revoked_tokens)
  3. Indexes

Portability:
  Runs unchanged on PostgreSQL and SQLite (tests). No enum types, no
  dialect-specific defaults: timestamps default to CURRENT_TIMESTAMP and
  booleans to sa.true() / sa.false().

Foreign keys:
  refresh_tokens.predecessor_id → refresh_tokens.id ON DELETE SET NULL
  Grant rows reference principals and clients by plain indexed columns; the
  collaborator tables may live in another service.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_initial_schema"
down_revision: str | None = None      # first migration — no parent
branch_labels: tuple | None = None
depends_on: tuple | None = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:

    # ── Step 1: users ──────────────────────────────────────────────────────
    # id doubles as the login name for the password grant.

    op.create_table(
        "users",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.CheckConstraint("LENGTH(TRIM(id)) > 0", name="ck_users_id_nonempty"),
    )

    # ── Step 2: oauth_clients ──────────────────────────────────────────────
    # client_secret_hash NULL → public client.

    op.create_table(
        "oauth_clients",
        sa.Column("client_id", sa.String(64), nullable=False),
        sa.Column("client_name", sa.String(255), nullable=False),
        sa.Column("client_secret_hash", sa.String(255), nullable=True),
        sa.Column("redirect_uris", sa.JSON(), nullable=False),
        sa.Column("allowed_scopes", sa.JSON(), nullable=False),
        sa.Column("grant_types", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.PrimaryKeyConstraint("client_id", name="pk_oauth_clients"),
    )

    # ── Step 3: authorization_codes ────────────────────────────────────────
    # code_hash is the SHA-256 hex digest of the raw code (64 chars).

    op.create_table(
        "authorization_codes",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("code_hash", sa.String(64), nullable=False),
        sa.Column("principal_id", sa.String(64), nullable=False),
        sa.Column("client_id", sa.String(64), nullable=False),
        sa.Column("redirect_uri", sa.Text(), nullable=False),
        sa.Column("scope", sa.String(1024), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_authorization_codes"),
        sa.UniqueConstraint("code_hash", name="uq_authorization_codes_code_hash"),
    )

    # ── Step 4: refresh_tokens ─────────────────────────────────────────────
    # One row per link of a rotation chain.

    op.create_table(
        "refresh_tokens",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False),
        sa.Column("principal_id", sa.String(64), nullable=False),
        sa.Column("client_id", sa.String(64), nullable=False),
        sa.Column("scope", sa.String(1024), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("revoked_reason", sa.String(16), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "predecessor_id",
            sa.String(64),
            sa.ForeignKey(
                "refresh_tokens.id",
                ondelete="SET NULL",
                name="fk_refresh_tokens_predecessor",
            ),
            nullable=True,
        ),
        sa.Column("access_token_id", sa.String(64), nullable=True),
        sa.Column("access_token_expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_refresh_tokens"),
        sa.UniqueConstraint("token_hash", name="uq_refresh_tokens_token_hash"),
    )

    # ── Step 5: revoked_tokens ─────────────────────────────────────────────
    # Durable backing of the revocation index.

    op.create_table(
        "revoked_tokens",
        sa.Column("token_id", sa.String(64), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "revoked_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.PrimaryKeyConstraint("token_id", name="pk_revoked_tokens"),
    )

    # ── Step 6: Indexes ────────────────────────────────────────────────────
    # Names follow SQLAlchemy's ix_<table>_<column> so the models' index=True
    # declarations and this migration agree.

    op.create_index("ix_users_is_active", "users", ["is_active"])

    op.create_index("ix_authorization_codes_principal_id", "authorization_codes", ["principal_id"])
    op.create_index("ix_authorization_codes_client_id", "authorization_codes", ["client_id"])
    op.create_index("ix_authorization_codes_expires_at", "authorization_codes", ["expires_at"])

    # principal / client: bulk revocation. predecessor: chain walk.
    # expires_at: the sweep.
    op.create_index("ix_refresh_tokens_principal_id", "refresh_tokens", ["principal_id"])
    op.create_index("ix_refresh_tokens_client_id", "refresh_tokens", ["client_id"])
    op.create_index("ix_refresh_tokens_expires_at", "refresh_tokens", ["expires_at"])
    op.create_index("ix_refresh_tokens_predecessor_id", "refresh_tokens", ["predecessor_id"])

    op.create_index("ix_revoked_tokens_expires_at", "revoked_tokens", ["expires_at"])


def downgrade() -> None:
    """
    Reverse of upgrade(): indexes first, then tables in reverse FK order.
    """
    op.drop_index("ix_revoked_tokens_expires_at", table_name="revoked_tokens")
    op.drop_index("ix_refresh_tokens_predecessor_id", table_name="refresh_tokens")
    op.drop_index("ix_refresh_tokens_expires_at", table_name="refresh_tokens")
    op.drop_index("ix_refresh_tokens_client_id", table_name="refresh_tokens")
    op.drop_index("ix_refresh_tokens_principal_id", table_name="refresh_tokens")
    op.drop_index("ix_authorization_codes_expires_at", table_name="authorization_codes")
    op.drop_index("ix_authorization_codes_client_id", table_name="authorization_codes")
    op.drop_index("ix_authorization_codes_principal_id", table_name="authorization_codes")
    op.drop_index("ix_users_is_active", table_name="users")

    op.drop_table("revoked_tokens")
    op.drop_table("refresh_tokens")
    op.drop_table("authorization_codes")
    op.drop_table("oauth_clients")
    op.drop_table("users")
