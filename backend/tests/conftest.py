"""
tests/conftest.py — Fixtures shared by the unit and integration suites.

Design:
  - Unit tests get a fully wired GrantAuthority over in-memory fakes
    (tests/support.py): MemoryGrantStore, FlakyCache, FakeDirectory and a
    FrozenClock. No database, no network.
  - Integration tests get a fresh app per test from create_app("testing").
    TestingConfig points at in-memory SQLite (or TEST_DATABASE_URL), and
    db.create_all() builds the schema from the models. A new app per test
    also means a fresh in-process cache, so rate-guard windows and
    revocation entries never leak between tests.

Helper functions (not fixtures) for the integration suite:
  - seed_user(...)           → inserts a users row with a bcrypt hash
  - seed_client(...)         → inserts an oauth_clients row
  - password_grant(...)      → POST /token with grant_type=password
  - auth_headers(token)      → {"Authorization": "Bearer <token>"}

These are plain functions so a test can call them with arbitrary arguments.
"""

from __future__ import annotations

import pytest

from backend.authority import create_app
from backend.authority.extensions import db as _db
from backend.authority.models.oauth_client import OAuthClient
from backend.authority.models.user import User
from backend.authority.services.directory import hash_secret
from backend.tests.support import FrozenClock, build_harness

TOKEN_URL = "/api/v1/oauth/token"
REVOKE_URL = "/api/v1/oauth/revoke"
INTROSPECT_URL = "/api/v1/oauth/introspect"

DEFAULT_PASSWORD = "Password1"
DEFAULT_SECRET = "client-secret"
DEFAULT_REDIRECT = "https://app.test/callback"


# ═══════════════════════════════════════════════════════════════════════════
# Unit fixtures
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def harness(clock):
    """
    An authority with one active user ("alice") and two clients:
      web     confidential, every grant type, scopes read/write
      mobile  public (no secret), authorization_code + refresh_token
    """
    h = build_harness(clock=clock)
    h.directory.add_user("alice")
    h.directory.add_client("web")
    h.directory.add_client(
        "mobile",
        secret=None,
        grant_types={"authorization_code", "refresh_token"},
        scopes=("read",),
    )
    return h


# ═══════════════════════════════════════════════════════════════════════════
# Integration fixtures
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def app():
    """
    Creates the Flask application in 'testing' mode with an empty schema.

    Function-scoped: each test gets its own in-memory database and cache.
    """
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def authority(app):
    return app.extensions["grant_authority"]


# ═══════════════════════════════════════════════════════════════════════════
# Helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def seed_user(
        app,
        user_id: str = "alice",
        password: str = DEFAULT_PASSWORD,
        active: bool = True,
        *,
        password_hash: str | None = None,
) -> None:
    """`password_hash` overrides the hash computed from `password`."""
    with app.app_context():
        _db.session.add(User(
            id=user_id,
            password_hash=password_hash or hash_secret(password, app.config["BCRYPT_LOG_ROUNDS"]),
            is_active=active,
        ))
        _db.session.commit()


def seed_client(
        app,
        client_id: str = "web",
        *,
        secret: str | None = DEFAULT_SECRET,
        scopes=("read", "write", "tokens:revoke"),
        grant_types=("password", "authorization_code", "refresh_token", "client_credentials"),
        redirect_uris=(DEFAULT_REDIRECT,),
        active: bool = True,
) -> None:
    with app.app_context():
        _db.session.add(OAuthClient(
            client_id=client_id,
            client_name=f"{client_id} app",
            client_secret_hash=(
                hash_secret(secret, app.config["BCRYPT_LOG_ROUNDS"]) if secret else None
            ),
            redirect_uris=list(redirect_uris),
            allowed_scopes=list(scopes),
            grant_types=list(grant_types),
            is_active=active,
        ))
        _db.session.commit()


def set_user_active(app, user_id: str, active: bool) -> None:
    with app.app_context():
        user = _db.session.get(User, user_id)
        user.is_active = active
        _db.session.commit()


def password_grant(
        client,
        username: str = "alice",
        password: str = DEFAULT_PASSWORD,
        *,
        client_id: str = "web",
        client_secret: str | None = DEFAULT_SECRET,
        scope: str | None = None,
):
    body = {
        "grant_type": "password",
        "username": username,
        "password": password,
        "client_id": client_id,
    }
    if client_secret is not None:
        body["client_secret"] = client_secret
    if scope is not None:
        body["scope"] = scope
    return client.post(TOKEN_URL, json=body)


def auth_headers(token: str) -> dict:
    """Returns Authorization header dict for authenticated requests."""
    return {"Authorization": f"Bearer {token}"}
