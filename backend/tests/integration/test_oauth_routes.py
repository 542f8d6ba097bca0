"""
tests/integration/test_oauth_routes.py — Integration tests for the OAuth endpoints.

Endpoints covered:
  POST /oauth/token       → 200 for each grant type
  POST /oauth/revoke      → 200 (bearer token with the revoke scope)
  POST /oauth/introspect  → 200

Error cases:
  invalid_request       400 — schema failure, unsupported grant_type
  invalid_client        401 — unknown client / bad secret (WWW-Authenticate set)
  unauthorized_client   400 — grant type not allowed for the client
  invalid_grant         400 — bad credentials, replayed code
  replay_detected       400 — rotated-out refresh token presented again
  rate_limited          429 — too many attempts for one username
  token_missing         401 — /revoke without Authorization header
  insufficient_scope    403 — /revoke with a token lacking the revoke scope

Also covers the CLI commands registered by the app factory.
"""

from __future__ import annotations

import json
from base64 import b64encode

from backend.tests.conftest import (
    DEFAULT_REDIRECT,
    INTROSPECT_URL,
    REVOKE_URL,
    TOKEN_URL,
    auth_headers,
    password_grant,
    seed_client,
    seed_user,
    set_user_active,
)


def seed_defaults(app) -> None:
    seed_user(app)
    seed_client(app)


def basic_auth(client_id: str, secret: str) -> dict:
    raw = b64encode(f"{client_id}:{secret}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {raw}"}


def error_of(resp) -> dict:
    return resp.get_json()["error"]


# ═══════════════════════════════════════════════════════════════════════════
# POST /oauth/token
# ═══════════════════════════════════════════════════════════════════════════

class TestPasswordGrant:

    def test_success_returns_token_envelope(self, app, client):
        seed_defaults(app)

        resp = password_grant(client)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body["warnings"] == []
        data = body["data"]
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 900
        assert data["scope"] == "read tokens:revoke write"
        assert data["access_token"].count(".") == 2
        assert data["refresh_token"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_form_encoded_body_with_basic_client_auth(self, app, client):
        seed_defaults(app)

        resp = client.post(
            TOKEN_URL,
            data={"grant_type": "password", "username": "alice", "password": "Password1", "scope": "read"},
            headers=basic_auth("web", "client-secret"),
        )

        assert resp.status_code == 200
        assert resp.get_json()["data"]["scope"] == "read"

    def test_wrong_password_is_invalid_grant(self, app, client):
        seed_defaults(app)
        resp = password_grant(client, password="WrongPass1")
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "invalid_grant"

    def test_suspended_user_is_invalid_grant(self, app, client):
        seed_defaults(app)
        set_user_active(app, "alice", False)
        resp = password_grant(client)
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "invalid_grant"

    def test_corrupt_password_hash_is_invalid_grant(self, app, client):
        seed_user(app, password_hash="not-a-bcrypt-hash")
        seed_client(app)
        resp = password_grant(client)
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "invalid_grant"

    def test_bad_client_secret_is_401_with_challenge(self, app, client):
        seed_defaults(app)
        resp = password_grant(client, client_secret="wrong")
        assert resp.status_code == 401
        assert error_of(resp)["code"] == "invalid_client"
        assert "WWW-Authenticate" in resp.headers

    def test_unknown_client_is_invalid_client(self, app, client):
        seed_defaults(app)
        resp = password_grant(client, client_id="ghost")
        assert resp.status_code == 401
        assert error_of(resp)["code"] == "invalid_client"

    def test_grant_not_allowed_is_unauthorized_client(self, app, client):
        seed_user(app)
        seed_client(app, "spa", secret=None, grant_types=("authorization_code", "refresh_token"))
        resp = password_grant(client, client_id="spa", client_secret=None)
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "unauthorized_client"

    def test_scope_outside_client_allowance_is_invalid_scope(self, app, client):
        seed_defaults(app)
        resp = password_grant(client, scope="read admin")
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "invalid_scope"

    def test_rate_limited_after_max_attempts(self, app, client):
        seed_defaults(app)
        limit = app.config["RATE_LIMIT_MAX_ATTEMPTS"]
        for _ in range(limit):
            password_grant(client, password="WrongPass1")

        resp = password_grant(client)
        assert resp.status_code == 429
        assert error_of(resp)["code"] == "rate_limited"


class TestTokenRequestValidation:

    def test_missing_grant_type_is_invalid_request(self, app, client):
        resp = client.post(TOKEN_URL, json={"client_id": "web"})
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "invalid_request"
        assert error_of(resp)["field"] == "grant_type"

    def test_unsupported_grant_type_is_invalid_request(self, app, client):
        resp = client.post(TOKEN_URL, json={"grant_type": "implicit", "client_id": "web"})
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "invalid_request"

    def test_missing_password_is_invalid_request(self, app, client):
        resp = client.post(TOKEN_URL, json={
            "grant_type": "password", "client_id": "web", "username": "alice",
        })
        assert resp.status_code == 400
        assert error_of(resp)["field"] == "password"

    def test_non_object_json_body_is_invalid_request(self, app, client):
        resp = client.post(TOKEN_URL, json=["grant_type", "password"])
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "invalid_request"


class TestAuthorizationCodeGrant:

    def test_exchange_once_then_invalid_grant(self, app, client, authority):
        seed_defaults(app)
        code = authority.issue_authorization_code("alice", "web", DEFAULT_REDIRECT, ["read"])
        body = {
            "grant_type": "authorization_code",
            "client_id": "web",
            "client_secret": "client-secret",
            "code": code,
            "redirect_uri": DEFAULT_REDIRECT,
        }

        first = client.post(TOKEN_URL, json=body)
        assert first.status_code == 200
        assert first.get_json()["data"]["scope"] == "read"

        second = client.post(TOKEN_URL, json=body)
        assert second.status_code == 400
        assert error_of(second)["code"] == "invalid_grant"

    def test_redirect_uri_mismatch_is_invalid_grant(self, app, client, authority):
        seed_defaults(app)
        code = authority.issue_authorization_code("alice", "web", DEFAULT_REDIRECT)
        resp = client.post(TOKEN_URL, json={
            "grant_type": "authorization_code",
            "client_id": "web",
            "client_secret": "client-secret",
            "code": code,
            "redirect_uri": DEFAULT_REDIRECT.upper(),
        })
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "invalid_grant"


class TestRefreshGrant:

    def _refresh(self, client, refresh_token):
        return client.post(TOKEN_URL, json={
            "grant_type": "refresh_token",
            "client_id": "web",
            "client_secret": "client-secret",
            "refresh_token": refresh_token,
        })

    def test_rotation_then_replay_revokes_chain(self, app, client):
        seed_defaults(app)
        first = password_grant(client).get_json()["data"]

        rotated = self._refresh(client, first["refresh_token"])
        assert rotated.status_code == 200
        second = rotated.get_json()["data"]
        assert second["refresh_token"] != first["refresh_token"]

        replay = self._refresh(client, first["refresh_token"])
        assert replay.status_code == 400
        assert error_of(replay)["code"] == "replay_detected"

        # The successor issued before the replay is dead too.
        after = self._refresh(client, second["refresh_token"])
        assert after.status_code == 400
        assert error_of(after)["code"] == "invalid_grant"

        inactive = client.post(INTROSPECT_URL, json={"token": second["access_token"]})
        assert inactive.get_json()["data"] == {"active": False}

    def test_unknown_refresh_token_is_invalid_grant(self, app, client):
        seed_defaults(app)
        resp = self._refresh(client, "not-a-real-token")
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "invalid_grant"


class TestClientCredentialsGrant:

    def test_issues_access_token_without_refresh_token(self, app, client):
        seed_client(app)
        resp = client.post(
            TOKEN_URL,
            data={"grant_type": "client_credentials", "scope": "read"},
            headers=basic_auth("web", "client-secret"),
        )
        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert "refresh_token" not in data
        assert data["scope"] == "read"


# ═══════════════════════════════════════════════════════════════════════════
# POST /oauth/revoke
# ═══════════════════════════════════════════════════════════════════════════

class TestRevoke:

    def test_requires_bearer_token(self, app, client):
        resp = client.post(REVOKE_URL, json={"token": "abc"})
        assert resp.status_code == 401
        assert error_of(resp)["code"] == "token_missing"

    def test_malformed_authorization_header(self, app, client):
        resp = client.post(REVOKE_URL, json={"token": "abc"}, headers={"Authorization": "Token abc"})
        assert resp.status_code == 401
        assert error_of(resp)["code"] == "malformed_token"

    def test_requires_revoke_scope(self, app, client):
        seed_defaults(app)
        token = password_grant(client, scope="read").get_json()["data"]["access_token"]

        resp = client.post(REVOKE_URL, json={"token": "abc"}, headers=auth_headers(token))
        assert resp.status_code == 403
        assert error_of(resp)["code"] == "insufficient_scope"

    def test_revokes_access_token(self, app, client):
        seed_defaults(app)
        admin = password_grant(client).get_json()["data"]["access_token"]
        victim = password_grant(client, scope="read").get_json()["data"]["access_token"]

        resp = client.post(
            REVOKE_URL,
            json={"token": victim, "token_type_hint": "access_token"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 200
        assert resp.get_json()["data"] == {"revoked": True}

        introspected = client.post(INTROSPECT_URL, json={"token": victim})
        assert introspected.get_json()["data"] == {"active": False}

    def test_revokes_refresh_token(self, app, client):
        seed_defaults(app)
        admin = password_grant(client).get_json()["data"]["access_token"]
        victim = password_grant(client, scope="read").get_json()["data"]

        resp = client.post(
            REVOKE_URL,
            json={"token": victim["refresh_token"], "token_type_hint": "refresh_token"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 200

        introspected = client.post(INTROSPECT_URL, json={"token": victim["access_token"]})
        assert introspected.get_json()["data"] == {"active": False}

    def test_revoked_bearer_token_is_rejected(self, app, client):
        seed_defaults(app)
        admin = password_grant(client).get_json()["data"]["access_token"]

        client.post(REVOKE_URL, json={"token": admin}, headers=auth_headers(admin))

        resp = client.post(REVOKE_URL, json={"token": "abc"}, headers=auth_headers(admin))
        assert resp.status_code == 401
        assert error_of(resp)["code"] == "token_revoked"

    def test_unknown_token_hint_is_invalid_request(self, app, client):
        seed_defaults(app)
        admin = password_grant(client).get_json()["data"]["access_token"]
        resp = client.post(
            REVOKE_URL,
            json={"token": "abc", "token_type_hint": "id_token"},
            headers=auth_headers(admin),
        )
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "invalid_request"


# ═══════════════════════════════════════════════════════════════════════════
# POST /oauth/introspect
# ═══════════════════════════════════════════════════════════════════════════

class TestIntrospect:

    def test_active_token_reports_claims(self, app, client):
        seed_defaults(app)
        token = password_grant(client, scope="read").get_json()["data"]["access_token"]

        resp = client.post(INTROSPECT_URL, json={"token": token})

        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["active"] is True
        assert data["sub"] == "alice"
        assert data["client_id"] == "web"
        assert data["scope"] == "read"
        assert data["iss"] == app.config["JWT_ISSUER"]

    def test_garbage_token_is_inactive(self, app, client):
        resp = client.post(INTROSPECT_URL, json={"token": "garbage"})
        assert resp.status_code == 200
        assert resp.get_json()["data"] == {"active": False}

    def test_missing_token_is_invalid_request(self, app, client):
        resp = client.post(INTROSPECT_URL, json={})
        assert resp.status_code == 400
        assert error_of(resp)["field"] == "token"


# ═══════════════════════════════════════════════════════════════════════════
# App-level behaviour
# ═══════════════════════════════════════════════════════════════════════════

class TestAppSurface:

    def test_unknown_route_uses_error_envelope(self, client):
        resp = client.get("/api/v1/oauth/nope")
        assert resp.status_code == 404
        assert error_of(resp)["code"] == "invalid_request"

    def test_wrong_method_uses_error_envelope(self, client):
        resp = client.get(TOKEN_URL)
        assert resp.status_code == 405
        assert error_of(resp)["code"] == "invalid_request"

    def test_cors_headers_in_testing(self, client):
        resp = client.post(INTROSPECT_URL, json={"token": "x"}, headers={"Origin": "http://localhost:3000"})
        assert resp.headers["Access-Control-Allow-Origin"] == "http://localhost:3000"
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]


class TestCli:

    def test_sweep_grants_prints_report(self, app):
        result = app.test_cli_runner().invoke(args=["sweep-grants"])
        assert result.exit_code == 0
        assert json.loads(result.output) == {
            "authorization_codes": 0,
            "refresh_tokens": 0,
            "revocations": 0,
        }

    def test_revoke_principal(self, app, client):
        seed_defaults(app)
        refresh = password_grant(client).get_json()["data"]["refresh_token"]

        result = app.test_cli_runner().invoke(args=["revoke-principal", "alice"])
        assert result.exit_code == 0
        assert "Revoked 1 refresh token(s)" in result.output

        resp = client.post(TOKEN_URL, json={
            "grant_type": "refresh_token",
            "client_id": "web",
            "client_secret": "client-secret",
            "refresh_token": refresh,
        })
        assert resp.status_code == 400
        assert error_of(resp)["code"] == "invalid_grant"

    def test_revoke_client(self, app, client):
        seed_defaults(app)
        password_grant(client)
        password_grant(client)

        result = app.test_cli_runner().invoke(args=["revoke-client", "web"])
        assert result.exit_code == 0
        assert "Revoked 2 refresh token(s) for client web." in result.output
