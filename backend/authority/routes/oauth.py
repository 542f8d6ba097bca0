"""
routes/oauth.py — OAuth token endpoint route handlers.

Layer rules:
  - Parse request body (form-encoded or JSON)
  - Validate with the appropriate schema (raises ValidationError on bad input)
  - Call exactly ONE grant authority method
  - Return the standard response envelope: {"data": {...}, "warnings": []}

No business logic here. No DB queries.
AppError propagates to the global error handler in authority/__init__.py;
routes never catch it.

Endpoints (base url_prefix=/api/v1/oauth):
  POST   /oauth/token       → 200   issue tokens for any supported grant type
  POST   /oauth/revoke      → 200   revoke an access or refresh token
  POST   /oauth/introspect  → 200   report whether an access token is active
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from backend.authority.middleware.auth_middleware import require_token
from backend.authority.schemas.token_schema import (
    IntrospectSchema,
    RevokeSchema,
    TokenRequestSchema,
)
from backend.authority.services.interfaces import Sensitivity

oauth_bp = Blueprint("oauth", __name__)


def _authority():
    return current_app.extensions["grant_authority"]


def _request_payload() -> dict:
    """
    Body as a flat dict. HTTP Basic credentials, when present, stand in for
    client_id / client_secret fields missing from the body.
    """
    if request.form:
        payload = request.form.to_dict()
    else:
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            payload = {}

    auth = request.authorization
    if auth is not None and auth.type == "basic":
        payload.setdefault("client_id", auth.username)
        payload.setdefault("client_secret", auth.password)
    return payload


def _no_store(response):
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"
    return response


@oauth_bp.route("/token", methods=["POST"])
def token():
    """POST /oauth/token — Exchange a grant for tokens. (Client auth in body or Basic.)"""
    grant_request = TokenRequestSchema().load(_request_payload())
    result = _authority().grant(grant_request)
    return _no_store(jsonify({"data": result.to_dict(), "warnings": []})), 200


@oauth_bp.route("/revoke", methods=["POST"])
@require_token(scope=lambda: current_app.config["REVOKE_SCOPE"], sensitivity=Sensitivity.HIGH)
def revoke():
    """POST /oauth/revoke — Revoke a token. (Bearer with the revoke scope.)"""
    data = RevokeSchema().load(_request_payload())
    _authority().revoke(data["token"], token_type_hint=data["token_type_hint"])
    return jsonify({"data": {"revoked": True}, "warnings": []}), 200


@oauth_bp.route("/introspect", methods=["POST"])
def introspect():
    """POST /oauth/introspect — Report token state. (No auth required.)"""
    data = IntrospectSchema().load(_request_payload())
    result = _authority().introspect(data["token"])
    return _no_store(jsonify({"data": result, "warnings": []})), 200
