"""
middleware/auth_middleware.py — Bearer-token authentication decorator.

The @require_token decorator:
  1. Reads the Authorization header (expected: "Bearer <token>")
  2. Verifies the token through the grant authority (signature, issuer,
     algorithm, expiry, revocation index)
  3. Checks the required scope, if any
  4. Attaches the verified TokenClaims to flask.g.token_claims
  5. Raises the appropriate TokenError if any step fails

Strict responsibility boundary:
  - This middleware authenticates the bearer and checks one scope. It does
    not decide what the caller may do beyond that.
  - Views receive the claims via flask.g and pass plain values to services.

Error codes:
  token_missing       (401) — no Authorization header
  malformed_token     (401) — header not "Bearer <token>", or bad token
  signature_invalid   (401) — signature, issuer or algorithm mismatch
  expired_token       (401) — exp is in the past
  token_revoked       (401) — token id is in the revocation index
  insufficient_scope  (403) — valid token without the required scope
  temporarily_unavailable (503) — revocation index unreachable at this sensitivity
"""

from __future__ import annotations

import functools
from typing import Callable

from flask import current_app, g, request

from backend.authority.errors import ErrorCode, TokenError
from backend.authority.services.interfaces import Sensitivity


def require_token(
        scope: str | Callable[[], str] | None = None,
        sensitivity: Sensitivity = Sensitivity.STANDARD,
) -> Callable:
    """
    Route decorator factory that enforces bearer-token authentication.

    `scope` may be a zero-argument callable, resolved per request (e.g. to
    read the required scope from app config).

    Usage:
        @oauth_bp.route("/revoke", methods=["POST"])
        @require_token(scope="tokens:revoke", sensitivity=Sensitivity.HIGH)
        def revoke():
            claims = g.token_claims
            ...
    """
    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            _authenticate_request(scope, sensitivity)
            return f(*args, **kwargs)
        return decorated

    return decorator


def _authenticate_request(
        scope: str | Callable[[], str] | None,
        sensitivity: Sensitivity,
) -> None:
    """
    Performs the full verification sequence and sets flask.g.token_claims.

    Separated from the decorator wrapper for testability. Raises TokenError
    on any failure; the global error handler renders it.
    """
    auth_header = request.headers.get("Authorization", "")

    # ── Step 1: Require Authorization header ──────────────────────────────
    if not auth_header:
        raise TokenError(ErrorCode.TOKEN_MISSING)

    # ── Step 2: Parse "Bearer <token>" format ─────────────────────────────
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise TokenError(
            ErrorCode.MALFORMED_TOKEN,
            "Authorization header must be in the format: Bearer <token>.",
        )

    # ── Step 3: Verify through the authority ──────────────────────────────
    authority = current_app.extensions["grant_authority"]
    claims = authority.verify_access_token(parts[1], sensitivity)

    # ── Step 4: Scope check ───────────────────────────────────────────────
    if callable(scope):
        scope = scope()
    if scope is not None and scope not in claims.scopes:
        raise TokenError(ErrorCode.INSUFFICIENT_SCOPE)

    g.token_claims = claims
