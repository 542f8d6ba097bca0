"""
errors.py — AppError base class and error code registry.

Every error returned by the authority must use a code defined here.
Do not raise strings or generic exceptions from service or route code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - Messages never carry internal identifiers, store errors, or token material.
  - invalid_grant and replay_detected stay distinct even though both reject the
    same credential: the first is a silent denial, the second is an incident.
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by the operation that produces them. HTTP status is indicated in
# the comment. The string values are sent verbatim in the API response.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Grant Errors (raised by GrantAuthority.grant) ──────────────────────
    INVALID_CLIENT             = "invalid_client"           # 401
    UNAUTHORIZED_CLIENT        = "unauthorized_client"      # 400
    INVALID_GRANT              = "invalid_grant"            # 400
    INVALID_SCOPE              = "invalid_scope"            # 400
    REPLAY_DETECTED            = "replay_detected"          # 400, security event
    RATE_LIMITED               = "rate_limited"             # 429
    TEMPORARILY_UNAVAILABLE    = "temporarily_unavailable"  # 503

    # ── Token Verification Errors (401) ────────────────────────────────────
    MALFORMED_TOKEN            = "malformed_token"
    EXPIRED_TOKEN              = "expired_token"
    SIGNATURE_INVALID          = "signature_invalid"
    TOKEN_REVOKED              = "token_revoked"
    TOKEN_MISSING              = "token_missing"
    INSUFFICIENT_SCOPE         = "insufficient_scope"       # 403

    # ── Request Errors (400) ───────────────────────────────────────────────
    INVALID_REQUEST            = "invalid_request"

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR             = "internal_error"


_GRANT_STATUS = {
    ErrorCode.INVALID_CLIENT:          401,
    ErrorCode.RATE_LIMITED:            429,
    ErrorCode.TEMPORARILY_UNAVAILABLE: 503,
}

_TOKEN_STATUS = {
    ErrorCode.INSUFFICIENT_SCOPE:      403,
    ErrorCode.TEMPORARILY_UNAVAILABLE: 503,
}

_DEFAULT_MESSAGES = {
    ErrorCode.INVALID_CLIENT:          "Client authentication failed.",
    ErrorCode.UNAUTHORIZED_CLIENT:     "The client is not allowed to use this grant type.",
    ErrorCode.INVALID_GRANT:           "The provided grant is invalid, expired, or already used.",
    ErrorCode.INVALID_SCOPE:           "The requested scope exceeds what this grant allows.",
    ErrorCode.REPLAY_DETECTED:         "The refresh token was already used. All related tokens have been revoked.",
    ErrorCode.RATE_LIMITED:            "Too many token requests. Please try again later.",
    ErrorCode.TEMPORARILY_UNAVAILABLE: "The authorization service is temporarily unavailable.",
    ErrorCode.MALFORMED_TOKEN:         "The token is malformed.",
    ErrorCode.EXPIRED_TOKEN:           "The token has expired.",
    ErrorCode.SIGNATURE_INVALID:       "The token signature is invalid.",
    ErrorCode.TOKEN_REVOKED:           "The token has been revoked.",
    ErrorCode.TOKEN_MISSING:           "A bearer token is required.",
    ErrorCode.INSUFFICIENT_SCOPE:      "The token does not carry the required scope.",
    ErrorCode.INVALID_REQUEST:         "The request is missing a required parameter or is malformed.",
}


class GrantError(AppError):
    """A typed, expected grant failure. The code decides the HTTP status."""

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(
            code,
            message or _DEFAULT_MESSAGES[code],
            _GRANT_STATUS.get(code, 400),
        )


class TokenError(AppError):
    """An access token failed verification (401; 403 for scope, 503 when fail-closed)."""

    def __init__(self, code: str, message: str | None = None) -> None:
        status = _TOKEN_STATUS.get(code, 401)
        super().__init__(code, message or _DEFAULT_MESSAGES[code], status)


# ── Adapter failures ───────────────────────────────────────────────────────
#
# Raised by the store and cache adapters when the backend times out or is
# unreachable. Never sent to a client: the authority maps both to
# temporarily_unavailable.
# ──────────────────────────────────────────────────────────────────────────

class StoreUnavailable(Exception):
    """The durable grant store did not answer within its deadline."""


class CacheUnavailable(Exception):
    """The key-value cache did not answer within its deadline."""
