"""
services/token_codec.py — Signs and verifies access-token claim sets.

Token design:
  - JWT, HMAC family (HS256 by default), header carries the signing key id.
  - Claim set is fixed: sub, client_id, scope, iat, exp, iss, jti. Anything
    missing, mistyped, or extra makes the token malformed. No claim is ever
    defaulted.
  - scope is the space-joined, sorted scope set, so equal sets always sign
    to equal strings.

Verification order:
  1. Structure: three non-empty dot-separated segments, else malformed_token.
  2. Signature: HMAC over the segments exactly as received, checked against
     every configured key, before any segment is parsed. The signature
     segment must be canonical base64url, so flipping any bit of the header,
     payload, or signature yields signature_invalid.
  3. Header + claims via jwt.decode: the header alg must be the configured
     algorithm and iss the configured issuer (algorithm-confusion and
     foreign-issuer tokens → signature_invalid).
  4. Expiry against the injected clock (expired_token).

The codec is pure: no I/O, no global state, the only input besides the token
is the immutable AuthorityConfig.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Iterable

import jwt
from jwt.algorithms import get_default_algorithms

from backend.authority.errors import ErrorCode, TokenError
from backend.authority.services.interfaces import Clock
from backend.authority.settings import AuthorityConfig, SigningKey

_CLAIM_NAMES = frozenset({"sub", "client_id", "scope", "iat", "exp", "iss", "jti"})


def _normalise_scopes(scopes: Iterable[str]) -> frozenset[str]:
    if isinstance(scopes, (str, bytes)):
        raise TypeError("scopes must be a collection of strings, not a string")
    result = frozenset(scopes)
    for scope in result:
        if not isinstance(scope, str) or not scope or " " in scope:
            raise ValueError(f"invalid scope value: {scope!r}")
    return result


def canonical_scope(scopes: Iterable[str]) -> str:
    """Space-joined, sorted representation of a scope set."""
    return " ".join(sorted(scopes))


def parse_scope(raw: str | None) -> frozenset[str]:
    """Parses a space-delimited scope string; None or "" is the empty set."""
    if not raw:
        return frozenset()
    return _normalise_scopes(raw.split())


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    client_id: str
    scopes: frozenset[str]
    issued_at: int
    expires_at: int
    issuer: str
    token_id: str

    def __post_init__(self) -> None:
        for name in ("subject", "client_id", "issuer", "token_id"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ValueError(f"{name} must be a non-empty string")
        for name in ("issued_at", "expires_at"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"{name} must be an integer timestamp")
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be after issued_at")
        object.__setattr__(self, "scopes", _normalise_scopes(self.scopes))

    @property
    def scope(self) -> str:
        return canonical_scope(self.scopes)

    def to_payload(self) -> dict:
        return {
            "sub":       self.subject,
            "client_id": self.client_id,
            "scope":     self.scope,
            "iat":       self.issued_at,
            "exp":       self.expires_at,
            "iss":       self.issuer,
            "jti":       self.token_id,
        }

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenClaims":
        """Raises KeyError / TypeError / ValueError on any claim defect."""
        if set(payload) != _CLAIM_NAMES:
            raise ValueError("unexpected claim set")
        scope = payload["scope"]
        if not isinstance(scope, str):
            raise TypeError("scope must be a string")
        scopes = parse_scope(scope)
        if canonical_scope(scopes) != scope:
            raise ValueError("scope is not in canonical form")
        return cls(
            subject=payload["sub"],
            client_id=payload["client_id"],
            scopes=scopes,
            issued_at=payload["iat"],
            expires_at=payload["exp"],
            issuer=payload["iss"],
            token_id=payload["jti"],
        )


def _decode_signature(segment: str) -> bytes | None:
    """Strict base64url decode: rejects anything that does not re-encode identically."""
    try:
        raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except (binascii.Error, ValueError):
        return None
    if base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii") != segment:
        return None
    return raw


class TokenCodec:

    def __init__(self, config: AuthorityConfig, clock: Clock) -> None:
        self._config = config
        self._clock = clock
        self._algorithm = get_default_algorithms()[config.algorithm]
        self._verify_keys = tuple(
            (key, self._algorithm.prepare_key(key.secret))
            for key in config.signing_keys
        )

    def sign(self, claims: TokenClaims) -> str:
        key = self._config.active_key
        return jwt.encode(
            claims.to_payload(),
            key.secret,
            algorithm=self._config.algorithm,
            headers={"kid": key.kid},
        )

    def verify(self, token: str) -> TokenClaims:
        """
        Returns the claims of a valid token.

        Raises:
          TokenError(malformed_token)    — structure or claim defect
          TokenError(signature_invalid)  — bad signature, alg or issuer mismatch
          TokenError(expired_token)      — exp is not in the future
        """
        if not isinstance(token, str) or not token:
            raise TokenError(ErrorCode.MALFORMED_TOKEN)

        segments = token.split(".")
        if len(segments) != 3 or not all(segments):
            raise TokenError(ErrorCode.MALFORMED_TOKEN)

        key = self._match_key(segments)
        if key is None:
            raise TokenError(ErrorCode.SIGNATURE_INVALID)

        try:
            payload = jwt.decode(
                token,
                key.secret,
                algorithms=[self._config.algorithm],
                issuer=self._config.issuer,
                options={
                    "require": sorted(_CLAIM_NAMES),
                    # Time checks use the injected clock below.
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except (jwt.InvalidAlgorithmError, jwt.InvalidIssuerError, jwt.InvalidSignatureError):
            raise TokenError(ErrorCode.SIGNATURE_INVALID)
        except jwt.InvalidTokenError:
            raise TokenError(ErrorCode.MALFORMED_TOKEN)

        try:
            claims = TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError):
            raise TokenError(ErrorCode.MALFORMED_TOKEN)

        if claims.expires_at <= int(self._clock.now_utc().timestamp()):
            raise TokenError(ErrorCode.EXPIRED_TOKEN)
        return claims

    def _match_key(self, segments: list[str]) -> SigningKey | None:
        signature = _decode_signature(segments[2])
        if signature is None:
            return None
        try:
            signing_input = f"{segments[0]}.{segments[1]}".encode("utf-8")
        except UnicodeEncodeError:
            return None
        for key, prepared in self._verify_keys:
            if self._algorithm.verify(signing_input, prepared, signature):
                return key
        return None
