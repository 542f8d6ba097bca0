"""
services/grant_authority.py — The grant orchestrator.

Responsibilities:
  - Validate a grant request for one of the four grant types
  - Drive the grant record store (consume, create, rotate, chain-revoke)
  - Mint access tokens through the codec and refresh tokens as opaque values
  - Verify access tokens against the revocation index
  - Administrative revocation (single token, per principal, per client)
  - Authorization-code issuance for the interactive authorization step

Layer rules:
  - No imports from routes or schemas, no flask.request / flask.g.
  - Holds no mutable state of its own. Everything that changes lives in the
    grant store or the revocation index, which provide their own atomicity.
  - Every failure leaves as GrantError / TokenError with a registry code.
    Adapter failures (StoreUnavailable, CacheUnavailable) are mapped to
    temporarily_unavailable; a timed-out consume or rotate is never retried
    or treated as "did not happen".

Token design:
  - Access token: JWT via TokenCodec, jti from the clock's opaque ids.
  - Refresh token / authorization code: 32 random bytes, url-safe. Only the
    SHA-256 hex digest is stored; the raw value is returned once.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Union

from backend.authority.errors import (
    CacheUnavailable,
    ErrorCode,
    GrantError,
    StoreUnavailable,
    TokenError,
)
from backend.authority.services.grant_store import (
    AuthorizationCodeRecord,
    GrantRecordStore,
    RefreshTokenRecord,
)
from backend.authority.services.interfaces import (
    Clock,
    CredentialKind,
    CredentialVerifier,
    GrantType,
    PrincipalDirectory,
    SecurityAuditor,
    Sensitivity,
)
from backend.authority.services.rate_guard import RateGuard
from backend.authority.services.revocation import RevocationIndex
from backend.authority.services.sweep import SweepReport, sweep_expired
from backend.authority.services.token_codec import TokenClaims, TokenCodec, canonical_scope
from backend.authority.settings import AuthorityConfig

logger = logging.getLogger(__name__)

TOKEN_TYPE_BEARER = "Bearer"


# ── Request / response types ───────────────────────────────────────────────

@dataclass(frozen=True)
class ClientIdentity:
    client_id: str
    client_secret: str | None = None

    def __repr__(self) -> str:  # pragma: no cover
        return f"ClientIdentity(client_id={self.client_id!r})"


@dataclass(frozen=True)
class PasswordCredentials:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class AuthorizationCodeCredentials:
    code: str = field(repr=False)
    redirect_uri: str = ""


@dataclass(frozen=True)
class RefreshTokenCredentials:
    refresh_token: str = field(repr=False)


@dataclass(frozen=True)
class ClientCredentials:
    """The client secret travels in ClientIdentity; nothing else is needed."""


Credentials = Union[
    PasswordCredentials,
    AuthorizationCodeCredentials,
    RefreshTokenCredentials,
    ClientCredentials,
]


@dataclass(frozen=True)
class GrantRequest:
    grant_type: GrantType
    credentials: Credentials
    client: ClientIdentity
    requested_scopes: frozenset[str] = frozenset()


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    expires_in: int
    scope: str
    refresh_token: str | None = None
    token_type: str = TOKEN_TYPE_BEARER

    def to_dict(self) -> dict:
        payload = {
            "access_token": self.access_token,
            "token_type":   self.token_type,
            "expires_in":   self.expires_in,
            "scope":        self.scope,
        }
        if self.refresh_token is not None:
            payload["refresh_token"] = self.refresh_token
        return payload


# ── Private helpers ────────────────────────────────────────────────────────

def _digest(raw: str) -> str:
    """SHA-256 hex digest of a raw code or refresh token. Used for storage."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _from_timestamp(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _resolve_scopes(requested: frozenset[str], ceiling: frozenset[str]) -> frozenset[str]:
    """
    An empty request means "everything the grant allows". Anything outside
    the ceiling is rejected outright; scopes are never silently dropped.
    """
    if not requested:
        return ceiling
    if not requested <= ceiling:
        raise GrantError(ErrorCode.INVALID_SCOPE)
    return frozenset(requested)


# ── Authority ──────────────────────────────────────────────────────────────

class GrantAuthority:

    def __init__(
            self,
            config: AuthorityConfig,
            store: GrantRecordStore,
            revocations: RevocationIndex,
            guard: RateGuard,
            verifier: CredentialVerifier,
            directory: PrincipalDirectory,
            clock: Clock,
            auditor: SecurityAuditor,
            codec: TokenCodec | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._revocations = revocations
        self._guard = guard
        self._verifier = verifier
        self._directory = directory
        self._clock = clock
        self._auditor = auditor
        self._codec = codec or TokenCodec(config, clock)

    @property
    def config(self) -> AuthorityConfig:
        return self._config

    # ── Grant ──────────────────────────────────────────────────────────────

    def grant(self, request: GrantRequest) -> TokenResponse:
        """
        Validates the request and returns a new token set.

        Raises GrantError with one of: invalid_client, unauthorized_client,
        invalid_grant, invalid_scope, replay_detected, rate_limited,
        temporarily_unavailable.
        """
        try:
            grant_type = GrantType(request.grant_type)
        except ValueError:
            raise GrantError(ErrorCode.INVALID_REQUEST, "Unsupported grant type.")
        if not isinstance(request.credentials, _CREDENTIAL_TYPES[grant_type]):
            raise GrantError(ErrorCode.INVALID_GRANT)

        try:
            with self._guard.admit(self._rate_subject(request), grant_type):
                response = _HANDLERS[grant_type](self, request)
        except GrantError as exc:
            logger.info(
                "Grant rejected: grant_type=%s client_id=%s code=%s",
                grant_type.value, request.client.client_id, exc.code,
            )
            raise
        except (StoreUnavailable, CacheUnavailable) as exc:
            logger.warning(
                "Grant failed closed: grant_type=%s client_id=%s cause=%s",
                grant_type.value, request.client.client_id, type(exc).__name__,
            )
            raise GrantError(ErrorCode.TEMPORARILY_UNAVAILABLE)

        logger.info(
            "Grant issued: grant_type=%s client_id=%s scope=%r",
            grant_type.value, request.client.client_id, response.scope,
        )
        return response

    @staticmethod
    def _rate_subject(request: GrantRequest) -> str:
        if isinstance(request.credentials, PasswordCredentials):
            return f"user:{request.credentials.username}"
        return f"client:{request.client.client_id}"

    def _grant_password(self, request: GrantRequest) -> TokenResponse:
        credentials: PasswordCredentials = request.credentials
        client_scopes = self._authenticate_client(request.client, GrantType.PASSWORD)
        scopes = _resolve_scopes(request.requested_scopes, client_scopes)

        if not credentials.username or not credentials.password:
            raise GrantError(ErrorCode.INVALID_GRANT)
        if not self._verifier.verify_credential(
                credentials.username, credentials.password, CredentialKind.USER,
        ):
            raise GrantError(ErrorCode.INVALID_GRANT)
        if not self._directory.get_principal_active(credentials.username):
            raise GrantError(ErrorCode.INVALID_GRANT)

        return self._issue(credentials.username, request.client.client_id, scopes)

    def _grant_authorization_code(self, request: GrantRequest) -> TokenResponse:
        credentials: AuthorizationCodeCredentials = request.credentials
        client_id = request.client.client_id
        client_scopes = self._authenticate_client(request.client, GrantType.AUTHORIZATION_CODE)
        if not credentials.code:
            raise GrantError(ErrorCode.INVALID_GRANT)

        now = self._clock.now_utc()
        # Consume first: whatever is wrong with the request, the code is spent.
        result = self._store.consume_authorization_code(_digest(credentials.code), now)
        record = result.record
        if record is None:
            raise GrantError(ErrorCode.INVALID_GRANT)
        if result.already_consumed:
            logger.info("Authorization code presented again: client_id=%s", client_id)
            raise GrantError(ErrorCode.INVALID_GRANT)
        if record.client_id != client_id or record.expires_at <= now:
            raise GrantError(ErrorCode.INVALID_GRANT)
        if not hmac.compare_digest(
                record.redirect_uri.encode("utf-8"),
                credentials.redirect_uri.encode("utf-8"),
        ):
            raise GrantError(ErrorCode.INVALID_GRANT, "The redirect URI does not match.")
        if not self._directory.get_principal_active(record.principal_id):
            raise GrantError(ErrorCode.INVALID_GRANT)

        scopes = _resolve_scopes(request.requested_scopes, record.scopes & client_scopes)
        return self._issue(record.principal_id, client_id, scopes, now=now)

    def _grant_refresh_token(self, request: GrantRequest) -> TokenResponse:
        credentials: RefreshTokenCredentials = request.credentials
        client_id = request.client.client_id
        client_scopes = self._authenticate_client(request.client, GrantType.REFRESH_TOKEN)
        if not credentials.refresh_token:
            raise GrantError(ErrorCode.INVALID_GRANT)

        token_hash = _digest(credentials.refresh_token)
        record = self._store.find_refresh_token(token_hash)
        if record is None or record.client_id != client_id:
            raise GrantError(ErrorCode.INVALID_GRANT)

        now = self._clock.now_utc()
        if record.rotated_out:
            revoked = self._store.revoke_refresh_token(token_hash, now)
            self._report_replay(record, revoked)
        if record.revoked:
            # Revoked by a chain walk, logout or an admin: dead, not replayed.
            raise GrantError(ErrorCode.INVALID_GRANT)

        if record.expires_at <= now:
            raise GrantError(ErrorCode.INVALID_GRANT)
        if not self._directory.get_principal_active(record.principal_id):
            raise GrantError(ErrorCode.INVALID_GRANT)

        # The successor keeps the original grant (minus anything the client
        # has since lost); the access token may be narrowed per request.
        ceiling = record.scopes & client_scopes
        scopes = _resolve_scopes(request.requested_scopes, ceiling)

        access_token, claims = self._mint_access_token(record.principal_id, client_id, scopes, now)
        raw_refresh, successor = self._new_refresh_record(
            record.principal_id, client_id, ceiling, claims, now, predecessor_id=record.id,
        )
        rotation = self._store.rotate_refresh_token(record, successor, now)
        if rotation.chain_revoked:
            self._report_replay(record, rotation.revoked)
        if not rotation.ok:
            raise GrantError(ErrorCode.INVALID_GRANT)

        return self._token_response(access_token, claims, raw_refresh)

    def _grant_client_credentials(self, request: GrantRequest) -> TokenResponse:
        client_id = request.client.client_id
        client_scopes = self._authenticate_client(request.client, GrantType.CLIENT_CREDENTIALS)
        scopes = _resolve_scopes(request.requested_scopes, client_scopes)
        return self._issue(client_id, client_id, scopes, with_refresh=False)

    # ── Verification ───────────────────────────────────────────────────────

    def verify_access_token(
            self,
            token: str,
            sensitivity: Sensitivity = Sensitivity.STANDARD,
    ) -> TokenClaims:
        """
        Returns the claims of a valid, unrevoked access token.

        Raises TokenError: malformed_token, signature_invalid, expired_token,
        token_revoked, or temporarily_unavailable when the revocation index
        cannot answer for a verification at or above the fail-closed threshold.
        """
        claims = self._codec.verify(token)
        if self._revocations.is_revoked(claims.token_id, sensitivity):
            raise TokenError(ErrorCode.TOKEN_REVOKED)
        return claims

    def introspect(self, token: str) -> dict:
        """
        Introspection view of a token: {"active": False} for anything that
        does not verify, the claim set otherwise. Only an unavailable
        revocation index is reported as an error.
        """
        try:
            claims = self.verify_access_token(token)
        except TokenError as exc:
            if exc.code == ErrorCode.TEMPORARILY_UNAVAILABLE:
                raise
            return {"active": False}
        return {"active": True, "token_type": TOKEN_TYPE_BEARER, **claims.to_payload()}

    # ── Revocation ─────────────────────────────────────────────────────────

    def revoke(self, token: str, token_type_hint: str | None = None) -> None:
        """
        Revokes an access token, a refresh token, or a bare access-token id.

        Unknown or already expired tokens are accepted silently, so a caller
        learns nothing about which tokens exist. The hint only changes the
        lookup order.
        """
        if not token:
            raise GrantError(ErrorCode.INVALID_REQUEST)

        attempts: list[Callable[[str], bool]] = [self._revoke_access_token, self._revoke_refresh_token]
        if token_type_hint == "refresh_token":
            attempts.reverse()

        try:
            for attempt in attempts:
                if attempt(token):
                    return
            if "." not in token:
                # Bare token id; deny it for the longest an access token can live.
                self._revocations.revoke(token, self._clock.now_utc() + self._config.access_token_ttl)
                logger.info("Revoked access token id without token material")
        except (StoreUnavailable, CacheUnavailable):
            raise GrantError(ErrorCode.TEMPORARILY_UNAVAILABLE)

    def _revoke_access_token(self, token: str) -> bool:
        try:
            claims = self._codec.verify(token)
        except TokenError as exc:
            # An expired token needs no denylist entry; anything else is not ours.
            return exc.code == ErrorCode.EXPIRED_TOKEN
        self._revocations.revoke(claims.token_id, _from_timestamp(claims.expires_at))
        logger.info("Revoked access token: client_id=%s", claims.client_id)
        return True

    def _revoke_refresh_token(self, token: str) -> bool:
        token_hash = _digest(token)
        record = self._store.find_refresh_token(token_hash)
        if record is None:
            return False
        revoked = self._store.revoke_refresh_token(token_hash, self._clock.now_utc())
        self._denylist_linked_access_tokens((record, *revoked))
        logger.info(
            "Revoked refresh token: client_id=%s records=%d",
            record.client_id, len(revoked),
        )
        return True

    def revoke_principal_tokens(self, principal_id: str) -> int:
        """Revokes every live refresh token (and its access token) of a principal."""
        return self._revoke_bulk(
            "principal_tokens_revoked",
            lambda now: self._store.revoke_for_principal(principal_id, now),
            principal_id=principal_id,
        )

    def revoke_client_tokens(self, client_id: str) -> int:
        """Revokes every live refresh token (and its access token) issued to a client."""
        return self._revoke_bulk(
            "client_tokens_revoked",
            lambda now: self._store.revoke_for_client(client_id, now),
            client_id=client_id,
        )

    def _revoke_bulk(
            self,
            event: str,
            revoke: Callable[[datetime], tuple[RefreshTokenRecord, ...]],
            **details: object,
    ) -> int:
        try:
            revoked = revoke(self._clock.now_utc())
            self._denylist_linked_access_tokens(revoked)
        except (StoreUnavailable, CacheUnavailable):
            raise GrantError(ErrorCode.TEMPORARILY_UNAVAILABLE)
        self._auditor.record(event, revoked=len(revoked), **details)
        return len(revoked)

    def sweep_expired(self) -> SweepReport:
        """Reaps records expired for longer than the configured grace period."""
        return sweep_expired(self._store, self._revocations, self._clock, self._config.sweep_grace)

    # ── Authorization codes ────────────────────────────────────────────────

    def issue_authorization_code(
            self,
            principal_id: str,
            client_id: str,
            redirect_uri: str,
            scopes: Iterable[str] = (),
    ) -> str:
        """
        Records a completed interactive authorization and returns the raw code.

        Called by the authorization step once the user has consented. The
        code is valid for AuthorityConfig.auth_code_ttl and exactly one
        exchange.
        """
        try:
            allowed = self._directory.get_client_allowed_grant_types(client_id)
            if allowed is None:
                raise GrantError(ErrorCode.INVALID_CLIENT)
            if GrantType.AUTHORIZATION_CODE not in allowed:
                raise GrantError(ErrorCode.UNAUTHORIZED_CLIENT)
            if redirect_uri not in self._directory.get_client_redirect_uris(client_id):
                raise GrantError(
                    ErrorCode.INVALID_REQUEST,
                    "The redirect URI is not registered for this client.",
                )
            granted = _resolve_scopes(
                frozenset(scopes),
                self._directory.get_client_allowed_scopes(client_id),
            )
            if not self._directory.get_principal_active(principal_id):
                raise GrantError(ErrorCode.INVALID_GRANT)

            now = self._clock.now_utc()
            raw_code = self._clock.new_opaque_id()
            self._store.create_authorization_code(AuthorizationCodeRecord(
                id=self._clock.new_opaque_id(),
                code_hash=_digest(raw_code),
                principal_id=principal_id,
                client_id=client_id,
                redirect_uri=redirect_uri,
                scopes=granted,
                expires_at=now + self._config.auth_code_ttl,
            ))
        except (StoreUnavailable, CacheUnavailable):
            raise GrantError(ErrorCode.TEMPORARILY_UNAVAILABLE)

        logger.info("Authorization code issued: client_id=%s", client_id)
        return raw_code

    # ── Private helpers ────────────────────────────────────────────────────

    def _authenticate_client(self, client: ClientIdentity, grant_type: GrantType) -> frozenset[str]:
        """
        Returns the client's allowed scopes.

        Order: unknown/inactive client → invalid_client; a presented secret
        that does not verify, or a missing secret where one is required
        → invalid_client; grant type not permitted → unauthorized_client.
        """
        if not client.client_id:
            raise GrantError(ErrorCode.INVALID_CLIENT)
        allowed = self._directory.get_client_allowed_grant_types(client.client_id)
        if allowed is None:
            raise GrantError(ErrorCode.INVALID_CLIENT)

        if client.client_secret is not None:
            if not self._verifier.verify_credential(
                    client.client_id, client.client_secret, CredentialKind.CLIENT,
            ):
                raise GrantError(ErrorCode.INVALID_CLIENT)
        elif (
            grant_type == GrantType.CLIENT_CREDENTIALS
            or self._directory.is_confidential_client(client.client_id)
        ):
            raise GrantError(ErrorCode.INVALID_CLIENT)

        if grant_type not in allowed:
            raise GrantError(ErrorCode.UNAUTHORIZED_CLIENT)
        return self._directory.get_client_allowed_scopes(client.client_id)

    def _mint_access_token(
            self,
            subject: str,
            client_id: str,
            scopes: frozenset[str],
            now: datetime,
    ) -> tuple[str, TokenClaims]:
        issued_at = int(now.timestamp())
        claims = TokenClaims(
            subject=subject,
            client_id=client_id,
            scopes=scopes,
            issued_at=issued_at,
            expires_at=issued_at + int(self._config.access_token_ttl.total_seconds()),
            issuer=self._config.issuer,
            token_id=self._clock.new_opaque_id(),
        )
        return self._codec.sign(claims), claims

    def _new_refresh_record(
            self,
            subject: str,
            client_id: str,
            scopes: frozenset[str],
            claims: TokenClaims,
            now: datetime,
            predecessor_id: str | None = None,
    ) -> tuple[str, RefreshTokenRecord]:
        raw_token = self._clock.new_opaque_id()
        record = RefreshTokenRecord(
            id=self._clock.new_opaque_id(),
            token_hash=_digest(raw_token),
            principal_id=subject,
            client_id=client_id,
            scopes=scopes,
            expires_at=now + self._config.refresh_token_ttl,
            predecessor_id=predecessor_id,
            access_token_id=claims.token_id,
            access_token_expires_at=_from_timestamp(claims.expires_at),
        )
        return raw_token, record

    def _issue(
            self,
            subject: str,
            client_id: str,
            scopes: frozenset[str],
            *,
            now: datetime | None = None,
            with_refresh: bool = True,
    ) -> TokenResponse:
        now = now or self._clock.now_utc()
        access_token, claims = self._mint_access_token(subject, client_id, scopes, now)
        raw_refresh = None
        if with_refresh:
            raw_refresh, record = self._new_refresh_record(subject, client_id, scopes, claims, now)
            self._store.create_refresh_token(record)
        return self._token_response(access_token, claims, raw_refresh)

    def _token_response(
            self,
            access_token: str,
            claims: TokenClaims,
            raw_refresh: str | None,
    ) -> TokenResponse:
        return TokenResponse(
            access_token=access_token,
            expires_in=claims.expires_at - claims.issued_at,
            scope=canonical_scope(claims.scopes),
            refresh_token=raw_refresh,
        )

    def _denylist_linked_access_tokens(self, records: Iterable[RefreshTokenRecord]) -> None:
        for record in records:
            if record.access_token_id and record.access_token_expires_at:
                self._revocations.revoke(record.access_token_id, record.access_token_expires_at)

    def _report_replay(
            self,
            presented: RefreshTokenRecord,
            revoked: tuple[RefreshTokenRecord, ...],
    ) -> None:
        """Records the replay as a security event, then rejects the request."""
        try:
            self._denylist_linked_access_tokens((presented, *revoked))
        except (StoreUnavailable, CacheUnavailable):
            # The chain is already revoked durably; only the access tokens
            # minted with it stay usable until their natural expiry.
            logger.warning("Could not denylist access tokens of a replayed chain")
        self._auditor.record(
            "refresh_token_replay",
            token_id=presented.id,
            principal_id=presented.principal_id,
            client_id=presented.client_id,
            chain_revoked=len(revoked),
        )
        raise GrantError(ErrorCode.REPLAY_DETECTED)


# ── Dispatch table ─────────────────────────────────────────────────────────

_HANDLERS: dict[GrantType, Callable[[GrantAuthority, GrantRequest], TokenResponse]] = {
    GrantType.PASSWORD:           GrantAuthority._grant_password,
    GrantType.AUTHORIZATION_CODE: GrantAuthority._grant_authorization_code,
    GrantType.REFRESH_TOKEN:      GrantAuthority._grant_refresh_token,
    GrantType.CLIENT_CREDENTIALS: GrantAuthority._grant_client_credentials,
}

_CREDENTIAL_TYPES: dict[GrantType, type] = {
    GrantType.PASSWORD:           PasswordCredentials,
    GrantType.AUTHORIZATION_CODE: AuthorizationCodeCredentials,
    GrantType.REFRESH_TOKEN:      RefreshTokenCredentials,
    GrantType.CLIENT_CREDENTIALS: ClientCredentials,
}

# A new GrantType without a handler must fail at import, not at request time.
for _table in (_HANDLERS, _CREDENTIAL_TYPES):
    _missing = set(GrantType) - set(_table)
    if _missing:
        raise RuntimeError(f"No grant handler for: {sorted(g.value for g in _missing)}")
