"""
services/directory.py — Default principal directory and credential verifier.

Both read the collaborator tables (users, oauth_clients) through their own
short transactions. They exist so the service runs standalone; a deployment
with an external identity service replaces them through the interfaces in
services/interfaces.py.

Password and client-secret storage:
  - Hashed with bcrypt (cost factor from config BCRYPT_LOG_ROUNDS)
  - Raw secrets are never stored, never logged
"""

from __future__ import annotations

import logging

import bcrypt
from sqlalchemy.orm import sessionmaker

from backend.authority.models.oauth_client import OAuthClient
from backend.authority.models.user import User
from backend.authority.services.grant_store import store_transaction
from backend.authority.services.interfaces import CredentialKind, GrantType

logger = logging.getLogger(__name__)


def hash_secret(secret: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(
        secret.encode("utf-8"),
        bcrypt.gensalt(rounds=rounds),
    ).decode("utf-8")


class SqlPrincipalDirectory:

    def __init__(
            self,
            session_factory: sessionmaker,
            *,
            statement_timeout_ms: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._statement_timeout_ms = statement_timeout_ms

    def _transaction(self):
        return store_transaction(self._session_factory, self._statement_timeout_ms)

    def _active_client(self, session, client_id: str) -> OAuthClient | None:
        client = session.get(OAuthClient, client_id)
        if client is None or not client.is_active:
            return None
        return client

    def get_principal_active(self, principal_id: str) -> bool:
        with self._transaction() as session:
            user = session.get(User, principal_id)
            return user is not None and user.is_active

    def get_client_allowed_scopes(self, client_id: str) -> frozenset[str]:
        with self._transaction() as session:
            client = self._active_client(session, client_id)
            return frozenset(client.allowed_scopes or ()) if client else frozenset()

    def get_client_allowed_grant_types(self, client_id: str) -> frozenset[GrantType] | None:
        with self._transaction() as session:
            client = self._active_client(session, client_id)
            if client is None:
                return None
            grant_types = set()
            for value in client.grant_types or ():
                try:
                    grant_types.add(GrantType(value))
                except ValueError:
                    logger.warning("Client has unknown grant type %r configured", value)
            return frozenset(grant_types)

    def is_confidential_client(self, client_id: str) -> bool:
        with self._transaction() as session:
            client = self._active_client(session, client_id)
            return client is not None and client.client_secret_hash is not None

    def get_client_redirect_uris(self, client_id: str) -> frozenset[str]:
        with self._transaction() as session:
            client = self._active_client(session, client_id)
            return frozenset(client.redirect_uris or ()) if client else frozenset()


class BcryptCredentialVerifier:
    """
    Checks user passwords and client secrets against their bcrypt hashes.

    An unknown principal still costs one bcrypt comparison (against a fixed
    dummy hash), so response time does not reveal which identifiers exist.
    """

    def __init__(
            self,
            session_factory: sessionmaker,
            *,
            rounds: int = 12,
            statement_timeout_ms: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._statement_timeout_ms = statement_timeout_ms
        self._dummy_hash = hash_secret("dummy-secret-for-timing", rounds).encode("utf-8")

    def verify_credential(self, principal_id: str, secret: str, kind: CredentialKind) -> bool:
        with store_transaction(self._session_factory, self._statement_timeout_ms) as session:
            if kind == CredentialKind.USER:
                row = session.get(User, principal_id)
                stored = row.password_hash if row is not None else None
            else:
                row = session.get(OAuthClient, principal_id)
                stored = row.client_secret_hash if row is not None else None

        if stored is None:
            bcrypt.checkpw(secret.encode("utf-8"), self._dummy_hash)
            return False
        try:
            return bcrypt.checkpw(secret.encode("utf-8"), stored.encode("utf-8"))
        except ValueError:
            # Corrupt or non-bcrypt hash in the row.
            logger.warning("Unreadable %s credential hash for %s", kind.value, principal_id)
            return False
