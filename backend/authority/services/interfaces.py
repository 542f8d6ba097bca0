"""
services/interfaces.py — Narrow contracts the authority consumes.

The grant authority never reaches into user/client CRUD, password hashing,
the cache driver, or the audit pipeline directly. It talks to them through
the protocols below, so each collaborator can be replaced (or faked in unit
tests) without touching the core.

Default implementations:
  CredentialVerifier, PrincipalDirectory → services/directory.py
  Clock                                  → services/clock.py
  KeyValueCache                          → services/cache.py
  SecurityAuditor                        → services/audit.py
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Protocol


class GrantType(str, enum.Enum):
    """The closed set of grant types the authority mediates."""

    PASSWORD           = "password"
    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN      = "refresh_token"
    CLIENT_CREDENTIALS = "client_credentials"


class CredentialKind(str, enum.Enum):
    USER   = "user"
    CLIENT = "client"


class Sensitivity(enum.IntEnum):
    """
    How much a caller of verify_access_token cares about revocation freshness.

    Verifications at or above the configured threshold fail closed when the
    revocation index cannot be consulted.
    """

    LOW      = 0
    STANDARD = 1
    HIGH     = 2


class CredentialVerifier(Protocol):
    def verify_credential(self, principal_id: str, secret: str, kind: CredentialKind) -> bool:
        ...


class PrincipalDirectory(Protocol):
    def get_principal_active(self, principal_id: str) -> bool:
        ...

    def get_client_allowed_scopes(self, client_id: str) -> frozenset[str]:
        ...

    def get_client_allowed_grant_types(self, client_id: str) -> frozenset[GrantType] | None:
        """None means the client is unknown or inactive."""
        ...

    def is_confidential_client(self, client_id: str) -> bool:
        ...

    def get_client_redirect_uris(self, client_id: str) -> frozenset[str]:
        ...


class Clock(Protocol):
    def now_utc(self) -> datetime:
        ...

    def new_opaque_id(self) -> str:
        ...


class KeyValueCache(Protocol):
    """
    Cache primitives. Every call carries the adapter's deadline and raises
    CacheUnavailable on timeout or connection failure.
    """

    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def delete(self, *keys: str) -> None:
        ...

    def hit_window(self, key: str, now: float, window_seconds: int, limit: int) -> bool:
        """Records one hit in a sliding window; False when `limit` is exceeded."""
        ...

    def acquire_slot(self, key: str, limit: int, ttl_seconds: int) -> bool:
        ...

    def release_slot(self, key: str) -> None:
        ...


class SecurityAuditor(Protocol):
    def record(self, event: str, **details: object) -> None:
        ...
