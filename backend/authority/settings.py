"""
settings.py — The immutable configuration object handed to the authority.

Flask config (backend/config.py) is mutable and global. The grant authority
must not read it at request time: it receives one AuthorityConfig at
construction and keeps it for its lifetime. Rotating a signing key means
building a new AuthorityConfig and a new authority, not mutating this one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping

from backend.authority.services.interfaces import Sensitivity

# HMAC family only: the codec verifies with a shared secret, so accepting an
# asymmetric algorithm here would reopen the algorithm-confusion hole.
SUPPORTED_ALGORITHMS = frozenset({"HS256", "HS384", "HS512"})


@dataclass(frozen=True)
class SigningKey:
    kid: str
    secret: str

    def __repr__(self) -> str:  # pragma: no cover
        return f"SigningKey(kid={self.kid!r}, secret=***)"


@dataclass(frozen=True)
class AuthorityConfig:
    signing_keys: tuple[SigningKey, ...]
    issuer: str
    algorithm: str = "HS256"
    access_token_ttl: timedelta = timedelta(minutes=15)
    refresh_token_ttl: timedelta = timedelta(days=7)
    auth_code_ttl: timedelta = timedelta(minutes=10)
    rate_limit_window_seconds: int = 900
    rate_limit_max_attempts: int = 20
    rate_limit_max_concurrent: int = 5
    revocation_cache_durable: bool = False
    fail_closed_sensitivity: Sensitivity = Sensitivity.STANDARD
    sweep_grace: timedelta = timedelta(days=30)

    def __post_init__(self) -> None:
        if not self.signing_keys:
            raise ValueError("At least one signing key is required.")
        if any(not key.secret for key in self.signing_keys):
            raise ValueError("Signing keys must not be empty.")
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(
                f"Unsupported signing algorithm {self.algorithm!r}; "
                f"expected one of {sorted(SUPPORTED_ALGORITHMS)}."
            )
        if not self.issuer:
            raise ValueError("An issuer is required.")

    @property
    def active_key(self) -> SigningKey:
        return self.signing_keys[0]

    @classmethod
    def from_flask_config(cls, config: Mapping) -> "AuthorityConfig":
        """Builds the authority config from a loaded Flask app.config."""
        return cls(
            signing_keys=parse_signing_keys(config["JWT_SIGNING_KEYS"]),
            issuer=config["JWT_ISSUER"],
            algorithm=config.get("JWT_ALGORITHM", "HS256"),
            access_token_ttl=config["JWT_ACCESS_TOKEN_EXPIRES"],
            refresh_token_ttl=config["JWT_REFRESH_TOKEN_EXPIRES"],
            auth_code_ttl=config["AUTH_CODE_EXPIRES"],
            rate_limit_window_seconds=config["RATE_LIMIT_WINDOW_SECONDS"],
            rate_limit_max_attempts=config["RATE_LIMIT_MAX_ATTEMPTS"],
            rate_limit_max_concurrent=config["RATE_LIMIT_MAX_CONCURRENT"],
            revocation_cache_durable=config["REVOCATION_CACHE_DURABLE"],
            fail_closed_sensitivity=Sensitivity[
                config["REVOCATION_FAIL_CLOSED_SENSITIVITY"].upper()
            ],
            sweep_grace=timedelta(seconds=config["SWEEP_GRACE_SECONDS"]),
        )


def parse_signing_keys(raw: str) -> tuple[SigningKey, ...]:
    """
    Parses "kid:secret,kid:secret". A bare secret gets kid "primary".

    Secrets may themselves contain ':'; only the first one separates the kid.
    """
    keys = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        kid, sep, secret = entry.partition(":")
        if not sep:
            kid, secret = "primary", entry
        keys.append(SigningKey(kid=kid.strip(), secret=secret))
    return tuple(keys)
