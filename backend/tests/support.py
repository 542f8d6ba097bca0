"""
tests/support.py — Fakes and builders shared by the unit and integration suites.

These are plain classes and functions (not fixtures) so tests can build a
variant harness with arbitrary arguments. conftest.py wraps the common cases
as fixtures.

  FrozenClock           controllable Clock
  FakeDirectory         in-memory PrincipalDirectory + CredentialVerifier
  FlakyCache            MemoryCache that can be switched to CacheUnavailable
  FakeRevocationStore   in-memory durable revocation rows
  RecordingAuditor      collects security events
  build_harness(...)    a fully wired GrantAuthority over the fakes
  race(fn)              runs fn on many threads released by one barrier
"""

from __future__ import annotations

import itertools
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from backend.authority.errors import CacheUnavailable, GrantError, StoreUnavailable
from backend.authority.services.cache import MemoryCache
from backend.authority.services.grant_authority import GrantAuthority
from backend.authority.services.interfaces import CredentialKind, GrantType, Sensitivity
from backend.authority.services.memory_store import MemoryGrantStore
from backend.authority.services.rate_guard import RateGuard
from backend.authority.services.revocation import RevocationIndex
from backend.authority.settings import AuthorityConfig, SigningKey

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"
START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

ALL_GRANTS = frozenset(GrantType)


def make_config(**overrides) -> AuthorityConfig:
    values = dict(
        signing_keys=(SigningKey("k1", TEST_SECRET),),
        issuer="https://auth.test",
        rate_limit_max_attempts=1000,
        rate_limit_max_concurrent=1000,
    )
    values.update(overrides)
    return AuthorityConfig(**values)


class FrozenClock:
    """Time only moves when a test calls advance()."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def now_utc(self) -> datetime:
        return self._now

    def advance(self, **delta) -> None:
        self._now = self._now + timedelta(**delta)

    def new_opaque_id(self) -> str:
        with self._lock:
            return f"id-{next(self._ids):06d}-{'x' * 24}"


@dataclass
class _ClientEntry:
    scopes: frozenset
    grant_types: frozenset
    secret: str | None
    redirect_uris: frozenset
    active: bool = True


class FakeDirectory:
    """PrincipalDirectory and CredentialVerifier over two dicts."""

    def __init__(self) -> None:
        self.users: dict[str, tuple[str, bool]] = {}
        self.clients: dict[str, _ClientEntry] = {}

    def add_user(self, user_id: str, password: str = "Password1", active: bool = True) -> None:
        self.users[user_id] = (password, active)

    def set_user_active(self, user_id: str, active: bool) -> None:
        password, _ = self.users[user_id]
        self.users[user_id] = (password, active)

    def add_client(
            self,
            client_id: str,
            *,
            scopes=("read", "write"),
            grant_types=ALL_GRANTS,
            secret: str | None = "client-secret",
            redirect_uris=("https://app.test/callback",),
            active: bool = True,
    ) -> None:
        self.clients[client_id] = _ClientEntry(
            scopes=frozenset(scopes),
            grant_types=frozenset(GrantType(g) for g in grant_types),
            secret=secret,
            redirect_uris=frozenset(redirect_uris),
            active=active,
        )

    def _client(self, client_id: str) -> _ClientEntry | None:
        entry = self.clients.get(client_id)
        return entry if entry is not None and entry.active else None

    # ── PrincipalDirectory ─────────────────────────────────────────────────

    def get_principal_active(self, principal_id: str) -> bool:
        entry = self.users.get(principal_id)
        return entry is not None and entry[1]

    def get_client_allowed_scopes(self, client_id: str) -> frozenset[str]:
        entry = self._client(client_id)
        return entry.scopes if entry else frozenset()

    def get_client_allowed_grant_types(self, client_id: str):
        entry = self._client(client_id)
        return entry.grant_types if entry else None

    def is_confidential_client(self, client_id: str) -> bool:
        entry = self._client(client_id)
        return entry is not None and entry.secret is not None

    def get_client_redirect_uris(self, client_id: str) -> frozenset[str]:
        entry = self._client(client_id)
        return entry.redirect_uris if entry else frozenset()

    # ── CredentialVerifier ─────────────────────────────────────────────────

    def verify_credential(self, principal_id: str, secret: str, kind: CredentialKind) -> bool:
        if kind == CredentialKind.USER:
            entry = self.users.get(principal_id)
            return entry is not None and entry[0] == secret
        entry = self.clients.get(principal_id)
        return entry is not None and entry.secret is not None and entry.secret == secret


class FlakyCache(MemoryCache):
    """MemoryCache whose every call raises CacheUnavailable while `down` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise CacheUnavailable("cache down")

    def get(self, key):
        self._check()
        return super().get(key)

    def set(self, key, value):
        self._check()
        super().set(key, value)

    def set_with_ttl(self, key, value, ttl_seconds):
        self._check()
        super().set_with_ttl(key, value, ttl_seconds)

    def delete(self, *keys):
        self._check()
        super().delete(*keys)

    def hit_window(self, key, now, window_seconds, limit):
        self._check()
        return super().hit_window(key, now, window_seconds, limit)

    def acquire_slot(self, key, limit, ttl_seconds):
        self._check()
        return super().acquire_slot(key, limit, ttl_seconds)

    def release_slot(self, key):
        self._check()
        super().release_slot(key)


class FakeRevocationStore:

    def __init__(self) -> None:
        self.rows: dict[str, datetime] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise StoreUnavailable("store down")

    def add(self, token_id: str, expires_at: datetime) -> None:
        self._check()
        self.rows[token_id] = expires_at

    def contains(self, token_id: str, now: datetime) -> bool:
        self._check()
        expires_at = self.rows.get(token_id)
        return expires_at is not None and expires_at > now

    def sweep(self, cutoff: datetime) -> int:
        self._check()
        stale = [token_id for token_id, exp in self.rows.items() if exp < cutoff]
        for token_id in stale:
            del self.rows[token_id]
        return len(stale)


@dataclass
class RecordingAuditor:
    events: list = field(default_factory=list)

    def record(self, event: str, **details) -> None:
        self.events.append((event, details))

    def names(self) -> list[str]:
        return [event for event, _ in self.events]


def build_harness(
        *,
        config: AuthorityConfig | None = None,
        store=None,
        cache=None,
        durable=None,
        directory: FakeDirectory | None = None,
        clock: FrozenClock | None = None,
        cache_is_durable: bool = False,
        fail_closed_at: Sensitivity = Sensitivity.STANDARD,
) -> SimpleNamespace:
    """Everything a unit test needs, wired the way create_app wires it."""
    config = config or make_config()
    clock = clock or FrozenClock()
    cache = cache if cache is not None else FlakyCache()
    store = store if store is not None else MemoryGrantStore()
    if durable is None and not cache_is_durable:
        durable = FakeRevocationStore()
    directory = directory or FakeDirectory()
    auditor = RecordingAuditor()

    revocations = RevocationIndex(
        cache,
        durable,
        clock,
        cache_is_durable=cache_is_durable,
        fail_closed_at=fail_closed_at,
    )
    guard = RateGuard(
        cache,
        clock,
        window_seconds=config.rate_limit_window_seconds,
        max_attempts=config.rate_limit_max_attempts,
        max_concurrent=config.rate_limit_max_concurrent,
    )
    authority = GrantAuthority(
        config=config,
        store=store,
        revocations=revocations,
        guard=guard,
        verifier=directory,
        directory=directory,
        clock=clock,
        auditor=auditor,
    )
    return SimpleNamespace(
        authority=authority,
        config=config,
        clock=clock,
        cache=cache,
        store=store,
        durable=durable,
        directory=directory,
        auditor=auditor,
        revocations=revocations,
        guard=guard,
    )


def race(fn, workers: int = 32) -> list:
    """
    Runs fn(i) on `workers` threads released together by a barrier.

    Returns ("ok", value) or ("error", code) per worker, in worker order.
    Exceptions other than GrantError propagate and fail the test.
    """
    barrier = threading.Barrier(workers)

    def run(i):
        barrier.wait()
        try:
            return ("ok", fn(i))
        except GrantError as exc:
            return ("error", exc.code)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(run, range(workers)))
