"""
services/rate_guard.py — Admission control for grant attempts.

Keyed by (subject, grant type), where subject is the username for password
grants and the client id for every other grant. Two limits apply:

  window       at most max_attempts admissions per sliding window
  concurrency  at most max_concurrent grants in flight at once

The guard is consulted before the authority touches the grant store, so a
rejected request never reaches it. It is admission control, not a lock:
two admitted requests for the same code or token still race, and the
store's compare-and-swap settles the race.

If the cache behind the guard is unreachable, admission fails closed with
temporarily_unavailable rather than letting unbounded attempts through.
"""

from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from typing import Iterator

from backend.authority.errors import CacheUnavailable, ErrorCode, GrantError
from backend.authority.services.interfaces import Clock, GrantType, KeyValueCache

logger = logging.getLogger(__name__)


def _subject_digest(subject: str) -> str:
    # Fixed-length keys; a subject containing ':' cannot collide with another.
    return hashlib.sha256(subject.encode("utf-8")).hexdigest()[:32]


class RateGuard:

    def __init__(
            self,
            cache: KeyValueCache,
            clock: Clock,
            *,
            window_seconds: int,
            max_attempts: int,
            max_concurrent: int,
            slot_ttl_seconds: int = 60,
    ) -> None:
        self._cache = cache
        self._clock = clock
        self._window_seconds = window_seconds
        self._max_attempts = max_attempts
        self._max_concurrent = max_concurrent
        self._slot_ttl_seconds = slot_ttl_seconds

    @contextmanager
    def admit(self, subject: str, grant_type: GrantType) -> Iterator[None]:
        """
        Holds one concurrency slot for the duration of the block.

        Raises GrantError(rate_limited) when either limit is exceeded and
        GrantError(temporarily_unavailable) when the guard cannot decide.
        """
        digest = _subject_digest(subject)
        window_key = f"rl:win:{grant_type.value}:{digest}"
        slot_key = f"rl:slot:{grant_type.value}:{digest}"

        try:
            if not self._cache.hit_window(
                window_key,
                self._clock.now_utc().timestamp(),
                self._window_seconds,
                self._max_attempts,
            ):
                logger.info("Rate limit window exceeded for %s grant", grant_type.value)
                raise GrantError(ErrorCode.RATE_LIMITED)
            if not self._cache.acquire_slot(slot_key, self._max_concurrent, self._slot_ttl_seconds):
                logger.info("Concurrency limit exceeded for %s grant", grant_type.value)
                raise GrantError(ErrorCode.RATE_LIMITED)
        except CacheUnavailable:
            raise GrantError(ErrorCode.TEMPORARILY_UNAVAILABLE)

        try:
            yield
        finally:
            try:
                self._cache.release_slot(slot_key)
            except CacheUnavailable:
                # The slot key carries a TTL and frees itself.
                logger.warning("Failed to release rate guard slot for %s grant", grant_type.value)
