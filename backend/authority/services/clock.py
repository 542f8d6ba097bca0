"""
services/clock.py — Wall clock and opaque identifier source.

All expiry arithmetic in the authority goes through a Clock so tests can
freeze and advance time. Identifiers come from the OS CSPRNG.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone


class SystemClock:

    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)

    def new_opaque_id(self) -> str:
        # 32 bytes → 43 url-safe chars; unguessable and fits VARCHAR(64).
        return secrets.token_urlsafe(32)


def as_utc(value: datetime) -> datetime:
    """
    Normalises a timestamp read back from the store to aware UTC.

    SQLite drops tzinfo on DateTime(timezone=True) columns; PostgreSQL keeps it.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
