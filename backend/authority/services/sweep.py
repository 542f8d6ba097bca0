"""
services/sweep.py — Reaps expired grant records.

Runs independently of request handling (the `flask sweep-grants` command, a
cron job, or any scheduler). Codes and refresh tokens are kept for a grace
period after expiry so rotation chains stay auditable; revocation rows are
dropped as soon as the token they deny has expired.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from backend.authority.services.grant_store import GrantRecordStore
from backend.authority.services.interfaces import Clock
from backend.authority.services.revocation import RevocationIndex

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepReport:
    authorization_codes: int
    refresh_tokens: int
    revocations: int

    def to_dict(self) -> dict:
        return {
            "authorization_codes": self.authorization_codes,
            "refresh_tokens":      self.refresh_tokens,
            "revocations":         self.revocations,
        }


def sweep_expired(
        store: GrantRecordStore,
        revocations: RevocationIndex,
        clock: Clock,
        grace: timedelta,
) -> SweepReport:
    now = clock.now_utc()
    grants = store.sweep_expired(now - grace)
    revoked = revocations.sweep(now)

    report = SweepReport(
        authorization_codes=grants.authorization_codes,
        refresh_tokens=grants.refresh_tokens,
        revocations=revoked,
    )
    logger.info("Sweep finished: %s", report.to_dict())
    return report
