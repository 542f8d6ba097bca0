"""
services/audit.py — Default SecurityAuditor.

Security events (replay detection, bulk revocation) go to a dedicated logger
so deployments can route them to a separate handler or SIEM without touching
the application log configuration. Details are identifiers only; token
material is never passed here.
"""

from __future__ import annotations

import logging

SECURITY_LOGGER_NAME = "backend.authority.security"


class LoggingAuditor:

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(SECURITY_LOGGER_NAME)

    def record(self, event: str, **details: object) -> None:
        rendered = " ".join(f"{key}={value}" for key, value in sorted(details.items()))
        self._logger.warning("security_event=%s %s", event, rendered)
