"""
auth/audit.py -- Security event logging.

Security-relevant events (refresh-token replay, family revocation, logout of
all devices, rate-limit denials, failed logins) are written as one JSON
object per line to the dedicated "authguard.security" logger, separate from
the application loggers, so they can be routed to a SIEM or alerting
pipeline by logging configuration alone.

Field values are truncated; tokens and passwords are never passed in.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

_MAX_FIELD_LENGTH = 200


class SecurityEventLogger:
    """Write structured security events to the "authguard.security" logger."""

    def __init__(self, logger_name: str = "authguard.security") -> None:
        self.logger = logging.getLogger(logger_name)

    def record(self, event: str, *, level: int = logging.INFO, **fields: Any) -> dict:
        """Log a security event and return the structured record."""
        entry: dict[str, Any] = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        for key, value in fields.items():
            entry[key] = _sanitize(value)
        self.logger.log(level, json.dumps(entry, sort_keys=True))
        return entry

    def replay_detected(self, *, user_id: int, session_id: str, family_id: str, revoked: int) -> dict:
        return self.record(
            "refresh_token_replay",
            level=logging.WARNING,
            user_id=user_id,
            session_id=session_id,
            family_id=family_id,
            sessions_revoked=revoked,
        )


def _sanitize(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    text = str(value)
    if len(text) > _MAX_FIELD_LENGTH:
        return text[:_MAX_FIELD_LENGTH] + "..."
    return text
