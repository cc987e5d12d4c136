"""
Structured Audit Logging Utility.

Every session transition (login, logout, forced expiry, enrollment) is
logged as one schema-validated JSON object so the audit trail can be
grepped by ``event``.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field

from authcore.logger import StructuredLogger

__all__ = ["AuthEvent", "log_auth_event"]

# Flat scalars only; nested structures do not belong in the audit log.
DetailValue = Union[str, int, float, bool, None]


class AuthEvent(BaseModel):
    """Schema-validated representation of a single audit trail entry.

    ``subject`` is a masked phone number or a user id, never a raw
    credential.
    """

    timestamp: str
    action: str
    subject: str
    details: dict[str, DetailValue] = Field(default_factory=dict)


def log_auth_event(
    logger: StructuredLogger,
    action: str,
    subject: str,
    details: Optional[dict[str, DetailValue]] = None,
) -> None:
    """Emit a structured audit line through *logger*.

    Args:
        logger: The logger instance to write to.
        action: What happened (e.g. ``"LOGIN"``, ``"LOGOUT"``,
            ``"SESSION_EXPIRED"``, ``"BIOMETRIC_ENROLLED"``).
        subject: Masked phone or user id the event concerns.
        details: Optional additional context.
    """
    event = AuthEvent(
        timestamp=datetime.now(timezone.utc).isoformat(),
        action=action,
        subject=subject,
        details=details or {},
    )
    logger.info(
        "AUDIT: %s",
        json.dumps(event.model_dump(), default=str),
        extra={"event": action},
    )
