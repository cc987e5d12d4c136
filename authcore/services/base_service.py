"""
Base Service Class.

Minimal base class standardizing the logger and audit pattern for the
session services.  Subclasses add their collaborators via __init__.
"""

from __future__ import annotations

from typing import Optional

from authcore.logger import StructuredLogger
from authcore.utils.audit import DetailValue, log_auth_event


class BaseService:
    """Base class for all service classes. Provides a logger."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger: StructuredLogger = logger

    def _audit(
        self,
        action: str,
        subject: str,
        details: Optional[dict[str, DetailValue]] = None,
    ) -> None:
        log_auth_event(self._logger, action, subject, details)
