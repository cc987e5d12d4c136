"""
Credential Cache.

Process-lifetime holder for the phone/password pair of a login that was
classified ``NEW_DEVICE``, so that a successful device OTP can replay
the login without asking the user to retype the password.  Never
persisted.  Read-once: ``consume`` hands the entry out and clears it.
"""

from __future__ import annotations

from typing import Optional

from authcore.logger import StructuredLogger
from authcore.models.auth_models import CredentialEntry
from authcore.services.base_service import BaseService
from authcore.utils.credentials import mask_phone


class CredentialCache(BaseService):
    """At most one live ``CredentialEntry``."""

    def __init__(self, logger: StructuredLogger) -> None:
        super().__init__(logger)
        self._entry: Optional[CredentialEntry] = None

    def set(self, phone: str, password: str) -> None:
        """Replace any held entry; *phone* must already be canonical."""
        self._entry = CredentialEntry(phone=phone, password=password)
        self._logger.debug("Credential cached for %s.", mask_phone(phone))

    def consume(self) -> Optional[CredentialEntry]:
        """Return the entry and clear it."""
        entry, self._entry = self._entry, None
        return entry

    def peek(self) -> Optional[CredentialEntry]:
        return self._entry

    def clear(self) -> None:
        if self._entry is not None:
            self._logger.debug("Credential cache cleared.")
        self._entry = None

    @property
    def has_entry(self) -> bool:
        return self._entry is not None
