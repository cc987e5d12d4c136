"""
Device Trust Detector.

Classifies a login-shaped backend response.  Rules, in order:

1. transport failed / backend flagged failure  -> ``FAILED``
2. ``is_verified`` is explicitly ``False``     -> ``UNVERIFIED``
3. ``is_new_device`` is explicitly ``True``    -> ``NEW_DEVICE``
4. message reads as "verify with OTP"          -> ``NEW_DEVICE``
5. an access token is present                  -> ``AUTHENTICATED``
6. anything else                               -> ``FAILED``

Unverified wins over new-device so that an unverified account is routed
to account verification rather than device verification.  Rule 4 exists
because some backend paths signal verification only through wording,
which varies by locale.
"""

from __future__ import annotations

from typing import Optional

from pydantic import ValidationError

from authcore.logger import StructuredLogger
from authcore.models.auth_models import ApiResponse, TokenPair
from authcore.models.enums import LoginClassification
from authcore.models.user import User
from authcore.services.base_service import BaseService
from authcore.utils.string_helpers import contains_any

_VERIFY_PHRASES: tuple[str, ...] = ("verify with otp", "verify your otp")
_OTP_WORD: str = "otp"
_OTP_CONTEXT_PHRASES: tuple[str, ...] = ("verify", "xác thực", "thiết bị mới")

_FAILED_LOGIN_FALLBACK: str = "Login failed"


def message_requires_verification(message: Optional[str]) -> bool:
    """Heuristic for rule 4; case-insensitive and locale-tolerant."""
    if not message:
        return False
    lowered = message.lower()
    if contains_any(lowered, _VERIFY_PHRASES):
        return True
    return _OTP_WORD in lowered and contains_any(lowered, _OTP_CONTEXT_PHRASES)


def extract_token_pair(response: ApiResponse) -> Optional[TokenPair]:
    """Pull ``access_token``/``refresh_token`` from root, data or data.data."""
    access = response.lookup("access_token")
    if not isinstance(access, str) or not access:
        return None
    refresh = response.lookup("refresh_token")
    return TokenPair(
        access_token=access,
        refresh_token=refresh if isinstance(refresh, str) and refresh else None,
    )


def extract_user(response: ApiResponse) -> Optional[User]:
    """Build a ``User`` from ``data.user`` (or ``data.data.user``), if usable."""
    candidate = response.lookup("user")
    if not isinstance(candidate, dict) or candidate.get("id") is None:
        return None
    try:
        return User.model_validate(candidate)
    except ValidationError:
        return None


def sanitize_failure_message(message: Optional[str]) -> str:
    """Never show a "successful" message on a failed login."""
    if not message or "successful" in message.lower():
        return _FAILED_LOGIN_FALLBACK
    return message


class DeviceTrustDetector(BaseService):
    """Stateless classifier with logging of each decision."""

    def __init__(self, logger: StructuredLogger) -> None:
        super().__init__(logger)

    def classify(self, response: Optional[ApiResponse]) -> LoginClassification:
        if response is None or not response.success:
            return LoginClassification.FAILED

        if response.lookup("is_verified") is False:
            result = LoginClassification.UNVERIFIED
        elif response.lookup("is_new_device") is True:
            result = LoginClassification.NEW_DEVICE
        elif message_requires_verification(response.message):
            result = LoginClassification.NEW_DEVICE
        elif extract_token_pair(response) is not None:
            result = LoginClassification.AUTHENTICATED
        else:
            self._logger.warning(
                "Successful response matched no known login shape; treating as failed.",
                extra={"event": "CLASSIFICATION_AMBIGUOUS"},
            )
            return LoginClassification.FAILED

        self._logger.debug("Login response classified as %s.", result)
        return result
