"""
Shared Enumerations for authcore Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents,
so callers can route on ``classification == "NEW_DEVICE"``.
"""

from __future__ import annotations
from enum import StrEnum


class AccountKind(StrEnum):
    """Which backend account family a login targets.

    ``STORE`` selects the ``/store`` variants of the login, register and
    biometric-login endpoints.
    """

    USER = "user"
    STORE = "store"


class LoginClassification(StrEnum):
    """Outcome of classifying a login response.

    Only ``AUTHENTICATED`` may move the session into the authenticated
    state; the two verification outcomes route the caller to an OTP flow.
    """

    AUTHENTICATED = "AUTHENTICATED"
    NEW_DEVICE = "NEW_DEVICE"
    UNVERIFIED = "UNVERIFIED"
    FAILED = "FAILED"


class FlowKind(StrEnum):
    """Closed set of one-time-code purposes."""

    REGISTER = "register"
    NEW_DEVICE = "new-device"
    FORGOT_PASSWORD = "forgot-password"
    GENERIC = "generic"


class OtpState(StrEnum):
    """States of an OTP attempt."""

    IDLE = "idle"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    FAILED = "failed"


class SessionStatus(StrEnum):
    """Lifecycle of the session record."""

    INITIALIZING = "initializing"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


class BiometryKind(StrEnum):
    """Sensor kinds reported by the platform key store."""

    TOUCH_ID = "TouchID"
    FACE_ID = "FaceID"
    BIOMETRICS = "Biometrics"
    NONE = "none"
