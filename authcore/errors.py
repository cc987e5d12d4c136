"""
Session-Layer Exceptions.

Internal components raise these; ``AuthService`` converts them into
typed ``AuthResult`` / ``OtpOutcome`` values so that callers never
handle raw exceptions or backend error shapes.

Usage::

    from authcore.errors import NetworkUnavailable

    try:
        token = await tokens.refresh()
    except NetworkUnavailable as exc:
        show(exc.user_message)
"""

from __future__ import annotations

from typing import Optional

from authcore.models.auth_models import AuthErrorCode


class AuthCoreError(Exception):
    """Base class for every error raised by the session layer.

    Parameters
    ----------
    user_message:
        Human-readable text safe to show on a state object.
    error_code:
        Structured category, defaulting to the subclass's ``code``.
    """

    code: AuthErrorCode = AuthErrorCode.UNKNOWN_ERROR
    default_message: str = "Something went wrong. Please try again."

    def __init__(
        self,
        user_message: Optional[str] = None,
        error_code: Optional[AuthErrorCode] = None,
    ) -> None:
        self.user_message: str = user_message or self.default_message
        self.error_code: AuthErrorCode = error_code or self.code
        super().__init__(self.user_message)


class CredentialValidationError(AuthCoreError):
    """A phone, password or code failed its shape check; never sent."""

    code = AuthErrorCode.VALIDATION_ERROR
    default_message = "Please check the information you entered."


class ClassificationAmbiguous(AuthCoreError):
    """The backend answered with a shape that matches no known outcome."""

    code = AuthErrorCode.CLASSIFICATION_AMBIGUOUS
    default_message = "Unexpected response from the server. Please try again."


class AuthRejected(AuthCoreError):
    """Wrong credentials, wrong code, or a rejected biometric signature."""

    code = AuthErrorCode.INVALID_CREDENTIALS
    default_message = "The information you entered is incorrect."

    def __init__(
        self,
        user_message: Optional[str] = None,
        status_code: Optional[int] = None,
        error_code: Optional[AuthErrorCode] = None,
    ) -> None:
        super().__init__(user_message, error_code)
        self.status_code: Optional[int] = status_code


class TokenExpired(AuthCoreError):
    """The refresh token is invalid or revoked; the session must end."""

    code = AuthErrorCode.SESSION_EXPIRED
    default_message = "Your session has expired. Please sign in again."


class NetworkUnavailable(AuthCoreError):
    """Transport-level failure; retryable by user action."""

    code = AuthErrorCode.NETWORK_ERROR
    default_message = "Cannot reach the server. Check your internet connection."


class BiometricCancelled(AuthCoreError):
    """The user dismissed the platform biometric prompt."""

    code = AuthErrorCode.BIOMETRIC_CANCELLED
    default_message = "Biometric authentication was cancelled."


class BiometricUnavailable(AuthCoreError):
    """No usable sensor, or this phone is not enrolled on this device."""

    code = AuthErrorCode.BIOMETRIC_UNAVAILABLE
    default_message = "Biometric sign-in is not set up on this device."
