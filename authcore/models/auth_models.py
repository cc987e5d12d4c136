"""
Authentication Pipeline Models.

Pydantic models and enumerations for the contracts between the
transport, the session core and its callers.

Every public auth operation returns one of these structured results
rather than raw backend payloads or exception side-channels.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue

from authcore.models.enums import LoginClassification, SessionStatus
from authcore.models.user import User


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

class AuthErrorCode(StrEnum):
    """Exhaustive enumeration of authentication error categories.

    Attached to every failed ``AuthResult`` / ``OtpOutcome`` so that UIs
    can pick feedback without parsing messages.
    """

    VALIDATION_ERROR = "validation_error"
    INVALID_CREDENTIALS = "invalid_credentials"
    VERIFICATION_REQUIRED = "verification_required"
    CLASSIFICATION_AMBIGUOUS = "classification_ambiguous"
    NETWORK_ERROR = "network_error"
    SESSION_EXPIRED = "session_expired"
    BIOMETRIC_UNAVAILABLE = "biometric_unavailable"
    BIOMETRIC_CANCELLED = "biometric_cancelled"
    RESEND_UNAVAILABLE = "resend_unavailable"
    UNKNOWN_ERROR = "unknown_error"


# ---------------------------------------------------------------------------
# Transport envelope
# ---------------------------------------------------------------------------

class ApiResponse(BaseModel):
    """Parsed backend response.

    Attributes
    ----------
    success:
        ``False`` for any HTTP status >= 400 or when the body says so.
    status_code:
        HTTP status of the response.
    message:
        Backend message at the root of the body, falling back to
        ``data.message``.
    data:
        The ``data`` object of the body (empty when absent).
    body:
        The whole body with snake_case keys.
    """

    success: bool
    status_code: int = 200
    message: Optional[str] = None
    data: dict[str, JsonValue] = Field(default_factory=dict)
    body: dict[str, JsonValue] = Field(default_factory=dict)

    def lookup(self, key: str) -> JsonValue:
        """Return *key* from the body root, ``data`` or ``data.data``."""
        if key in self.body:
            return self.body[key]
        if key in self.data:
            return self.data[key]
        nested = self.data.get("data")
        if isinstance(nested, dict):
            return nested.get(key)
        return None


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------

class TokenPair(BaseModel):
    """Access/refresh combination issued by login endpoints."""

    access_token: str
    refresh_token: Optional[str] = None


class TokenValidation(BaseModel):
    """Expiry view of the held access token.

    Attributes
    ----------
    is_valid:
        A token is held and its ``exp`` claim lies in the future (tokens
        without a readable ``exp`` are treated as valid).
    is_expired:
        ``exp`` has passed, or no token is held.
    needs_refresh:
        The token expires within the configured refresh threshold.
    expires_at:
        Decoded expiry, when present.
    """

    is_valid: bool
    is_expired: bool
    needs_refresh: bool
    expires_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Result of a single client-side field validation check.

    Attributes
    ----------
    is_valid:
        ``True`` when the value passes the validation rule.
    error_message:
        Human-readable description of the failure, or ``None`` on success.
    """

    is_valid: bool
    error_message: Optional[str] = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Unified auth response
# ---------------------------------------------------------------------------

class AuthResult(BaseModel):
    """Unified response for login, registration, biometric and
    password-reset operations.

    Attributes
    ----------
    success:
        ``True`` when the operation completed without error.
    classification:
        Device-trust classification for login-shaped calls; screens route
        on it (``NEW_DEVICE`` -> device OTP, ``UNVERIFIED`` -> account OTP).
    error_code:
        Structured error category (``None`` on success).
    error_message:
        Human-readable error description (``None`` on success and on a
        cancelled biometric prompt).
    user:
        The signed-in user, when known.
    cancelled:
        ``True`` when the user dismissed the biometric prompt.
    """

    success: bool
    classification: Optional[LoginClassification] = None
    error_code: Optional[AuthErrorCode] = None
    error_message: Optional[str] = None
    user: Optional[User] = None
    cancelled: bool = False

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Session models
# ---------------------------------------------------------------------------

class SessionSnapshot(BaseModel):
    """Immutable view of the session published to subscribers."""

    status: SessionStatus = SessionStatus.UNAUTHENTICATED
    is_authenticated: bool = False
    user: Optional[User] = None
    is_loading: bool = False
    error: Optional[str] = None
    version: int = 0

    model_config = ConfigDict(frozen=True)


class PersistedSession(BaseModel):
    """Whitelisted session fields written to durable storage.

    Tokens are persisted separately by the token manager; loading and
    error flags are never persisted.
    """

    user: Optional[User] = None
    is_authenticated: bool = False


class CredentialEntry(BaseModel):
    """Phone/password pair held between a new-device login and its OTP."""

    phone: str
    password: str = Field(repr=False)

    model_config = ConfigDict(frozen=True)
