"""
authcore Data Models.

Pydantic models for the session layer's typed boundaries.
"""

from authcore.models.auth_models import (
    ApiResponse,
    AuthErrorCode,
    AuthResult,
    CredentialEntry,
    PersistedSession,
    SessionSnapshot,
    TokenPair,
    TokenValidation,
    ValidationResult,
)
from authcore.models.biometric_models import (
    BiometricEnrollment,
    BiometricStatusRecord,
    SensorInfo,
)
from authcore.models.enums import (
    AccountKind,
    BiometryKind,
    FlowKind,
    LoginClassification,
    OtpState,
    SessionStatus,
)
from authcore.models.otp_models import (
    OtpAttempt,
    OtpFlowConfig,
    OtpOutcome,
    default_flow_configs,
)
from authcore.models.user import User

__all__ = [
    "AccountKind",
    "ApiResponse",
    "AuthErrorCode",
    "AuthResult",
    "BiometricEnrollment",
    "BiometricStatusRecord",
    "BiometryKind",
    "CredentialEntry",
    "FlowKind",
    "LoginClassification",
    "OtpAttempt",
    "OtpFlowConfig",
    "OtpOutcome",
    "OtpState",
    "PersistedSession",
    "SensorInfo",
    "SessionSnapshot",
    "SessionStatus",
    "TokenPair",
    "TokenValidation",
    "User",
    "ValidationResult",
    "default_flow_configs",
]
