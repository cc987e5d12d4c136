"""
One-Time-Code Models.

Per-flow configuration, the mutable attempt record held by an
``OtpVerificationMachine`` and the outcome returned by the OTP gateway.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from authcore.models.auth_models import AuthErrorCode
from authcore.models.enums import FlowKind, LoginClassification


class OtpFlowConfig(BaseModel):
    """Behaviour knobs for one flow kind."""

    code_length: int = 6
    resend_delay_s: float = 30.0
    auto_submit: bool = True
    resend_supported: bool = True


def default_flow_configs(
    code_length: int = 6,
    resend_delay_s: float = 30.0,
    auto_submit: bool = True,
) -> dict[FlowKind, OtpFlowConfig]:
    """Build the per-flow table; only ``generic`` lacks a resend endpoint."""
    return {
        kind: OtpFlowConfig(
            code_length=code_length,
            resend_delay_s=resend_delay_s,
            auto_submit=auto_submit,
            resend_supported=kind is not FlowKind.GENERIC,
        )
        for kind in FlowKind
    }


class OtpAttempt(BaseModel):
    """State of the single active attempt for one flow instance.

    Attributes
    ----------
    phone:
        Canonical phone the code was sent to.
    code:
        Digits entered so far.
    touched:
        ``True`` once the user has typed anything.
    errors:
        Field name -> human-readable message (``"code"`` for validation
        and verification failures, ``"resend"`` for resend failures).
    is_submitting / is_resending:
        In-flight latches for verify and resend.
    """

    phone: str
    code: str = ""
    touched: bool = False
    errors: dict[str, str] = Field(default_factory=dict)
    is_submitting: bool = False
    is_resending: bool = False


class OtpOutcome(BaseModel):
    """Result of a verify or resend call for one flow.

    Attributes
    ----------
    success:
        ``True`` when the backend accepted the code (or resent it).
    flow:
        Flow kind the outcome belongs to.
    message:
        Backend or local message suitable for display.
    error_code:
        Structured error category on failure.
    reset_token:
        Short-lived token yielded by a successful ``forgot-password``
        verification.
    authenticated:
        ``True`` when the success side effect produced an authenticated
        session (``new-device`` with a matching cached credential).
    classification:
        Classification of the replayed login, when one ran.
    skipped:
        ``True`` when a guard rejected the call before any network I/O
        (duplicate submit, cooldown active, resend in flight).
    """

    success: bool
    flow: FlowKind
    message: Optional[str] = None
    error_code: Optional[AuthErrorCode] = None
    reset_token: Optional[str] = None
    authenticated: bool = False
    classification: Optional[LoginClassification] = None
    skipped: bool = False
