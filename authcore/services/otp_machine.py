"""
OTP Verification State Machine.

One class serves all four flow kinds; the kind selects the backend
endpoints (through the gateway) and the success side effect (in the
gateway), while the state handling here is identical::

    idle -> validating -> submitting -> success
                                     -> failed -> (typing) -> idle

Guards
------
- ``update_code`` is ignored while submitting.
- ``submit`` is rejected when the code fails shape validation, while a
  submit is in flight, or when this exact code was already submitted.
  Rejections for the last two are silent (``skipped=True``); they are
  how an auto-submit and a button press on the same code collapse into
  one network call.
- ``resend`` is rejected while its cooldown runs, while a resend or a
  submit is in flight, and for flows without a resend endpoint.  It
  clears the duplicate-submit latch so the next code can go through.
"""

from __future__ import annotations

import time
from typing import Callable, Optional, Protocol

from authcore.api_client import RESEND_UNSUPPORTED_MESSAGE
from authcore.errors import AuthCoreError
from authcore.logger import StructuredLogger
from authcore.models.auth_models import AuthErrorCode
from authcore.models.enums import FlowKind, OtpState
from authcore.models.otp_models import OtpAttempt, OtpFlowConfig, OtpOutcome
from authcore.services.base_service import BaseService
from authcore.utils.credentials import digits_only, mask_phone, validate_otp

_CODE_FIELD: str = "code"
_RESEND_FIELD: str = "resend"


class OtpGateway(Protocol):
    """Backend verify/resend plus the per-flow success side effects."""

    async def verify_otp(self, flow: FlowKind, phone: str, code: str) -> OtpOutcome: ...

    async def resend_otp(self, flow: FlowKind, phone: str) -> OtpOutcome: ...


class OtpVerificationMachine(BaseService):
    """State machine for the single active attempt of one flow instance.

    Parameters
    ----------
    flow:
        Flow kind this instance serves.
    phone:
        Canonical phone the code was sent to.
    gateway:
        Performs verify/resend and applies flow side effects.
    logger:
        Structured logger.
    config:
        Per-flow knobs; defaults to a 6-digit, 30-second, auto-submitting
        flow with resend support.
    clock:
        Monotonic clock for the resend cooldown.
    """

    def __init__(
        self,
        flow: FlowKind,
        phone: str,
        gateway: OtpGateway,
        logger: StructuredLogger,
        config: Optional[OtpFlowConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(logger)
        self._flow: FlowKind = flow
        self._gateway: OtpGateway = gateway
        self._config: OtpFlowConfig = config or OtpFlowConfig(
            resend_supported=flow is not FlowKind.GENERIC,
        )
        self._clock: Callable[[], float] = clock
        self._attempt: OtpAttempt = OtpAttempt(phone=phone)
        self._state: OtpState = OtpState.IDLE
        self._last_submitted_code: Optional[str] = None
        # The code was just sent when the screen opened, so the window
        # starts now.
        self._cooldown_started_at: float = clock()
        self._outcome: Optional[OtpOutcome] = None

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def flow(self) -> FlowKind:
        return self._flow

    @property
    def state(self) -> OtpState:
        return self._state

    @property
    def attempt(self) -> OtpAttempt:
        """A copy of the attempt record."""
        return self._attempt.model_copy(deep=True)

    @property
    def outcome(self) -> Optional[OtpOutcome]:
        """Successful outcome, once reached."""
        return self._outcome

    @property
    def config(self) -> OtpFlowConfig:
        return self._config

    def remaining_cooldown(self) -> float:
        """Seconds until ``resend`` is allowed again (0 when allowed)."""
        elapsed = self._clock() - self._cooldown_started_at
        return max(0.0, self._config.resend_delay_s - elapsed)

    @property
    def can_resend(self) -> bool:
        return (
            self._config.resend_supported
            and self.remaining_cooldown() == 0
            and not self._attempt.is_resending
            and self._state not in (OtpState.SUBMITTING, OtpState.SUCCESS)
        )

    @property
    def can_submit(self) -> bool:
        return (
            self._state not in (OtpState.SUBMITTING, OtpState.SUCCESS)
            and not self._attempt.is_resending
            and len(self._attempt.code) == self._config.code_length
            and self._attempt.code != self._last_submitted_code
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def update_code(self, value: str) -> bool:
        """Replace the entered code; returns ``False`` when ignored."""
        if self._state in (OtpState.SUBMITTING, OtpState.SUCCESS):
            return False
        self._attempt.code = digits_only(value, self._config.code_length)
        self._attempt.touched = True
        self._attempt.errors.pop(_CODE_FIELD, None)
        if self._state is OtpState.FAILED:
            self._state = OtpState.IDLE
        return True

    async def input_code(self, value: str) -> Optional[OtpOutcome]:
        """``update_code`` plus auto-submit once the code is complete."""
        if not self.update_code(value):
            return None
        if self._config.auto_submit and len(self._attempt.code) == self._config.code_length:
            return await self.submit()
        return None

    async def submit(self) -> OtpOutcome:
        """Verify the entered code through the gateway."""
        if self._state is OtpState.SUCCESS or self._attempt.is_submitting:
            self._logger.debug("Duplicate %s OTP submit ignored.", self._flow)
            return self._skipped()
        if self._attempt.is_resending:
            self._logger.debug("%s OTP submit ignored while a resend is in flight.", self._flow)
            return self._skipped()

        code = self._attempt.code
        self._state = OtpState.VALIDATING
        check = validate_otp(code, self._config.code_length)
        if not check.is_valid:
            self._attempt.errors[_CODE_FIELD] = check.error_message or ""
            self._state = OtpState.IDLE
            return OtpOutcome(
                success=False,
                flow=self._flow,
                message=check.error_message,
                error_code=AuthErrorCode.VALIDATION_ERROR,
            )
        if code == self._last_submitted_code:
            self._state = OtpState.IDLE
            return self._skipped()

        self._state = OtpState.SUBMITTING
        self._attempt.is_submitting = True
        self._last_submitted_code = code
        try:
            outcome = await self._gateway.verify_otp(self._flow, self._attempt.phone, code)
        except AuthCoreError as exc:
            outcome = OtpOutcome(
                success=False,
                flow=self._flow,
                message=exc.user_message,
                error_code=exc.error_code,
            )
        finally:
            self._attempt.is_submitting = False

        if outcome.success:
            self._state = OtpState.SUCCESS
            self._attempt.errors.clear()
            self._outcome = outcome
            self._logger.info(
                "%s OTP verified for %s.",
                self._flow,
                mask_phone(self._attempt.phone),
                extra={"event": "OTP_VERIFIED", "flow": str(self._flow)},
            )
        else:
            self._state = OtpState.FAILED
            self._attempt.code = ""
            self._attempt.errors[_CODE_FIELD] = outcome.message or "Verification failed."
            self._last_submitted_code = None
        return outcome

    async def resend(self) -> OtpOutcome:
        """Ask the backend to send a new code."""
        if not self._config.resend_supported:
            return OtpOutcome(
                success=False,
                flow=self._flow,
                message=RESEND_UNSUPPORTED_MESSAGE,
                error_code=AuthErrorCode.RESEND_UNAVAILABLE,
                skipped=True,
            )
        if not self.can_resend:
            return self._skipped()

        self._attempt.is_resending = True
        self._last_submitted_code = None
        try:
            outcome = await self._gateway.resend_otp(self._flow, self._attempt.phone)
        except AuthCoreError as exc:
            outcome = OtpOutcome(
                success=False,
                flow=self._flow,
                message=exc.user_message,
                error_code=exc.error_code,
            )
        finally:
            self._attempt.is_resending = False

        if outcome.success:
            self._cooldown_started_at = self._clock()
            self._attempt.code = ""
            self._attempt.errors.pop(_RESEND_FIELD, None)
            self._logger.info(
                "%s OTP resent to %s.", self._flow, mask_phone(self._attempt.phone),
            )
        else:
            self._attempt.errors[_RESEND_FIELD] = outcome.message or "Could not resend the code."
        return outcome

    def _skipped(self) -> OtpOutcome:
        return OtpOutcome(success=False, flow=self._flow, skipped=True)
