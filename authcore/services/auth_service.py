"""
Authentication Service.

Single entry point for every authentication action a screen can take:
login, registration, the four one-time-code flows, password reset,
logout, refresh and the biometric operations.

Sits between the UI layer and the session core so that screens stay thin
form handlers.  Every method returns a typed ``AuthResult`` /
``OtpOutcome`` (or a model such as ``BiometricEnrollment``); screens
never inspect raw exceptions or backend payloads, and this service never
navigates.  Routing is the caller's job, driven by
``AuthResult.classification``.

It also serves as the ``OtpGateway`` for every ``OtpVerificationMachine``
it creates, which is where the per-flow success side effects live:

- ``register``        nothing beyond the success outcome
- ``new-device``      replay the login with the cached credential
- ``forgot-password`` hand back the reset token
- ``generic``         nothing beyond the success outcome
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from authcore.api_client import RESEND_OTP_PATHS, RESEND_UNSUPPORTED_MESSAGE, AuthApi
from authcore.config import AppConfig
from authcore.errors import (
    AuthCoreError,
    AuthRejected,
    ClassificationAmbiguous,
    CredentialValidationError,
    NetworkUnavailable,
)
from authcore.logger import StructuredLogger
from authcore.models.auth_models import (
    ApiResponse,
    AuthErrorCode,
    AuthResult,
    SessionSnapshot,
    ValidationResult,
)
from authcore.models.biometric_models import BiometricEnrollment
from authcore.models.enums import AccountKind, FlowKind, LoginClassification
from authcore.models.otp_models import OtpFlowConfig, OtpOutcome, default_flow_configs
from authcore.models.user import User
from authcore.services.base_service import BaseService
from authcore.services.biometric_service import BiometricService
from authcore.services.cache_sync import PROFILE_KEY, ReactiveCacheSynchronizer, profile_fetcher
from authcore.services.credential_cache import CredentialCache
from authcore.services.device_trust import (
    DeviceTrustDetector,
    extract_token_pair,
    extract_user,
)
from authcore.services.otp_machine import OtpVerificationMachine
from authcore.services.token_manager import TokenLifecycleManager
from authcore.session import SessionStore, SnapshotListener
from authcore.utils.credentials import (
    mask_phone,
    normalize_phone,
    validate_otp,
    validate_password,
    validate_password_confirmation,
    validate_phone,
)


class AuthService(BaseService):
    """Public facade over the session core.

    Parameters
    ----------
    api:
        Backend transport.
    session:
        Session store (single owner of session state).
    tokens:
        Token lifecycle manager.
    classifier:
        Device trust detector, used for registration responses.
    credential_cache:
        Holds the password of a ``NEW_DEVICE`` login until its OTP clears.
    cache_sync:
        Reactive cache holding the ``my-data`` profile.
    biometric:
        Biometric enrollment and signature login.
    config:
        Validation limits and OTP flow settings.
    logger:
        Structured logger.
    clock:
        Monotonic clock handed to OTP machines.
    """

    def __init__(
        self,
        api: AuthApi,
        session: SessionStore,
        tokens: TokenLifecycleManager,
        classifier: DeviceTrustDetector,
        credential_cache: CredentialCache,
        cache_sync: ReactiveCacheSynchronizer,
        biometric: BiometricService,
        config: AppConfig,
        logger: StructuredLogger,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(logger)
        self._api: AuthApi = api
        self._session: SessionStore = session
        self._tokens: TokenLifecycleManager = tokens
        self._classifier: DeviceTrustDetector = classifier
        self._credential_cache: CredentialCache = credential_cache
        self._cache_sync: ReactiveCacheSynchronizer = cache_sync
        self._biometric: BiometricService = biometric
        self._config: AppConfig = config
        self._clock: Callable[[], float] = clock
        self._flow_configs: dict[FlowKind, OtpFlowConfig] = default_flow_configs(
            code_length=config.OTP_CODE_LENGTH,
            resend_delay_s=float(config.OTP_RESEND_DELAY_S),
            auto_submit=config.OTP_AUTO_SUBMIT,
        )
        self._load_profile = profile_fetcher(api)
        # Account kind of the last password login, replayed after a
        # successful new-device verification.
        self._account_kind: AccountKind = AccountKind.USER
        self._last_phone: Optional[str] = None

    # ------------------------------------------------------------------
    # Session views
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._session.snapshot

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        return self._session.subscribe(listener)

    async def initialize(self) -> SessionSnapshot:
        """Hydrate the session, then revalidate it with the backend.

        The profile is refetched and the biometric enrollment flag is
        read back.  A rejected refresh during revalidation ends the
        session through the token manager's expiry signal; a network
        failure keeps it.
        """
        snapshot = self._session.hydrate()
        if snapshot.is_authenticated:
            await self.current_user(force=True)
            await self.sync_biometric_status()
        return self._session.snapshot

    async def current_user(self, force: bool = False) -> Optional[User]:
        """Return the signed-in user, served from the profile cache."""
        if not self._session.is_authenticated:
            return None
        try:
            user = await self._cache_sync.fetch(
                PROFILE_KEY,
                self._load_profile,
                max_age_s=self._config.PROFILE_STALE_S,
                force=force,
            )
        except AuthCoreError as exc:
            self._logger.warning("Profile fetch failed: %s", exc.user_message)
            return self._session.user
        if self._session.is_authenticated:
            self._session.set_user(user)
        return self._session.user

    # ------------------------------------------------------------------
    # Password login and registration
    # ------------------------------------------------------------------

    async def login(
        self,
        phone: str,
        password: str,
        account_kind: AccountKind = AccountKind.USER,
    ) -> AuthResult:
        """Validate, normalise and submit credentials.

        Invalid input never reaches the network.  A ``NEW_DEVICE``
        classification caches the credential for the device OTP flow.
        """
        invalid = self._first_invalid(
            self._check_phone(phone),
            validate_password(password, self._config.MIN_PASSWORD_LENGTH),
        )
        if invalid is not None:
            return invalid

        canonical = self._normalize(phone)
        self._account_kind = account_kind
        self._last_phone = canonical
        result = await self._session.login(canonical, password, account_kind)
        if result.classification is LoginClassification.NEW_DEVICE:
            self._credential_cache.set(canonical, password)
        return result

    async def register(
        self,
        phone: str,
        password: str,
        confirm_password: str,
        referral_code: Optional[str] = None,
        account_kind: AccountKind = AccountKind.USER,
    ) -> AuthResult:
        """Create an account.

        When the backend answers with tokens the session is authenticated
        directly; otherwise the result carries ``UNVERIFIED`` so the
        caller opens the registration OTP flow.
        """
        invalid = self._first_invalid(
            self._check_phone(phone),
            validate_password(password, self._config.MIN_PASSWORD_LENGTH),
            validate_password_confirmation(password, confirm_password),
        )
        if invalid is not None:
            return invalid

        canonical = self._normalize(phone)
        try:
            response = await self._api.register(
                canonical, password, confirm_password, referral_code, account_kind,
            )
        except NetworkUnavailable as exc:
            return self._error_result(exc)

        if not response.success:
            return self._rejected_result(response)

        self._audit("REGISTER", mask_phone(canonical), {"account_kind": str(account_kind)})
        if self._classifier.classify(response) is LoginClassification.AUTHENTICATED:
            pair = extract_token_pair(response)
            if pair is not None:
                await self._session.complete_verification(pair, extract_user(response))
                return AuthResult(
                    success=True,
                    classification=LoginClassification.AUTHENTICATED,
                    user=self._session.user,
                )
        return AuthResult(success=True, classification=LoginClassification.UNVERIFIED)

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    def create_otp_flow(self, flow: FlowKind, phone: str) -> OtpVerificationMachine:
        """Start a verification attempt for *phone* under *flow*."""
        return OtpVerificationMachine(
            flow=flow,
            phone=self._normalize(phone),
            gateway=self,
            logger=self._logger,
            config=self._flow_configs[flow],
            clock=self._clock,
        )

    async def verify_otp(self, flow: FlowKind, phone: str, code: str) -> OtpOutcome:
        """Verify *code* and apply the flow's success side effect."""
        check = validate_otp(code, self._config.OTP_CODE_LENGTH)
        if not check.is_valid:
            return OtpOutcome(
                success=False,
                flow=flow,
                message=check.error_message,
                error_code=AuthErrorCode.VALIDATION_ERROR,
            )

        canonical = self._normalize(phone)
        try:
            response = await self._api.verify_otp(flow, canonical, code)
        except NetworkUnavailable as exc:
            return OtpOutcome(
                success=False, flow=flow, message=exc.user_message, error_code=exc.error_code,
            )

        if not response.success:
            rejected = self._rejected_result(response)
            return OtpOutcome(
                success=False,
                flow=flow,
                message=rejected.error_message,
                error_code=rejected.error_code,
            )

        self._audit("OTP_VERIFIED", mask_phone(canonical), {"flow": str(flow)})
        if flow is FlowKind.NEW_DEVICE:
            return await self._finish_new_device(canonical, response)
        if flow is FlowKind.FORGOT_PASSWORD:
            return self._finish_forgot_password(response)
        return OtpOutcome(success=True, flow=flow, message=response.message)

    async def resend_otp(self, flow: FlowKind, phone: str) -> OtpOutcome:
        """Ask the backend to send a new code for *flow*."""
        if flow not in RESEND_OTP_PATHS:
            return OtpOutcome(
                success=False,
                flow=flow,
                message=RESEND_UNSUPPORTED_MESSAGE,
                error_code=AuthErrorCode.RESEND_UNAVAILABLE,
            )

        canonical = self._normalize(phone)
        try:
            response = await self._api.resend_otp(flow, canonical)
        except NetworkUnavailable as exc:
            return OtpOutcome(
                success=False, flow=flow, message=exc.user_message, error_code=exc.error_code,
            )

        if not response.success:
            rejected = self._rejected_result(response)
            return OtpOutcome(
                success=False,
                flow=flow,
                message=rejected.error_message,
                error_code=rejected.error_code,
            )
        return OtpOutcome(success=True, flow=flow, message=response.message)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def request_password_reset(self, phone: str) -> AuthResult:
        """Send the forgot-password OTP to *phone*."""
        invalid = self._first_invalid(self._check_phone(phone))
        if invalid is not None:
            return invalid

        canonical = self._normalize(phone)
        try:
            response = await self._api.forgot_password(canonical)
        except NetworkUnavailable as exc:
            return self._error_result(exc)

        if not response.success:
            return self._rejected_result(response)
        self._logger.info("Password reset code requested for %s.", mask_phone(canonical))
        return AuthResult(success=True)

    async def reset_password(
        self,
        reset_token: str,
        new_password: str,
        confirm_password: str,
    ) -> AuthResult:
        """Set a new password using the token from a forgot-password OTP."""
        if not reset_token:
            return self._error_result(
                CredentialValidationError("The reset link is missing or has expired.")
            )
        invalid = self._first_invalid(
            validate_password(new_password, self._config.MIN_PASSWORD_LENGTH),
            validate_password_confirmation(new_password, confirm_password),
        )
        if invalid is not None:
            return invalid

        try:
            response = await self._api.reset_password(reset_token, new_password, confirm_password)
        except NetworkUnavailable as exc:
            return self._error_result(exc)

        if not response.success:
            return self._rejected_result(response)
        self._audit("PASSWORD_RESET", "reset_token")
        return AuthResult(success=True)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def logout(self) -> AuthResult:
        """Log out; always succeeds locally."""
        await self._session.logout()
        return AuthResult(success=True)

    async def refresh(self) -> AuthResult:
        """Renew the access token now."""
        try:
            await self._tokens.refresh()
        except AuthCoreError as exc:
            return self._error_result(exc)
        return AuthResult(success=True, user=self._session.user)

    # ------------------------------------------------------------------
    # Biometric
    # ------------------------------------------------------------------

    async def enroll_biometric(self, password: str) -> AuthResult:
        """Enroll this device for the signed-in user's phone."""
        phone = self._session_phone()
        if phone is None:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.SESSION_EXPIRED,
                error_message="Sign in before enabling biometric sign-in.",
            )
        return await self._biometric.enroll(phone, password)

    async def remove_biometric(self, phone: Optional[str] = None) -> AuthResult:
        """Remove enrollment for *phone* (defaults to the signed-in user's)."""
        canonical = self._normalize(phone) if phone else self._session_phone()
        if not canonical:
            return AuthResult(success=True)
        return await self._biometric.remove(canonical)

    async def biometric_login(
        self,
        phone: str,
        account_kind: AccountKind = AccountKind.USER,
    ) -> AuthResult:
        invalid = self._first_invalid(self._check_phone(phone))
        if invalid is not None:
            return invalid
        canonical = self._normalize(phone)
        self._account_kind = account_kind
        self._last_phone = canonical
        return await self._biometric.login(canonical, account_kind)

    async def biometric_availability(self, phone: str) -> BiometricEnrollment:
        """Enrollment state for *phone*, re-evaluated when the phone changes."""
        return await self._biometric.refresh_for_phone(self._normalize(phone))

    async def sync_biometric_status(self) -> Optional[bool]:
        """Align the local enrollment record with the backend flag."""
        phone = self._session_phone()
        if phone is None or not self._session.is_authenticated:
            return None
        return await self._biometric.sync_server_status(phone)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _finish_new_device(self, phone: str, response: ApiResponse) -> OtpOutcome:
        entry = self._credential_cache.consume()

        pair = extract_token_pair(response)
        if pair is not None:
            await self._session.complete_verification(pair, extract_user(response))
            return OtpOutcome(
                success=True,
                flow=FlowKind.NEW_DEVICE,
                message=response.message,
                authenticated=True,
                classification=LoginClassification.AUTHENTICATED,
            )

        if entry is None or entry.phone != phone:
            self._logger.warning(
                "Device verified for %s but no matching credential is cached.",
                mask_phone(phone),
            )
            return OtpOutcome(success=True, flow=FlowKind.NEW_DEVICE, message=response.message)

        result = await self._session.login(entry.phone, entry.password, self._account_kind)
        return OtpOutcome(
            success=True,
            flow=FlowKind.NEW_DEVICE,
            message=result.error_message or response.message,
            error_code=result.error_code,
            authenticated=result.success,
            classification=result.classification,
        )

    def _finish_forgot_password(self, response: ApiResponse) -> OtpOutcome:
        for key in ("reset_token", "token"):
            token = response.lookup(key)
            if isinstance(token, str) and token:
                return OtpOutcome(
                    success=True,
                    flow=FlowKind.FORGOT_PASSWORD,
                    message=response.message,
                    reset_token=token,
                )
        ambiguous = ClassificationAmbiguous()
        return OtpOutcome(
            success=False,
            flow=FlowKind.FORGOT_PASSWORD,
            message=ambiguous.user_message,
            error_code=ambiguous.error_code,
        )

    def _session_phone(self) -> Optional[str]:
        user = self._session.user
        if user is not None and user.phone_number:
            return self._normalize(user.phone_number)
        if self._session.is_authenticated:
            return self._last_phone
        return None

    def _normalize(self, phone: str) -> str:
        return normalize_phone(
            phone,
            self._config.PHONE_COUNTRY_CODE,
            self._config.PHONE_MAX_NATIONAL_DIGITS,
        )

    def _check_phone(self, phone: str) -> ValidationResult:
        return validate_phone(
            phone,
            self._config.PHONE_COUNTRY_CODE,
            self._config.PHONE_MIN_NATIONAL_DIGITS,
            self._config.PHONE_MAX_NATIONAL_DIGITS,
        )

    @staticmethod
    def _first_invalid(*checks: ValidationResult) -> Optional[AuthResult]:
        for check in checks:
            if not check.is_valid:
                return AuthService._error_result(CredentialValidationError(check.error_message))
        return None

    @staticmethod
    def _error_result(exc: AuthCoreError) -> AuthResult:
        return AuthResult(success=False, error_code=exc.error_code, error_message=exc.user_message)

    @staticmethod
    def _rejected_result(response: ApiResponse) -> AuthResult:
        if 400 <= response.status_code < 500:
            error_code = AuthErrorCode.INVALID_CREDENTIALS
            fallback = AuthRejected.default_message
        else:
            error_code = AuthErrorCode.UNKNOWN_ERROR
            fallback = AuthCoreError.default_message
        message = response.message or fallback
        if "successful" in message.lower():
            message = fallback
        return AuthResult(success=False, error_code=error_code, error_message=message)
