"""
Biometric Enrollment & Signature Login.

Enrollment rotates the device key pair: any existing pair is destroyed,
a fresh one is created, and only its public half is sent to the backend
together with the current password.  Login signs a short payload with
the device key (behind the platform biometric prompt) and submits it in
place of a password.

Enrollment is scoped to a (phone, device) pair.  The device holds one
key pair at a time, so its owner phone is stored next to the per-phone
status records and availability is re-evaluated whenever the active
phone changes.
"""

from __future__ import annotations

import json
import secrets
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import ValidationError

from authcore.api_client import AuthApi
from authcore.config import AppConfig
from authcore.errors import (
    AuthCoreError,
    BiometricCancelled,
    BiometricUnavailable,
    NetworkUnavailable,
    TokenExpired,
)
from authcore.logger import StructuredLogger
from authcore.models.auth_models import AuthErrorCode, AuthResult
from authcore.models.biometric_models import BiometricEnrollment, BiometricStatusRecord
from authcore.models.enums import AccountKind, BiometryKind
from authcore.services.base_service import BaseService
from authcore.services.key_store import SecureKeyStore
from authcore.services.secure_storage import KeyValueStore
from authcore.session import SessionStore
from authcore.utils.credentials import mask_phone

KEY_OWNER_KEY: str = "biometric.key_owner"
_STATUS_KEY_PREFIX: str = "biometric.status."


def status_key(phone: str) -> str:
    """Storage key of the enrollment record for a canonical *phone*."""
    return f"{_STATUS_KEY_PREFIX}{phone}"


class BiometricService(BaseService):
    """Enroll, remove and sign in with the device biometric key.

    Parameters
    ----------
    api:
        Backend transport (enroll, remove, status, biometric login).
    key_store:
        Platform keystore; the private key never leaves it.
    storage:
        Durable store for per-phone enrollment records.
    session:
        Session store; biometric login goes through ``submit_login``.
    config:
        Supplies the biometric prompt text.
    logger:
        Structured logger.
    wall_clock:
        Epoch-seconds clock used for the signed payload timestamp.
    """

    def __init__(
        self,
        api: AuthApi,
        key_store: SecureKeyStore,
        storage: KeyValueStore,
        session: SessionStore,
        config: AppConfig,
        logger: StructuredLogger,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(logger)
        self._api: AuthApi = api
        self._key_store: SecureKeyStore = key_store
        self._storage: KeyValueStore = storage
        self._session: SessionStore = session
        self._prompt_message: str = config.BIOMETRIC_PROMPT_MESSAGE
        self._wall_clock: Callable[[], float] = wall_clock
        self._active_phone: Optional[str] = None
        self._active: Optional[BiometricEnrollment] = None

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def availability(self, phone: str) -> BiometricEnrollment:
        """Evaluate enrollment for *phone* on this device."""
        sensor = await self._key_store.is_sensor_available()
        owns_key = self._storage.get(KEY_OWNER_KEY) == phone and await self._key_store.key_pair_exists()
        record = self._load_record(phone)
        return BiometricEnrollment(
            phone=phone,
            has_key_pair=owns_key,
            public_key_registered=record is not None and record.public_key_registered,
            biometry_kind=sensor.kind if sensor.available else BiometryKind.NONE,
        )

    async def refresh_for_phone(self, phone: str) -> BiometricEnrollment:
        """Re-evaluate availability when the active phone changes."""
        if self._active is None or phone != self._active_phone:
            self._active_phone = phone
            self._active = await self.availability(phone)
        return self._active

    async def sync_server_status(self, phone: str) -> Optional[bool]:
        """Read the backend enrollment flag into the local record.

        Returns the flag, or ``None`` when the backend could not be asked.
        """
        try:
            response = await self._api.biometric_status()
        except AuthCoreError as exc:
            self._logger.warning("Biometric status check failed: %s", exc.user_message)
            return None
        if not response.success:
            self._logger.warning("Biometric status check rejected (status %d).", response.status_code)
            return None

        registered = response.lookup("status") is True
        record = self._load_record(phone) or BiometricStatusRecord()
        if record.public_key_registered != registered:
            sensor = await self._key_store.is_sensor_available()
            self._save_record(phone, registered, sensor.kind)
            self._invalidate(phone)
        return registered

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    async def enroll(self, phone: str, password: str) -> AuthResult:
        """Rotate the device key pair and register its public half."""
        if not self._session.is_authenticated:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.SESSION_EXPIRED,
                error_message="Sign in before enabling biometric sign-in.",
            )
        if not password:
            return AuthResult(
                success=False,
                error_code=AuthErrorCode.VALIDATION_ERROR,
                error_message="Password is required.",
            )

        sensor = await self._key_store.is_sensor_available()
        if not sensor.available:
            return self._unavailable()

        await self._discard_device_key()
        public_key = await self._key_store.create_key_pair()

        try:
            response = await self._api.enroll_biometric(public_key, password)
        except (NetworkUnavailable, TokenExpired) as exc:
            await self._key_store.delete_key_pair()
            return AuthResult(success=False, error_code=exc.error_code, error_message=exc.user_message)

        if not response.success:
            await self._key_store.delete_key_pair()
            self._logger.warning(
                "Biometric enrollment rejected for %s (status %d).",
                mask_phone(phone),
                response.status_code,
            )
            return AuthResult(
                success=False,
                error_code=(
                    AuthErrorCode.INVALID_CREDENTIALS
                    if 400 <= response.status_code < 500
                    else AuthErrorCode.UNKNOWN_ERROR
                ),
                error_message=response.message or "Biometric enrollment failed.",
            )

        self._storage.set(KEY_OWNER_KEY, phone)
        self._save_record(phone, True, sensor.kind)
        self._invalidate(phone)
        self._audit("BIOMETRIC_ENROLLED", mask_phone(phone), {"kind": str(sensor.kind)})
        return AuthResult(success=True, user=self._session.user)

    async def remove(self, phone: str) -> AuthResult:
        """Remove enrollment for *phone*; idempotent and never fails.

        The backend is told only while a session exists, and its errors
        are logged rather than returned.
        """
        if self._session.is_authenticated:
            try:
                response = await self._api.remove_biometric()
                if not response.success:
                    self._logger.warning(
                        "Backend biometric removal rejected (status %d).", response.status_code
                    )
            except AuthCoreError as exc:
                self._logger.warning("Backend biometric removal failed: %s", exc.user_message)

        owner = self._storage.get(KEY_OWNER_KEY)
        if owner is None or owner == phone:
            await self._key_store.delete_key_pair()
            self._storage.remove(KEY_OWNER_KEY)
        self._storage.remove(status_key(phone))
        self._invalidate(phone)
        self._audit("BIOMETRIC_REMOVED", mask_phone(phone))
        return AuthResult(success=True)

    # ------------------------------------------------------------------
    # Signature login
    # ------------------------------------------------------------------

    async def login(self, phone: str, account_kind: AccountKind = AccountKind.USER) -> AuthResult:
        """Sign a fresh payload and submit it as a login.

        A dismissed prompt returns ``cancelled=True`` with no error
        message and leaves the session untouched.
        """
        enrollment = await self.availability(phone)
        if not enrollment.can_login:
            return self._unavailable()

        payload = self.build_payload(phone)
        try:
            signature = await self._key_store.sign(payload, self._prompt_message)
        except BiometricCancelled:
            self._logger.info("Biometric prompt dismissed for %s.", mask_phone(phone))
            return AuthResult(success=False, cancelled=True)
        except BiometricUnavailable as exc:
            return AuthResult(success=False, error_code=exc.error_code, error_message=exc.user_message)

        return await self._session.submit_login(
            lambda: self._api.biometric_login(phone, payload, signature, account_kind),
            subject=mask_phone(phone),
        )

    def build_payload(self, phone: str) -> str:
        """Compact JSON ``{phone_number, timestamp, nonce}``."""
        return json.dumps(
            {
                "phone_number": phone,
                "timestamp": int(self._wall_clock() * 1000),
                "nonce": secrets.token_hex(16),
            },
            separators=(",", ":"),
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _discard_device_key(self) -> None:
        previous_owner = self._storage.get(KEY_OWNER_KEY)
        await self._key_store.delete_key_pair()
        self._storage.remove(KEY_OWNER_KEY)
        if previous_owner is not None:
            self._storage.remove(status_key(previous_owner))
            self._invalidate(previous_owner)

    def _load_record(self, phone: str) -> Optional[BiometricStatusRecord]:
        raw = self._storage.get(status_key(phone))
        if not raw:
            return None
        try:
            return BiometricStatusRecord.model_validate_json(raw)
        except ValidationError:
            self._logger.warning("Discarding malformed biometric record for %s.", mask_phone(phone))
            self._storage.remove(status_key(phone))
            return None

    def _save_record(self, phone: str, registered: bool, kind: BiometryKind) -> None:
        record = BiometricStatusRecord(
            public_key_registered=registered,
            biometry_kind=kind,
            updated_at=datetime.now(timezone.utc),
        )
        self._storage.set(status_key(phone), record.model_dump_json())

    def _invalidate(self, phone: str) -> None:
        if phone == self._active_phone:
            self._active = None

    @staticmethod
    def _unavailable() -> AuthResult:
        return AuthResult(
            success=False,
            error_code=AuthErrorCode.BIOMETRIC_UNAVAILABLE,
            error_message=BiometricUnavailable.default_message,
        )
