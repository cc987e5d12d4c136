"""
Biometric Models.

Sensor availability as reported by the platform key store, the
per-phone enrollment record kept in durable storage, and the combined
enrollment view handed to callers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from authcore.models.enums import BiometryKind


class SensorInfo(BaseModel):
    """Result of ``SecureKeyStore.is_sensor_available``."""

    available: bool
    kind: BiometryKind = BiometryKind.NONE


class BiometricStatusRecord(BaseModel):
    """Durable per-phone enrollment flag."""

    public_key_registered: bool = False
    biometry_kind: BiometryKind = BiometryKind.NONE
    updated_at: Optional[datetime] = None


class BiometricEnrollment(BaseModel):
    """Enrollment state for one (phone, device) pair.

    Attributes
    ----------
    phone:
        Canonical phone the enrollment is scoped to.
    has_key_pair:
        The device key store currently holds a key pair.
    public_key_registered:
        The backend accepted the public half for this phone.
    biometry_kind:
        Sensor kind, ``NONE`` when no sensor is usable.
    """

    phone: str
    has_key_pair: bool = False
    public_key_registered: bool = False
    biometry_kind: BiometryKind = BiometryKind.NONE

    @property
    def can_login(self) -> bool:
        return (
            self.has_key_pair
            and self.public_key_registered
            and self.biometry_kind is not BiometryKind.NONE
        )
