"""
Device Key Store.

``SecureKeyStore`` is the contract for the platform keystore that holds
the biometric key pair: the private key never leaves it, and signing is
gated by a biometric prompt the user can dismiss.

``SoftwareKeyStore`` implements the contract with a P-256 key
(pycryptodome), optionally kept in the encrypted key-value store, and an
injected async prompt.  It backs desktop runs and tests; mobile builds
plug in their own implementation.
"""

from __future__ import annotations

import base64
from typing import Awaitable, Callable, Optional, Protocol

from Crypto.Hash import SHA256
from Crypto.PublicKey import ECC
from Crypto.Signature import DSS

from authcore.errors import BiometricCancelled, BiometricUnavailable
from authcore.models.biometric_models import SensorInfo
from authcore.models.enums import BiometryKind
from authcore.services.secure_storage import KeyValueStore

BiometricPrompt = Callable[[str], Awaitable[bool]]


class SecureKeyStore(Protocol):
    """Platform keystore operations used by the biometric service."""

    async def is_sensor_available(self) -> SensorInfo: ...

    async def key_pair_exists(self) -> bool: ...

    async def create_key_pair(self) -> str:
        """Create a fresh pair and return the base64 public key."""
        ...

    async def delete_key_pair(self) -> bool: ...

    async def sign(self, payload: str, prompt_message: str) -> str:
        """Prompt the user and return a base64 signature of *payload*.

        Raises ``BiometricCancelled`` when the prompt is dismissed.
        """
        ...


class SoftwareKeyStore:
    """ECDSA P-256 key store backed by pycryptodome.

    With *storage* the private key is kept as PEM under
    ``PRIVATE_KEY_KEY`` so an enrollment survives a restart; without it
    the key lives for the process only.

    Parameters
    ----------
    prompt:
        Coroutine shown the prompt message; returns ``False`` when the
        user dismisses it.
    kind:
        Sensor kind to report.
    sensor_available:
        Report the sensor as usable.
    storage:
        Optional durable store for the private key.
    """

    _CURVE: str = "P-256"
    PRIVATE_KEY_KEY: str = "biometric.private_key"

    def __init__(
        self,
        prompt: BiometricPrompt,
        kind: BiometryKind = BiometryKind.BIOMETRICS,
        sensor_available: bool = True,
        storage: Optional[KeyValueStore] = None,
    ) -> None:
        self._prompt: BiometricPrompt = prompt
        self._kind: BiometryKind = kind
        self._sensor_available: bool = sensor_available
        self._storage: Optional[KeyValueStore] = storage
        self._private_key: Optional[ECC.EccKey] = None

    async def is_sensor_available(self) -> SensorInfo:
        if not self._sensor_available:
            return SensorInfo(available=False, kind=BiometryKind.NONE)
        return SensorInfo(available=True, kind=self._kind)

    async def key_pair_exists(self) -> bool:
        return self._load() is not None

    async def create_key_pair(self) -> str:
        if not self._sensor_available:
            raise BiometricUnavailable()
        self._private_key = ECC.generate(curve=self._CURVE)
        if self._storage is not None:
            self._storage.set(self.PRIVATE_KEY_KEY, self._private_key.export_key(format="PEM"))
        public_der = self._private_key.public_key().export_key(format="DER")
        return base64.b64encode(public_der).decode("ascii")

    async def delete_key_pair(self) -> bool:
        existed = self._load() is not None
        self._private_key = None
        if self._storage is not None:
            self._storage.remove(self.PRIVATE_KEY_KEY)
        return existed

    async def sign(self, payload: str, prompt_message: str) -> str:
        private_key = self._load()
        if private_key is None:
            raise BiometricUnavailable()
        if not await self._prompt(prompt_message):
            raise BiometricCancelled()
        digest = SHA256.new(payload.encode("utf-8"))
        signature = DSS.new(private_key, "fips-186-3").sign(digest)
        return base64.b64encode(signature).decode("ascii")

    def _load(self) -> Optional[ECC.EccKey]:
        if self._private_key is None and self._storage is not None:
            pem = self._storage.get(self.PRIVATE_KEY_KEY)
            if pem:
                try:
                    self._private_key = ECC.import_key(pem)
                except ValueError:
                    self._storage.remove(self.PRIVATE_KEY_KEY)
        return self._private_key
