"""Shared test fixtures for the authcore session layer tests."""

import os

# The logger reads the config singleton on first use; keep tests off disk.
os.environ["LOG_FILE"] = ""

from types import SimpleNamespace
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from authcore.config import AppConfig
from authcore.errors import BiometricCancelled, BiometricUnavailable
from authcore.logger import StructuredLogger
from authcore.models.auth_models import ApiResponse
from authcore.models.biometric_models import SensorInfo
from authcore.models.enums import BiometryKind
from authcore.services import create_services

PHONE = "84987654321"
PASSWORD = "P@ssw0rd"
USER_PAYLOAD = {"id": "42", "phone_number": PHONE, "full_name": "Nguyen Van A"}


class MemoryStore:
    """Dict-backed ``KeyValueStore``."""

    def __init__(self):
        self.values = {}

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value):
        self.values[key] = value

    def remove(self, key):
        self.values.pop(key, None)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeKeyStore:
    """``SecureKeyStore`` double that records calls and never holds real keys."""

    def __init__(self, available=True, kind=BiometryKind.FACE_ID):
        self.available = available
        self.kind = kind
        self.has_pair = False
        self.cancel_prompt = False
        self.created = 0
        self.deleted = 0
        self.signed_payloads = []

    async def is_sensor_available(self):
        if not self.available:
            return SensorInfo(available=False)
        return SensorInfo(available=True, kind=self.kind)

    async def key_pair_exists(self):
        return self.has_pair

    async def create_key_pair(self):
        self.created += 1
        self.has_pair = True
        return f"public-key-{self.created}"

    async def delete_key_pair(self):
        self.deleted += 1
        existed, self.has_pair = self.has_pair, False
        return existed

    async def sign(self, payload, prompt_message):
        if not self.has_pair:
            raise BiometricUnavailable()
        if self.cancel_prompt:
            raise BiometricCancelled()
        self.signed_payloads.append(payload)
        return "signature"


def api_response(
    status_code: int = 200,
    message: Optional[str] = None,
    success: Optional[bool] = None,
    **data,
) -> ApiResponse:
    """Build an ``ApiResponse`` the way the transport would."""
    ok = status_code < 400 if success is None else success
    body = {"success": ok, "data": data}
    if message is not None:
        body["message"] = message
    return ApiResponse(success=ok, status_code=status_code, message=message, data=data, body=body)


@pytest.fixture
def make_response():
    return api_response


@pytest.fixture
def config():
    return AppConfig(
        API_BASE_URL="https://api.test",
        LOG_FILE="",
        STORAGE_KDF_ITERATIONS=1_000,
    )


@pytest.fixture
def logger():
    return StructuredLogger(name="authcore.tests", log_file="")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def key_store():
    return FakeKeyStore()


@pytest.fixture
def api():
    api = AsyncMock()
    api.get_my_data.return_value = api_response(user=USER_PAYLOAD)
    api.logout.return_value = api_response(message="Logged out")
    api.biometric_status.return_value = api_response(status=False)
    api.remove_biometric.return_value = api_response()
    return api


@pytest.fixture
def core(config, store, key_store, api):
    """Fully wired session layer over a mocked transport."""
    services = create_services(config=config, storage=store, key_store=key_store, api=api)
    return SimpleNamespace(
        api=api,
        store=store,
        key_store=key_store,
        tokens=services["tokens"],
        session=services["session"],
        credential_cache=services["credential_cache"],
        cache_sync=services["cache_sync"],
        biometric=services["biometric_service"],
        auth=services["auth_service"],
    )
