"""Tests for biometric enrollment, removal and signature login."""

import base64
import json

import pytest
from Crypto.Hash import SHA256
from Crypto.PublicKey import ECC
from Crypto.Signature import DSS

from authcore.errors import BiometricCancelled, BiometricUnavailable, NetworkUnavailable
from authcore.models.auth_models import AuthErrorCode
from authcore.models.biometric_models import BiometricStatusRecord
from authcore.models.enums import AccountKind, BiometryKind
from authcore.services.biometric_service import KEY_OWNER_KEY, status_key
from authcore.services.key_store import SoftwareKeyStore

PHONE = "84987654321"
OTHER_PHONE = "84911111111"
PASSWORD = "P@ssw0rd"
USER_PAYLOAD = {"id": "42", "phone_number": PHONE, "full_name": "Nguyen Van A"}


def verify_signature(public_key_b64, payload, signature_b64):
    key = ECC.import_key(base64.b64decode(public_key_b64))
    digest = SHA256.new(payload.encode("utf-8"))
    try:
        DSS.new(key, "fips-186-3").verify(digest, base64.b64decode(signature_b64))
    except ValueError:
        return False
    return True


async def _sign_in(core, make_response):
    core.api.login.return_value = make_response(
        access_token="access-1", refresh_token="refresh-1", user=USER_PAYLOAD,
    )
    await core.auth.login(PHONE, PASSWORD)


async def _enroll(core, make_response):
    await _sign_in(core, make_response)
    core.api.enroll_biometric.return_value = make_response(message="Biometric enabled")
    return await core.auth.enroll_biometric(PASSWORD)


class TestEnroll:

    @pytest.mark.asyncio
    async def test_success_registers_public_key(self, core, make_response):
        result = await _enroll(core, make_response)

        assert result.success
        core.api.enroll_biometric.assert_awaited_once_with("public-key-1", PASSWORD)
        assert core.store.get(KEY_OWNER_KEY) == PHONE
        record = BiometricStatusRecord.model_validate_json(core.store.get(status_key(PHONE)))
        assert record.public_key_registered
        assert record.biometry_kind is BiometryKind.FACE_ID

    @pytest.mark.asyncio
    async def test_requires_session(self, core):
        result = await core.auth.enroll_biometric(PASSWORD)

        assert result.error_code is AuthErrorCode.SESSION_EXPIRED
        assert core.key_store.created == 0

    @pytest.mark.asyncio
    async def test_rejected_password_discards_new_key(self, core, make_response):
        await _sign_in(core, make_response)
        core.api.enroll_biometric.return_value = make_response(400, "Wrong password")

        result = await core.auth.enroll_biometric("wrong-pass")

        assert result.error_code is AuthErrorCode.INVALID_CREDENTIALS
        assert result.error_message == "Wrong password"
        assert not core.key_store.has_pair
        assert core.store.get(KEY_OWNER_KEY) is None
        assert core.store.get(status_key(PHONE)) is None

    @pytest.mark.asyncio
    async def test_network_failure_discards_new_key(self, core, make_response):
        await _sign_in(core, make_response)
        core.api.enroll_biometric.side_effect = NetworkUnavailable()

        result = await core.auth.enroll_biometric(PASSWORD)

        assert result.error_code is AuthErrorCode.NETWORK_ERROR
        assert not core.key_store.has_pair

    @pytest.mark.asyncio
    async def test_no_sensor(self, core, make_response):
        await _sign_in(core, make_response)
        core.key_store.available = False

        result = await core.auth.enroll_biometric(PASSWORD)

        assert result.error_code is AuthErrorCode.BIOMETRIC_UNAVAILABLE
        core.api.enroll_biometric.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_enrolling_rotates_previous_owner_out(self, core, make_response):
        core.store.set(KEY_OWNER_KEY, OTHER_PHONE)
        core.store.set(
            status_key(OTHER_PHONE),
            BiometricStatusRecord(public_key_registered=True).model_dump_json(),
        )
        core.key_store.has_pair = True

        await _enroll(core, make_response)

        assert core.key_store.deleted >= 1
        assert core.store.get(KEY_OWNER_KEY) == PHONE
        assert core.store.get(status_key(OTHER_PHONE)) is None
        assert not (await core.biometric.availability(OTHER_PHONE)).can_login


class TestRemove:

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, core, make_response):
        await _enroll(core, make_response)

        first = await core.auth.remove_biometric()
        second = await core.auth.remove_biometric()

        assert first.success and second.success
        assert not core.key_store.has_pair
        assert core.store.get(KEY_OWNER_KEY) is None
        assert core.store.get(status_key(PHONE)) is None

    @pytest.mark.asyncio
    async def test_backend_failure_is_not_reported(self, core, make_response):
        await _enroll(core, make_response)
        core.api.remove_biometric.side_effect = NetworkUnavailable()

        result = await core.auth.remove_biometric()

        assert result.success
        assert not core.key_store.has_pair

    @pytest.mark.asyncio
    async def test_signed_out_removal_skips_backend(self, core, make_response):
        await _enroll(core, make_response)
        await core.auth.logout()

        result = await core.auth.remove_biometric(PHONE)

        assert result.success
        core.api.remove_biometric.assert_not_awaited()
        assert not core.key_store.has_pair

    @pytest.mark.asyncio
    async def test_removing_other_phone_keeps_device_key(self, core, make_response):
        await _enroll(core, make_response)

        await core.biometric.remove(OTHER_PHONE)

        assert core.key_store.has_pair
        assert (await core.biometric.availability(PHONE)).can_login


class TestAvailability:

    @pytest.mark.asyncio
    async def test_follows_active_phone(self, core, make_response):
        await _enroll(core, make_response)

        mine = await core.auth.biometric_availability("0987654321")
        other = await core.auth.biometric_availability("0911111111")

        assert mine.can_login
        assert mine.biometry_kind is BiometryKind.FACE_ID
        assert not other.can_login
        assert not other.has_key_pair

    @pytest.mark.asyncio
    async def test_no_sensor_reports_none(self, core):
        core.key_store.available = False

        enrollment = await core.biometric.availability(PHONE)

        assert enrollment.biometry_kind is BiometryKind.NONE
        assert not enrollment.can_login

    @pytest.mark.asyncio
    async def test_server_status_updates_record(self, core, make_response):
        core.api.biometric_status.return_value = make_response(status=True)

        assert await core.biometric.sync_server_status(PHONE) is True
        record = BiometricStatusRecord.model_validate_json(core.store.get(status_key(PHONE)))
        assert record.public_key_registered

    @pytest.mark.asyncio
    async def test_server_status_unreachable(self, core):
        core.api.biometric_status.side_effect = NetworkUnavailable()

        assert await core.biometric.sync_server_status(PHONE) is None
        assert core.store.get(status_key(PHONE)) is None


class TestBiometricLogin:

    @pytest.mark.asyncio
    async def test_signed_payload_authenticates(self, core, make_response):
        await _enroll(core, make_response)
        await core.auth.logout()
        core.api.biometric_login.return_value = make_response(
            access_token="access-2", refresh_token="refresh-2", user=USER_PAYLOAD,
        )

        result = await core.auth.biometric_login("0987654321")

        assert result.success
        assert core.auth.snapshot.is_authenticated
        phone, payload, signature, kind = core.api.biometric_login.await_args.args
        assert (phone, signature, kind) == (PHONE, "signature", AccountKind.USER)
        body = json.loads(payload)
        assert body["phone_number"] == PHONE
        assert len(body["nonce"]) == 32
        assert isinstance(body["timestamp"], int)

    @pytest.mark.asyncio
    async def test_cancelled_prompt_is_silent(self, core, make_response):
        await _enroll(core, make_response)
        await core.auth.logout()
        before = core.auth.snapshot
        core.key_store.cancel_prompt = True

        result = await core.auth.biometric_login(PHONE)

        assert result.cancelled
        assert not result.success
        assert result.error_message is None
        assert core.auth.snapshot.version == before.version
        core.api.biometric_login.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_signature(self, core, make_response):
        await _enroll(core, make_response)
        await core.auth.logout()
        core.api.biometric_login.return_value = make_response(401, "Invalid signature")

        result = await core.auth.biometric_login(PHONE)

        assert result.error_code is AuthErrorCode.INVALID_CREDENTIALS
        assert not core.auth.snapshot.is_authenticated

    @pytest.mark.asyncio
    async def test_not_enrolled(self, core):
        result = await core.auth.biometric_login(PHONE)

        assert result.error_code is AuthErrorCode.BIOMETRIC_UNAVAILABLE
        assert core.key_store.signed_payloads == []


class TestSoftwareKeyStore:

    @staticmethod
    def _store(answer=True, **kwargs):
        async def _prompt(message):
            return answer

        return SoftwareKeyStore(prompt=_prompt, **kwargs)

    @pytest.mark.asyncio
    async def test_signature_verifies_against_public_key(self):
        store = self._store()
        public_key = await store.create_key_pair()

        signature = await store.sign('{"phone_number":"84987654321"}', "Sign in")

        assert verify_signature(public_key, '{"phone_number":"84987654321"}', signature)
        assert not verify_signature(public_key, '{"phone_number":"84900000000"}', signature)

    @pytest.mark.asyncio
    async def test_rotation_invalidates_old_signatures(self):
        store = self._store()
        old_key = await store.create_key_pair()
        await store.create_key_pair()

        signature = await store.sign("payload", "Sign in")

        assert not verify_signature(old_key, "payload", signature)

    @pytest.mark.asyncio
    async def test_dismissed_prompt(self):
        store = self._store(answer=False)
        await store.create_key_pair()

        with pytest.raises(BiometricCancelled):
            await store.sign("payload", "Sign in")

    @pytest.mark.asyncio
    async def test_sign_without_key(self):
        store = self._store()
        with pytest.raises(BiometricUnavailable):
            await store.sign("payload", "Sign in")

    @pytest.mark.asyncio
    async def test_delete_reports_previous_state(self):
        store = self._store()
        await store.create_key_pair()

        assert await store.delete_key_pair() is True
        assert await store.delete_key_pair() is False
        assert not await store.key_pair_exists()

    @pytest.mark.asyncio
    async def test_unavailable_sensor(self):
        store = self._store(sensor_available=False)

        sensor = await store.is_sensor_available()

        assert not sensor.available
        assert sensor.kind is BiometryKind.NONE
        with pytest.raises(BiometricUnavailable):
            await store.create_key_pair()

    @pytest.mark.asyncio
    async def test_persisted_key_survives_restart(self, store):
        first = self._store(storage=store)
        public_key = await first.create_key_pair()
        assert "PRIVATE KEY" in store.get(SoftwareKeyStore.PRIVATE_KEY_KEY)

        restarted = self._store(storage=store)
        assert await restarted.key_pair_exists()
        signature = await restarted.sign("payload", "Sign in")
        assert verify_signature(public_key, "payload", signature)

        assert await restarted.delete_key_pair() is True
        assert store.get(SoftwareKeyStore.PRIVATE_KEY_KEY) is None
        assert not await self._store(storage=store).key_pair_exists()
