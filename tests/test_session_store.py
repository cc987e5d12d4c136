"""Tests for session transitions, persistence and teardown."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from authcore.config import AppConfig
from authcore.errors import ClassificationAmbiguous, NetworkUnavailable
from authcore.models.auth_models import AuthErrorCode, PersistedSession, TokenPair
from authcore.models.enums import LoginClassification, SessionStatus
from authcore.models.user import User
from authcore.services import create_services
from authcore.services.cache_sync import PROFILE_KEY
from authcore.services.token_manager import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY
from authcore.session import SESSION_KEY

PHONE = "84987654321"
PASSWORD = "P@ssw0rd"
USER_PAYLOAD = {"id": "42", "phone_number": PHONE, "full_name": "Nguyen Van A"}


def _login_ok(make_response):
    return make_response(
        message="Login successful",
        access_token="access-1",
        refresh_token="refresh-1",
        user=USER_PAYLOAD,
    )


class TestHydrate:

    def test_restores_authenticated_session(self, core):
        core.store.set(ACCESS_TOKEN_KEY, "access-1")
        core.store.set(REFRESH_TOKEN_KEY, "refresh-1")
        core.store.set(
            SESSION_KEY,
            PersistedSession(user=User(id="42"), is_authenticated=True).model_dump_json(),
        )
        statuses = []
        core.session.subscribe(lambda snap: statuses.append(snap.status))

        snapshot = core.session.hydrate()

        assert snapshot.is_authenticated
        assert snapshot.user.id == "42"
        assert statuses == [SessionStatus.INITIALIZING, SessionStatus.AUTHENTICATED]

    def test_persisted_flag_without_token_is_discarded(self, core):
        core.store.set(
            SESSION_KEY,
            PersistedSession(user=User(id="42"), is_authenticated=True).model_dump_json(),
        )

        snapshot = core.session.hydrate()

        assert not snapshot.is_authenticated
        assert snapshot.user is None
        assert core.store.get(SESSION_KEY) is None

    def test_malformed_record_is_ignored(self, core):
        core.store.set(SESSION_KEY, "{not json")
        assert core.session.hydrate().status is SessionStatus.UNAUTHENTICATED


class TestLogin:

    @pytest.mark.asyncio
    async def test_authenticated_response_completes_login(self, core, make_response):
        core.api.login.return_value = _login_ok(make_response)

        result = await core.session.login(PHONE, PASSWORD)

        assert result.success
        assert result.classification is LoginClassification.AUTHENTICATED
        assert core.session.is_authenticated
        assert core.session.user.full_name == "Nguyen Van A"
        assert core.tokens.refresh_token == "refresh-1"
        assert PersistedSession.model_validate_json(core.store.get(SESSION_KEY)).is_authenticated
        assert core.cache_sync.get(PROFILE_KEY) == User.model_validate(USER_PAYLOAD)

    @pytest.mark.asyncio
    async def test_snapshot_versions_increase(self, core, make_response):
        core.api.login.return_value = _login_ok(make_response)
        versions = []
        core.session.subscribe(lambda snap: versions.append(snap.version))

        await core.session.login(PHONE, PASSWORD)

        assert versions == sorted(versions)
        assert len(set(versions)) == len(versions)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "flags, expected",
        [
            ({"is_new_device": True}, LoginClassification.NEW_DEVICE),
            ({"is_verified": False}, LoginClassification.UNVERIFIED),
        ],
    )
    async def test_verification_required_never_authenticates(self, core, make_response, flags, expected):
        core.api.login.return_value = make_response(
            access_token="access-1", refresh_token="refresh-1", **flags,
        )

        result = await core.session.login(PHONE, PASSWORD)

        assert result.classification is expected
        assert result.error_code is AuthErrorCode.VERIFICATION_REQUIRED
        assert not core.session.is_authenticated
        assert core.tokens.access_token is None
        assert core.tokens.refresh_token is None
        assert core.session.error is None

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, core, make_response):
        core.api.login.return_value = make_response(401, "Wrong password")

        result = await core.session.login(PHONE, "wrong-pass")

        assert result.error_code is AuthErrorCode.INVALID_CREDENTIALS
        assert core.session.error == "Wrong password"
        assert core.session.status is SessionStatus.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_successful_wording_without_tokens_is_failure(self, core, make_response):
        core.api.login.return_value = make_response(message="Login successful")

        result = await core.session.login(PHONE, PASSWORD)

        assert result.classification is LoginClassification.FAILED
        assert result.error_code is AuthErrorCode.CLASSIFICATION_AMBIGUOUS
        assert core.session.error == "Login failed"

    @pytest.mark.asyncio
    async def test_network_failure(self, core):
        core.api.login.side_effect = NetworkUnavailable()

        result = await core.session.login(PHONE, PASSWORD)

        assert result.error_code is AuthErrorCode.NETWORK_ERROR
        assert not core.session.is_loading

    @pytest.mark.asyncio
    async def test_unexpected_transport_error_fails_cleanly(self, core):
        core.api.login.side_effect = RuntimeError("decoder blew up")

        result = await core.session.login(PHONE, PASSWORD)

        assert result.classification is LoginClassification.FAILED
        assert result.error_code is AuthErrorCode.UNKNOWN_ERROR
        assert core.session.status is SessionStatus.UNAUTHENTICATED
        assert not core.session.is_loading

    @pytest.mark.asyncio
    async def test_profile_failure_does_not_undo_login(self, core, make_response):
        core.api.login.return_value = _login_ok(make_response)
        core.api.get_my_data.side_effect = NetworkUnavailable()

        result = await core.session.login(PHONE, PASSWORD)

        assert result.success
        assert core.session.is_authenticated

    @pytest.mark.asyncio
    async def test_device_registrar_runs_once(self, config, store, key_store, api, make_response):
        registrar = AsyncMock()
        services = create_services(
            config=config, storage=store, key_store=key_store, api=api, device_registrar=registrar,
        )
        api.login.return_value = _login_ok(make_response)

        await services["session"].login(PHONE, PASSWORD)

        registrar.register_device.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_complete_verification_requires_access_token(self, core):
        with pytest.raises(ClassificationAmbiguous):
            await core.session.complete_verification(TokenPair(access_token=""))
        assert not core.session.is_authenticated


class TestLogout:

    @pytest.mark.asyncio
    async def test_clears_everything_even_when_backend_fails(self, core, make_response):
        core.api.login.return_value = _login_ok(make_response)
        await core.session.login(PHONE, PASSWORD)
        core.credential_cache.set(PHONE, PASSWORD)
        core.api.logout.side_effect = NetworkUnavailable()

        await core.session.logout()

        assert not core.session.is_authenticated
        assert core.session.user is None
        assert core.tokens.access_token is None
        assert core.tokens.refresh_token is None
        assert core.cache_sync.get(PROFILE_KEY) is None
        assert not core.credential_cache.has_entry
        assert core.store.get(SESSION_KEY) is None
        core.api.logout.assert_awaited_once_with("refresh-1", "access-1")

    @pytest.mark.asyncio
    async def test_hanging_backend_call_is_abandoned(self, store, key_store, api, make_response):
        config = AppConfig(API_BASE_URL="https://api.test", LOG_FILE="", LOGOUT_TIMEOUT_S=0.01)
        services = create_services(config=config, storage=store, key_store=key_store, api=api)
        api.login.return_value = _login_ok(make_response)

        async def _hang(refresh_token, access_token):
            await asyncio.sleep(10)

        api.logout.side_effect = _hang
        session = services["session"]
        await session.login(PHONE, PASSWORD)

        await session.logout()

        assert not session.is_authenticated

    @pytest.mark.asyncio
    async def test_late_login_response_after_logout_is_dropped(self, core, make_response):
        release = asyncio.Event()

        async def _slow_login(phone, password, account_kind):
            await release.wait()
            return _login_ok(make_response)

        core.api.login.side_effect = _slow_login
        pending = asyncio.ensure_future(core.session.login(PHONE, PASSWORD))
        await asyncio.sleep(0)
        assert core.session.status is SessionStatus.AUTHENTICATING

        await core.session.logout()
        release.set()
        result = await pending

        assert not result.success
        assert not core.session.is_authenticated
        assert not core.session.is_loading
        assert core.tokens.access_token is None
        assert core.store.get(SESSION_KEY) is None

    @pytest.mark.asyncio
    async def test_logout_without_tokens_skips_backend(self, core):
        await core.session.logout()
        core.api.logout.assert_not_awaited()


class TestForcedExpiry:

    @pytest.mark.asyncio
    async def test_rejected_refresh_logs_out_locally(self, core, make_response):
        core.api.login.return_value = _login_ok(make_response)
        await core.session.login(PHONE, PASSWORD)
        core.api.refresh.return_value = make_response(401, "Refresh token expired")

        result = await core.auth.refresh()

        assert result.error_code is AuthErrorCode.SESSION_EXPIRED
        assert not core.session.is_authenticated
        assert core.session.user is None
        assert core.tokens.access_token is None
        assert core.tokens.refresh_token is None
        assert core.session.error == "Your session has expired. Please sign in again."
        core.api.logout.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_network_failure_keeps_session(self, core, make_response):
        core.api.login.return_value = _login_ok(make_response)
        await core.session.login(PHONE, PASSWORD)
        core.api.refresh.side_effect = NetworkUnavailable()

        result = await core.auth.refresh()

        assert result.error_code is AuthErrorCode.NETWORK_ERROR
        assert core.session.is_authenticated


class TestMutations:

    @pytest.mark.asyncio
    async def test_set_user_only_while_authenticated(self, core, make_response):
        core.session.set_user(User(id="1"))
        assert core.session.user is None

        core.api.login.return_value = _login_ok(make_response)
        await core.session.login(PHONE, PASSWORD)
        core.session.set_user(User(id="42", full_name="Renamed"))
        assert core.session.user.full_name == "Renamed"

    @pytest.mark.asyncio
    async def test_clear_error(self, core, make_response):
        core.api.login.return_value = make_response(401, "Wrong password")
        await core.session.login(PHONE, "wrong-pass")

        core.session.clear_error()
        assert core.session.error is None
