"""
Backend Transport.

``AuthApi`` is the contract the session core consumes; ``HttpAuthApi``
implements it over ``httpx.AsyncClient``.  Request failures (DNS, connect, timeout,
undecodable body) raise ``NetworkUnavailable``; HTTP error statuses come
back as a non-success ``ApiResponse`` so that callers classify them.

Authorized calls carry ``Authorization: Bearer <access token>`` from a
bound ``TokenSource``, renewed first when it is close to expiry.  A 401
on an authorized call triggers one (coalesced) refresh through that
source and a single retry.
"""

from __future__ import annotations

from typing import Optional, Protocol

import httpx
from pydantic import JsonValue

from authcore.config import AppConfig
from authcore.errors import AuthCoreError, NetworkUnavailable
from authcore.logger import StructuredLogger
from authcore.models.auth_models import ApiResponse
from authcore.models.enums import AccountKind, FlowKind
from authcore.utils.string_helpers import normalize_keys


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

_AUTH: str = "/iam/v1/auth"

LOGIN_PATHS: dict[AccountKind, str] = {
    AccountKind.USER: f"{_AUTH}/login",
    AccountKind.STORE: f"{_AUTH}/login/store",
}
REGISTER_PATHS: dict[AccountKind, str] = {
    AccountKind.USER: f"{_AUTH}/register",
    AccountKind.STORE: f"{_AUTH}/register/store",
}
BIOMETRIC_LOGIN_PATHS: dict[AccountKind, str] = {
    AccountKind.USER: f"{_AUTH}/login-biometric",
    AccountKind.STORE: f"{_AUTH}/login-biometric/store",
}
VERIFY_OTP_PATHS: dict[FlowKind, str] = {
    FlowKind.REGISTER: f"{_AUTH}/verify-otp-register",
    FlowKind.NEW_DEVICE: f"{_AUTH}/verify-login-new-device",
    FlowKind.FORGOT_PASSWORD: f"{_AUTH}/verify-otp-forgot-password",
    FlowKind.GENERIC: f"{_AUTH}/verify-otp",
}
RESEND_OTP_PATHS: dict[FlowKind, str] = {
    FlowKind.REGISTER: f"{_AUTH}/resend-otp-register",
    FlowKind.NEW_DEVICE: f"{_AUTH}/resend-otp-login-new-device",
    FlowKind.FORGOT_PASSWORD: f"{_AUTH}/resend-otp-forgot-password",
}
FORGOT_PASSWORD_PATH: str = f"{_AUTH}/forgot-password"
RESET_PASSWORD_PATH: str = f"{_AUTH}/reset-password"
REFRESH_PATH: str = f"{_AUTH}/refresh-token"
LOGOUT_PATH: str = f"{_AUTH}/logout"
MY_DATA_PATH: str = "/iam/v1/users/my-data"
BIOMETRIC_STATUS_PATH: str = "/iam/v1/devices/biometric/status"
BIOMETRIC_ENROLL_PATH: str = "/iam/v1/devices/biometric/enroll"
BIOMETRIC_REMOVE_PATH: str = "/iam/v1/devices/biometric/remove"

RESEND_UNSUPPORTED_MESSAGE: str = "Resend is not supported for this verification."


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------

class TokenSource(Protocol):
    """What the transport needs from the token manager."""

    @property
    def access_token(self) -> Optional[str]: ...

    async def refresh(self) -> str: ...

    async def ensure_valid_token(self) -> Optional[str]: ...


class AuthApi(Protocol):
    """Backend calls consumed by the session core."""

    async def login(
        self, phone: str, password: str, account_kind: AccountKind = AccountKind.USER,
    ) -> ApiResponse: ...

    async def register(
        self,
        phone: str,
        password: str,
        confirm_password: str,
        referral_code: Optional[str] = None,
        account_kind: AccountKind = AccountKind.USER,
    ) -> ApiResponse: ...

    async def verify_otp(self, flow: FlowKind, phone: str, code: str) -> ApiResponse: ...

    async def resend_otp(self, flow: FlowKind, phone: str) -> ApiResponse: ...

    async def forgot_password(self, phone: str) -> ApiResponse: ...

    async def reset_password(
        self, reset_token: str, new_password: str, confirm_password: str,
    ) -> ApiResponse: ...

    async def refresh(self, refresh_token: str) -> ApiResponse: ...

    async def logout(
        self, refresh_token: Optional[str], access_token: Optional[str],
    ) -> ApiResponse: ...

    async def get_my_data(self) -> ApiResponse: ...

    async def biometric_status(self) -> ApiResponse: ...

    async def enroll_biometric(self, public_key: str, password: str) -> ApiResponse: ...

    async def remove_biometric(self) -> ApiResponse: ...

    async def biometric_login(
        self,
        phone: str,
        payload: str,
        signature: str,
        account_kind: AccountKind = AccountKind.USER,
    ) -> ApiResponse: ...


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def parse_response(response: httpx.Response) -> ApiResponse:
    """Build an ``ApiResponse`` from an HTTP response.

    Keys are normalised to snake_case.  ``success`` is the body's own
    flag when present and boolean, otherwise "status < 400"; any status
    >= 400 forces ``False``.
    """
    try:
        payload: JsonValue = response.json()
    except ValueError:
        payload = None

    body = normalize_keys(payload) if isinstance(payload, dict) else {}
    raw_data = body.get("data")
    data: dict[str, JsonValue] = raw_data if isinstance(raw_data, dict) else {}

    flag = body.get("success")
    success = response.status_code < 400 and (flag if isinstance(flag, bool) else True)

    message: Optional[str] = None
    for candidate in (body.get("message"), data.get("message")):
        if isinstance(candidate, str) and candidate:
            message = candidate
            break

    return ApiResponse(
        success=success,
        status_code=response.status_code,
        message=message,
        data=data,
        body=body,
    )


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------

class HttpAuthApi:
    """``AuthApi`` over ``httpx.AsyncClient``.

    Parameters
    ----------
    config:
        Supplies base URL, timeout and the ``x-app-id`` header value.
    logger:
        Structured logger; request bodies are never logged.
    client:
        Pre-built client (tests pass one with ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: AppConfig,
        logger: StructuredLogger,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._config: AppConfig = config
        self._logger: StructuredLogger = logger
        self._token_source: Optional[TokenSource] = None
        self._client: Optional[httpx.AsyncClient] = client
        if self._client is None and config.API_BASE_URL:
            self._client = httpx.AsyncClient(
                base_url=config.API_BASE_URL,
                timeout=httpx.Timeout(config.API_TIMEOUT_S),
                headers={"x-app-id": config.API_APP_ID},
            )

    def bind_token_source(self, source: TokenSource) -> None:
        """Attach the token manager after both objects exist."""
        self._token_source = source

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Credential endpoints
    # ------------------------------------------------------------------

    async def login(
        self, phone: str, password: str, account_kind: AccountKind = AccountKind.USER,
    ) -> ApiResponse:
        return await self._request(
            "POST",
            LOGIN_PATHS[account_kind],
            json={"phone_number": phone, "password": password},
        )

    async def register(
        self,
        phone: str,
        password: str,
        confirm_password: str,
        referral_code: Optional[str] = None,
        account_kind: AccountKind = AccountKind.USER,
    ) -> ApiResponse:
        body: dict[str, JsonValue] = {
            "phone_number": phone,
            "password": password,
            "confirm_password": confirm_password,
        }
        if referral_code:
            body["referral_code"] = referral_code
        return await self._request("POST", REGISTER_PATHS[account_kind], json=body)

    async def forgot_password(self, phone: str) -> ApiResponse:
        return await self._request(
            "POST", FORGOT_PASSWORD_PATH, json={"phone_number": phone},
        )

    async def reset_password(
        self, reset_token: str, new_password: str, confirm_password: str,
    ) -> ApiResponse:
        return await self._request(
            "POST",
            RESET_PASSWORD_PATH,
            params={"token": reset_token},
            json={"new_password": new_password, "confirm_password": confirm_password},
        )

    # ------------------------------------------------------------------
    # One-time codes
    # ------------------------------------------------------------------

    async def verify_otp(self, flow: FlowKind, phone: str, code: str) -> ApiResponse:
        # The generic endpoint names the field differently.
        code_field = "otp_code" if flow is FlowKind.GENERIC else "otp"
        return await self._request(
            "POST",
            VERIFY_OTP_PATHS[flow],
            json={"phone_number": phone, code_field: code},
            authorized=flow is FlowKind.GENERIC,
        )

    async def resend_otp(self, flow: FlowKind, phone: str) -> ApiResponse:
        path = RESEND_OTP_PATHS.get(flow)
        if path is None:
            return ApiResponse(success=False, status_code=0, message=RESEND_UNSUPPORTED_MESSAGE)
        return await self._request("POST", path, json={"phone_number": phone})

    # ------------------------------------------------------------------
    # Tokens and session
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: str) -> ApiResponse:
        return await self._request(
            "POST", REFRESH_PATH, json={"refresh_token": refresh_token},
        )

    async def logout(
        self, refresh_token: Optional[str], access_token: Optional[str],
    ) -> ApiResponse:
        body: dict[str, JsonValue] = {"refresh_token": refresh_token} if refresh_token else {}
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        return await self._request("POST", LOGOUT_PATH, json=body, headers=headers)

    async def get_my_data(self) -> ApiResponse:
        return await self._request("GET", MY_DATA_PATH, authorized=True)

    # ------------------------------------------------------------------
    # Biometric
    # ------------------------------------------------------------------

    async def biometric_status(self) -> ApiResponse:
        return await self._request("GET", BIOMETRIC_STATUS_PATH, authorized=True)

    async def enroll_biometric(self, public_key: str, password: str) -> ApiResponse:
        return await self._request(
            "PATCH",
            BIOMETRIC_ENROLL_PATH,
            json={"old_password": password, "biometric_key": public_key},
            authorized=True,
        )

    async def remove_biometric(self) -> ApiResponse:
        return await self._request("PATCH", BIOMETRIC_REMOVE_PATH, authorized=True)

    async def biometric_login(
        self,
        phone: str,
        payload: str,
        signature: str,
        account_kind: AccountKind = AccountKind.USER,
    ) -> ApiResponse:
        return await self._request(
            "POST",
            BIOMETRIC_LOGIN_PATHS[account_kind],
            json={"phone_number": phone, "payload": payload, "signature": signature},
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, JsonValue]] = None,
        params: Optional[dict[str, str]] = None,
        headers: Optional[dict[str, str]] = None,
        authorized: bool = False,
    ) -> ApiResponse:
        response = await self._send(method, path, json, params, headers, authorized)

        if response.status_code == 401 and authorized and self._token_source is not None:
            try:
                await self._token_source.refresh()
            except AuthCoreError as exc:
                self._logger.debug(
                    "Refresh after 401 on %s failed (%s); returning original response.",
                    path,
                    exc.error_code,
                )
                return parse_response(response)
            response = await self._send(method, path, json, params, headers, authorized)

        return parse_response(response)

    async def _authorization_token(self, path: str) -> Optional[str]:
        """Held access token, renewed first when it is close to expiry.

        A failed proactive refresh falls back to the held token; the 401
        path decides what happens next.
        """
        try:
            return await self._token_source.ensure_valid_token()
        except AuthCoreError as exc:
            self._logger.debug(
                "Proactive refresh before %s failed (%s); using held token.",
                path,
                exc.error_code,
            )
            return self._token_source.access_token

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, JsonValue]],
        params: Optional[dict[str, str]],
        headers: Optional[dict[str, str]],
        authorized: bool,
    ) -> httpx.Response:
        if self._client is None:
            raise NetworkUnavailable("The server address is not configured.")

        request_headers: dict[str, str] = dict(headers or {})
        if authorized and self._token_source is not None:
            token = await self._authorization_token(path)
            if token:
                request_headers["Authorization"] = f"Bearer {token}"

        try:
            return await self._client.request(
                method, path, json=json, params=params, headers=request_headers,
            )
        except httpx.TimeoutException as exc:
            self._logger.warning("%s %s timed out: %s", method, path, exc)
            raise NetworkUnavailable("The server took too long to respond.") from exc
        except httpx.RequestError as exc:
            self._logger.warning("%s %s failed: %s", method, path, exc)
            raise NetworkUnavailable() from exc
