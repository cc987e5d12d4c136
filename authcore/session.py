"""
Session Store.

Single source of truth for ``{user, is_authenticated, access_token,
refresh_token, is_loading, error}``.  State changes only through:

- ``hydrate()``               process start (``initializing``)
- ``login(...)``              ``authenticating`` -> classification
- ``complete_verification()`` the only way into ``authenticated``
- ``logout()``                local teardown, then best-effort backend call
- ``force_expire()``          local teardown only (refresh rejected)

plus the narrow ``set_user`` / ``clear_error`` mutations.  Every change
publishes an immutable, versioned ``SessionSnapshot`` to subscribers.

Usage::

    store = SessionStore(api=api, tokens=tokens, ...)
    store.subscribe(lambda snap: render(snap))
    store.hydrate()
    result = await store.login("84987654321", "secret")
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Protocol

from pydantic import ValidationError

from authcore.api_client import AuthApi
from authcore.errors import AuthCoreError, ClassificationAmbiguous, TokenExpired
from authcore.logger import StructuredLogger
from authcore.models.auth_models import (
    ApiResponse,
    AuthErrorCode,
    AuthResult,
    PersistedSession,
    SessionSnapshot,
    TokenPair,
)
from authcore.models.enums import AccountKind, LoginClassification, SessionStatus
from authcore.models.user import User
from authcore.services.base_service import BaseService
from authcore.services.cache_sync import ReactiveCacheSynchronizer, profile_fetcher
from authcore.services.credential_cache import CredentialCache
from authcore.services.device_trust import (
    DeviceTrustDetector,
    extract_token_pair,
    extract_user,
    sanitize_failure_message,
)
from authcore.services.secure_storage import KeyValueStore
from authcore.services.token_manager import TokenLifecycleManager
from authcore.utils.credentials import mask_phone

SESSION_KEY: str = "auth.session"

SnapshotListener = Callable[[SessionSnapshot], None]
LoginCall = Callable[[], Awaitable[ApiResponse]]


class DeviceRegistrar(Protocol):
    """Push/device registration collaborator; its result is not consumed."""

    async def register_device(self, user: Optional[User]) -> None: ...


class SessionStore(BaseService):
    """Owns the session record and its transitions.

    Parameters
    ----------
    api:
        Backend transport (login, logout, my-data).
    tokens:
        Token manager; the store subscribes to its forced-expiry signal.
    classifier:
        Device trust detector applied to every login response.
    credential_cache:
        Cleared on every teardown.
    cache_sync:
        Purged on teardown and before warming on authentication.
    storage:
        Durable store for the whitelisted session fields.
    logger:
        Structured logger.
    device_registrar:
        Optional collaborator invoked once per successful login.
    logout_timeout_s:
        Upper bound on the best-effort backend logout call.
    """

    def __init__(
        self,
        api: AuthApi,
        tokens: TokenLifecycleManager,
        classifier: DeviceTrustDetector,
        credential_cache: CredentialCache,
        cache_sync: ReactiveCacheSynchronizer,
        storage: KeyValueStore,
        logger: StructuredLogger,
        device_registrar: Optional[DeviceRegistrar] = None,
        logout_timeout_s: float = 5.0,
    ) -> None:
        super().__init__(logger)
        self._api: AuthApi = api
        self._tokens: TokenLifecycleManager = tokens
        self._classifier: DeviceTrustDetector = classifier
        self._credential_cache: CredentialCache = credential_cache
        self._cache_sync: ReactiveCacheSynchronizer = cache_sync
        self._storage: KeyValueStore = storage
        self._device_registrar: Optional[DeviceRegistrar] = device_registrar
        self._logout_timeout_s: float = logout_timeout_s
        self._load_profile = profile_fetcher(api)

        self._status: SessionStatus = SessionStatus.UNAUTHENTICATED
        self._user: Optional[User] = None
        self._is_loading: bool = False
        self._error: Optional[str] = None
        self._version: int = 0
        # Bumped on every authentication and teardown; post-auth hooks
        # that finish under an older epoch leave the session alone.
        self._epoch: int = 0
        self._listeners: list[SnapshotListener] = []

        tokens.add_expiry_listener(self._on_tokens_expired)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def is_authenticated(self) -> bool:
        return self._status is SessionStatus.AUTHENTICATED and self._tokens.access_token is not None

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def user(self) -> Optional[User]:
        return self._user

    @property
    def access_token(self) -> Optional[str]:
        return self._tokens.access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._tokens.refresh_token

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            status=self._status,
            is_authenticated=self.is_authenticated,
            user=self._user,
            is_loading=self._is_loading,
            error=self._error,
            version=self._version,
        )

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register *listener* for every published snapshot; returns an unsubscribe."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def hydrate(self) -> SessionSnapshot:
        """Restore the persisted session at process start."""
        self._transition(status=SessionStatus.INITIALIZING, is_loading=True)
        self._tokens.load()

        persisted: Optional[PersistedSession] = None
        raw = self._storage.get(SESSION_KEY)
        if raw:
            try:
                persisted = PersistedSession.model_validate_json(raw)
            except ValidationError as exc:
                self._logger.warning("Persisted session is malformed; discarding: %s", exc)

        if persisted is not None and persisted.is_authenticated and self._tokens.access_token:
            self._epoch += 1
            self._transition(
                status=SessionStatus.AUTHENTICATED,
                user=persisted.user,
                is_loading=False,
                error=None,
            )
            self._logger.info("Session restored from storage.")
        else:
            self._tokens.clear_tokens()
            self._storage.remove(SESSION_KEY)
            self._transition(
                status=SessionStatus.UNAUTHENTICATED,
                user=None,
                is_loading=False,
                error=None,
            )
        return self.snapshot

    async def login(
        self,
        phone: str,
        password: str,
        account_kind: AccountKind = AccountKind.USER,
    ) -> AuthResult:
        """Submit canonical credentials and act on the classification.

        Only ``AUTHENTICATED`` reaches the authenticated state; the other
        classifications leave the store unauthenticated with no tokens
        and are returned for routing.
        """
        return await self.submit_login(
            lambda: self._api.login(phone, password, account_kind),
            subject=mask_phone(phone),
        )

    async def submit_login(self, call: LoginCall, subject: str) -> AuthResult:
        """Run any login-shaped backend *call* through classification.

        Shared by password and biometric login so both obey the same
        transition rules.  A response that arrives after a logout or
        another completed login is dropped without touching the state.
        """
        self._transition(status=SessionStatus.AUTHENTICATING, is_loading=True, error=None)
        epoch = self._epoch
        try:
            response = await call()
        except AuthCoreError as exc:
            if epoch != self._epoch:
                return self._stale_login(subject)
            self._reset_local(error=exc.user_message)
            return AuthResult(
                success=False,
                classification=LoginClassification.FAILED,
                error_code=exc.error_code,
                error_message=exc.user_message,
            )
        except Exception:
            self._logger.error("Login call for %s raised unexpectedly.", subject, exc_info=True)
            if epoch != self._epoch:
                return self._stale_login(subject)
            self._reset_local(error=AuthCoreError.default_message)
            return AuthResult(
                success=False,
                classification=LoginClassification.FAILED,
                error_code=AuthErrorCode.UNKNOWN_ERROR,
                error_message=AuthCoreError.default_message,
            )

        if epoch != self._epoch:
            return self._stale_login(subject)

        classification = self._classifier.classify(response)

        if classification is LoginClassification.AUTHENTICATED:
            pair = extract_token_pair(response)
            if pair is None:
                ambiguous = ClassificationAmbiguous()
                self._reset_local(error=ambiguous.user_message)
                return AuthResult(
                    success=False,
                    classification=LoginClassification.FAILED,
                    error_code=ambiguous.error_code,
                    error_message=ambiguous.user_message,
                )
            await self.complete_verification(pair, extract_user(response))
            return AuthResult(success=True, classification=classification, user=self._user)

        if classification in (LoginClassification.NEW_DEVICE, LoginClassification.UNVERIFIED):
            self._reset_local(error=None)
            self._logger.info(
                "Login for %s requires verification (%s).",
                subject,
                classification,
                extra={"event": "VERIFICATION_REQUIRED"},
            )
            return AuthResult(
                success=False,
                classification=classification,
                error_code=AuthErrorCode.VERIFICATION_REQUIRED,
                error_message=response.message,
            )

        message = sanitize_failure_message(response.message)
        self._reset_local(error=message)
        self._logger.warning(
            "Login rejected for %s (status %d).",
            subject,
            response.status_code,
            extra={"event": "LOGIN_FAILED"},
        )
        if response.success:
            error_code = AuthErrorCode.CLASSIFICATION_AMBIGUOUS
        elif 400 <= response.status_code < 500:
            error_code = AuthErrorCode.INVALID_CREDENTIALS
        else:
            error_code = AuthErrorCode.UNKNOWN_ERROR
        return AuthResult(
            success=False,
            classification=LoginClassification.FAILED,
            error_code=error_code,
            error_message=message,
        )

    async def complete_verification(self, tokens: TokenPair, user: Optional[User] = None) -> None:
        """Install *tokens* and enter ``authenticated``.

        The reactive cache is purged first and then warmed with the
        profile; device registration runs afterwards.  Failures of those
        hooks are logged and never undo the authentication.
        """
        if not tokens.access_token:
            raise ClassificationAmbiguous()

        self._cache_sync.purge()
        self._tokens.clear_tokens()
        self._tokens.set_tokens(tokens.access_token, tokens.refresh_token)
        self._epoch += 1
        epoch = self._epoch
        self._transition(
            status=SessionStatus.AUTHENTICATED,
            user=user,
            is_loading=False,
            error=None,
        )
        self._persist()
        self._audit("LOGIN", user.id if user is not None else "unknown")

        await self._after_authenticated(epoch)

    async def logout(self) -> None:
        """Tear down locally, then tell the backend on a best-effort basis.

        Never raises: a failed or timed-out backend call still leaves the
        device logged out.
        """
        refresh_token = self._tokens.refresh_token
        access_token = self._tokens.access_token
        subject = self._user.id if self._user is not None else "unknown"

        self._reset_local(error=None)
        self._audit("LOGOUT", subject)

        if refresh_token is None and access_token is None:
            return
        try:
            await asyncio.wait_for(
                self._api.logout(refresh_token, access_token),
                timeout=self._logout_timeout_s,
            )
        except Exception as exc:
            self._logger.warning("Server-side logout failed for %s: %s", subject, exc)

    def force_expire(self, reason: str = "forced") -> None:
        """Local-only logout used when the refresh token is rejected."""
        subject = self._user.id if self._user is not None else "unknown"
        self._reset_local(error=TokenExpired.default_message)
        self._audit("SESSION_EXPIRED", subject, {"reason": reason})

    def set_user(self, user: User) -> None:
        """Replace the profile of the signed-in user."""
        if self._status is not SessionStatus.AUTHENTICATED:
            return
        self._transition(user=user)
        self._persist()

    def clear_error(self) -> None:
        if self._error is not None:
            self._transition(error=None)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _after_authenticated(self, epoch: int) -> None:
        try:
            profile = await self._cache_sync.warm_profile(self._load_profile)
        except AuthCoreError as exc:
            self._logger.warning("Profile warm-up failed: %s", exc.user_message)
        else:
            if epoch == self._epoch and (self._user is None or self._user.id == profile.id):
                self.set_user(profile)

        if self._device_registrar is not None and epoch == self._epoch:
            try:
                await self._device_registrar.register_device(self._user)
            except Exception:
                self._logger.error("Device registration failed.", exc_info=True)

    def _stale_login(self, subject: str) -> AuthResult:
        self._logger.info(
            "Discarding login result for %s; the session changed while it was in flight.",
            subject,
        )
        return AuthResult(
            success=False,
            classification=LoginClassification.FAILED,
            error_code=AuthErrorCode.UNKNOWN_ERROR,
            error_message="Sign-in was interrupted. Please try again.",
        )

    def _on_tokens_expired(self, reason: str) -> None:
        if self._status is not SessionStatus.UNAUTHENTICATED or self._user is not None:
            self.force_expire(reason)

    def _reset_local(self, error: Optional[str]) -> None:
        self._tokens.clear_tokens()
        self._credential_cache.clear()
        self._cache_sync.purge()
        self._storage.remove(SESSION_KEY)
        self._epoch += 1
        self._transition(
            status=SessionStatus.UNAUTHENTICATED,
            user=None,
            is_loading=False,
            error=error,
        )

    def _persist(self) -> None:
        record = PersistedSession(user=self._user, is_authenticated=self.is_authenticated)
        self._storage.set(SESSION_KEY, record.model_dump_json())

    _UNSET: object = object()

    def _transition(
        self,
        status: Optional[SessionStatus] = None,
        user: object = _UNSET,
        is_loading: Optional[bool] = None,
        error: object = _UNSET,
    ) -> None:
        if status is not None:
            self._status = status
        if user is not self._UNSET:
            self._user = user if isinstance(user, User) else None
        if is_loading is not None:
            self._is_loading = is_loading
        if error is not self._UNSET:
            self._error = error if isinstance(error, str) else None
        self._version += 1

        snapshot = self.snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                self._logger.error("Session listener raised.", exc_info=True)
