"""
Token Lifecycle Manager.

Owns the access/refresh token pair, persists it, and renews the access
token.  Together with the session store it is the only writer of token
state.

Refresh rules
-------------
- Concurrent ``refresh()`` calls collapse into one in-flight request;
  every caller awaits the same result.
- A success replaces the access token only.
- An authorization failure (401/403, or revoked/expired/invalid wording)
  discards the whole pair and notifies expiry listeners; the session
  store registers ``force_expire`` here.
- Transport failures keep the pair and count towards a circuit breaker
  that throttles further attempts; the breaker never logs anyone out.
"""

from __future__ import annotations

import asyncio
import base64
import json
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from authcore.api_client import AuthApi
from authcore.config import AppConfig
from authcore.errors import ClassificationAmbiguous, NetworkUnavailable, TokenExpired
from authcore.logger import StructuredLogger
from authcore.models.auth_models import ApiResponse, TokenValidation
from authcore.services.base_service import BaseService
from authcore.services.secure_storage import KeyValueStore
from authcore.utils.string_helpers import contains_any

ACCESS_TOKEN_KEY: str = "auth.access_token"
REFRESH_TOKEN_KEY: str = "auth.refresh_token"

_AUTH_FAILURE_STATUSES: frozenset[int] = frozenset({401, 403})
_AUTH_FAILURE_HINTS: tuple[str, ...] = (
    "revoked",
    "expir",
    "invalid",
    "unauthorized",
    "thu hồi",
    "hết hạn",
    "không hợp lệ",
    "token làm mới",
)

ExpiryListener = Callable[[str], None]


class RefreshCircuitBreaker:
    """Consecutive-failure breaker for refresh attempts.

    Opens after ``max_failures`` consecutive failures and stays open for
    ``reset_after_s``; independently, no attempt is made within
    ``cooldown_s`` of the previous failure.
    """

    def __init__(
        self,
        max_failures: int,
        reset_after_s: float,
        cooldown_s: float,
        clock: Callable[[], float],
    ) -> None:
        self._max_failures = max_failures
        self._reset_after_s = reset_after_s
        self._cooldown_s = cooldown_s
        self._clock = clock
        self.failures: int = 0
        self._last_failure_at: Optional[float] = None
        self._opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self._opened_at is not None

    def blocked_reason(self) -> Optional[str]:
        """Return ``"open"`` or ``"cooldown"`` when an attempt must not run."""
        now = self._clock()
        if self._opened_at is not None:
            if now - self._opened_at < self._reset_after_s:
                return "open"
            self.reset()
        if self._last_failure_at is not None and now - self._last_failure_at < self._cooldown_s:
            return "cooldown"
        return None

    def record_failure(self) -> None:
        now = self._clock()
        self.failures += 1
        self._last_failure_at = now
        if self.failures >= self._max_failures:
            self._opened_at = now

    def reset(self) -> None:
        self.failures = 0
        self._last_failure_at = None
        self._opened_at = None


class TokenLifecycleManager(BaseService):
    """Holds, persists and refreshes the token pair.

    Parameters
    ----------
    api:
        Backend transport used for ``refresh``.
    storage:
        Durable key-value store for the pair.
    config:
        Refresh threshold and breaker settings.
    logger:
        Structured logger.  Token values are never logged.
    clock:
        Monotonic clock for the breaker.
    wall_clock:
        Epoch-seconds clock compared against the JWT ``exp`` claim.
    """

    def __init__(
        self,
        api: AuthApi,
        storage: KeyValueStore,
        config: AppConfig,
        logger: StructuredLogger,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(logger)
        self._api: AuthApi = api
        self._storage: KeyValueStore = storage
        self._refresh_threshold_s: int = config.TOKEN_REFRESH_THRESHOLD_S
        self._wall_clock: Callable[[], float] = wall_clock
        self._breaker = RefreshCircuitBreaker(
            max_failures=config.REFRESH_MAX_FAILURES,
            reset_after_s=config.REFRESH_CIRCUIT_RESET_S,
            cooldown_s=config.REFRESH_COOLDOWN_S,
            clock=clock,
        )
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        # Bumped whenever the pair is replaced or cleared; a refresh that
        # started under an older generation must not write its result.
        self._generation: int = 0
        self._inflight: Optional[asyncio.Task[str]] = None
        self._expiry_listeners: list[ExpiryListener] = []

    # ------------------------------------------------------------------
    # Pair accessors
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Hydrate the pair from durable storage."""
        self._access_token = self._storage.get(ACCESS_TOKEN_KEY)
        self._refresh_token = self._storage.get(REFRESH_TOKEN_KEY)
        self._generation += 1

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._refresh_token

    @property
    def breaker(self) -> RefreshCircuitBreaker:
        return self._breaker

    def get_access_token(self) -> Optional[str]:
        return self._access_token

    def set_tokens(self, access_token: str, refresh_token: Optional[str] = None) -> None:
        """Install a new pair; ``refresh_token=None`` keeps the held one."""
        self._access_token = access_token
        self._storage.set(ACCESS_TOKEN_KEY, access_token)
        if refresh_token is not None:
            self._refresh_token = refresh_token
            self._storage.set(REFRESH_TOKEN_KEY, refresh_token)
        self._generation += 1
        self._breaker.reset()

    def clear_tokens(self) -> None:
        """Drop both tokens from memory and storage."""
        self._access_token = None
        self._refresh_token = None
        self._storage.remove(ACCESS_TOKEN_KEY)
        self._storage.remove(REFRESH_TOKEN_KEY)
        self._generation += 1

    def add_expiry_listener(self, listener: ExpiryListener) -> Callable[[], None]:
        """Register *listener* for forced expiry; returns an unsubscribe."""
        self._expiry_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._expiry_listeners:
                self._expiry_listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Expiry inspection
    # ------------------------------------------------------------------

    @staticmethod
    def decode_expiry(token: str) -> Optional[datetime]:
        """Read the ``exp`` claim of a JWT without verifying it.

        Returns ``None`` for opaque tokens or a missing/garbled claim.
        """
        parts = token.split(".")
        if len(parts) != 3:
            return None
        segment = parts[1] + "=" * (-len(parts[1]) % 4)
        try:
            claims = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
            exp = claims.get("exp") if isinstance(claims, dict) else None
            if isinstance(exp, bool) or not isinstance(exp, (int, float)):
                return None
            return datetime.fromtimestamp(exp, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            return None

    def validate(self) -> TokenValidation:
        """Describe the held access token against the wall clock."""
        token = self._access_token
        if not token:
            return TokenValidation(is_valid=False, is_expired=True, needs_refresh=False)

        expires_at = self.decode_expiry(token)
        if expires_at is None:
            return TokenValidation(is_valid=True, is_expired=False, needs_refresh=False)

        remaining = expires_at.timestamp() - self._wall_clock()
        return TokenValidation(
            is_valid=remaining > 0,
            is_expired=remaining <= 0,
            needs_refresh=remaining <= self._refresh_threshold_s,
            expires_at=expires_at,
        )

    async def ensure_valid_token(self) -> Optional[str]:
        """Return a usable access token, refreshing first when close to expiry.

        Raises
        ------
        TokenExpired, NetworkUnavailable, ClassificationAmbiguous
            Propagated from ``refresh()``.
        """
        if not self._access_token:
            return None
        if self.validate().needs_refresh:
            return await self.refresh()
        return self._access_token

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> str:
        """Renew the access token, joining any refresh already in flight.

        Returns
        -------
        str
            The new access token.

        Raises
        ------
        TokenExpired
            The refresh token was rejected; the pair has been cleared and
            expiry listeners notified.
        NetworkUnavailable
            Transport failure, server error, or the breaker is open; the
            pair is kept.
        ClassificationAmbiguous
            The backend reported success without an access token.
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.get_running_loop().create_task(self._perform_refresh())
        task = self._inflight
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._inflight is task:
                self._inflight = None

    async def _perform_refresh(self) -> str:
        generation = self._generation

        blocked = self._breaker.blocked_reason()
        if blocked is not None:
            self._logger.info("Token refresh skipped (breaker %s).", blocked)
            raise NetworkUnavailable(
                "Too many failed attempts to renew your session. Please try again shortly."
            )

        refresh_token = self._refresh_token
        if not refresh_token:
            self._expire("missing_refresh_token")
            raise TokenExpired()

        try:
            response = await self._api.refresh(refresh_token)
        except NetworkUnavailable:
            self._breaker.record_failure()
            self._logger.warning(
                "Token refresh failed at transport level; tokens kept.",
                extra={"event": "REFRESH_FAILED", "failures": self._breaker.failures},
            )
            raise

        if generation != self._generation:
            # The pair was replaced or cleared while the request was out.
            if self._access_token:
                return self._access_token
            raise TokenExpired()

        if not response.success:
            if self._is_auth_failure(response):
                self._expire("refresh_rejected")
                raise TokenExpired()
            self._breaker.record_failure()
            self._logger.warning(
                "Token refresh failed with status %d; tokens kept.",
                response.status_code,
                extra={"event": "REFRESH_FAILED", "failures": self._breaker.failures},
            )
            raise NetworkUnavailable("The server could not renew your session. Please try again.")

        access_token = self._extract_access_token(response)
        if access_token is None:
            self._breaker.record_failure()
            self._logger.warning("Refresh response carried no access token; tokens kept.")
            raise ClassificationAmbiguous()

        self._access_token = access_token
        self._storage.set(ACCESS_TOKEN_KEY, access_token)
        self._breaker.reset()
        self._logger.info("Access token refreshed.", extra={"event": "TOKEN_REFRESHED"})
        return access_token

    @staticmethod
    def _extract_access_token(response: ApiResponse) -> Optional[str]:
        for container in (response.data, response.data.get("data")):
            if isinstance(container, dict):
                token = container.get("access_token")
                if isinstance(token, str) and token:
                    return token
        return None

    @staticmethod
    def _is_auth_failure(response: ApiResponse) -> bool:
        if response.status_code in _AUTH_FAILURE_STATUSES:
            return True
        return bool(response.message) and contains_any(response.message, _AUTH_FAILURE_HINTS)

    def _expire(self, reason: str) -> None:
        self.clear_tokens()
        self._breaker.reset()
        self._audit("SESSION_EXPIRED", "tokens", {"reason": reason})
        for listener in list(self._expiry_listeners):
            try:
                listener(reason)
            except Exception:
                self._logger.error("Expiry listener raised.", exc_info=True)
