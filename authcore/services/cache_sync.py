"""
Reactive Cache Synchronizer.

Keyed in-memory cache for server-fetched identity data (profile,
entitlements) so dependent features do not re-fetch.  Keys are stable
resource tuples such as ``("auth", "my-data")``; nothing is keyed by
"most recent".

Writes come only from the authentication-success path (warming) and the
logout path (purging).  A purge bumps a generation counter, so a fetch
that was in flight for a previous identity can never land in the cache.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar, cast

from pydantic import ValidationError

from authcore.api_client import AuthApi
from authcore.errors import AuthRejected, ClassificationAmbiguous
from authcore.logger import StructuredLogger
from authcore.models.user import User
from authcore.services.base_service import BaseService

T = TypeVar("T")

CacheKey = tuple[str, ...]
CacheListener = Callable[[CacheKey, Optional[object]], None]

AUTH_NAMESPACE: str = "auth"
PROFILE_KEY: CacheKey = (AUTH_NAMESPACE, "my-data")


@dataclass(frozen=True)
class CacheEntry:
    value: object
    fetched_at: float


class ReactiveCacheSynchronizer(BaseService):
    """Deduplicating keyed cache with namespace purges.

    Parameters
    ----------
    logger:
        Structured logger.
    default_max_age_s:
        Freshness window applied when ``fetch`` is not given one.
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        logger: StructuredLogger,
        default_max_age_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(logger)
        self._default_max_age_s = default_max_age_s
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._inflight: dict[CacheKey, asyncio.Task[object]] = {}
        self._generation: int = 0
        self._listeners: list[CacheListener] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: CacheKey) -> Optional[object]:
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, listener: CacheListener) -> Callable[[], None]:
        """Notify *listener* with ``(key, value)`` on writes and ``(key, None)`` on purge."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Fetch / warm
    # ------------------------------------------------------------------

    async def fetch(
        self,
        key: CacheKey,
        fetcher: Callable[[], Awaitable[T]],
        max_age_s: Optional[float] = None,
        force: bool = False,
    ) -> T:
        """Return a fresh cached value or run *fetcher*, joining any fetch in flight.

        Exceptions raised by *fetcher* propagate to every waiting caller
        and leave the cache untouched.
        """
        window = self._default_max_age_s if max_age_s is None else max_age_s
        entry = self._entries.get(key)
        if not force and entry is not None and self._clock() - entry.fetched_at < window:
            return cast(T, entry.value)

        task = self._inflight.get(key)
        if task is None or task.done():
            generation = self._generation
            task = asyncio.get_running_loop().create_task(self._run(fetcher))
            self._inflight[key] = task
            task.add_done_callback(
                lambda done, key=key, generation=generation: self._settle(key, generation, done)
            )
        return cast(T, await asyncio.shield(task))

    async def warm_profile(self, fetcher: Callable[[], Awaitable[User]]) -> User:
        """Eagerly load the profile under :data:`PROFILE_KEY`."""
        return await self.fetch(PROFILE_KEY, fetcher, force=PROFILE_KEY not in self._inflight)

    @staticmethod
    async def _run(fetcher: Callable[[], Awaitable[T]]) -> T:
        return await fetcher()

    def _settle(self, key: CacheKey, generation: int, task: asyncio.Task[object]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled() or task.exception() is not None:
            return
        if generation != self._generation:
            self._logger.debug("Discarded late result for %s after purge.", "/".join(key))
            return
        value = task.result()
        self._entries[key] = CacheEntry(value=value, fetched_at=self._clock())
        self._notify(key, value)

    # ------------------------------------------------------------------
    # Purge
    # ------------------------------------------------------------------

    def purge(self, namespace: str = AUTH_NAMESPACE) -> int:
        """Drop every entry and in-flight slot under *namespace*.

        Returns the number of entries removed.
        """
        self._generation += 1
        doomed = [key for key in self._entries if key and key[0] == namespace]
        for key in doomed:
            del self._entries[key]
        for key in [k for k in self._inflight if k and k[0] == namespace]:
            del self._inflight[key]
        for key in doomed:
            self._notify(key, None)
        if doomed:
            self._logger.debug("Purged %d cache entries under '%s'.", len(doomed), namespace)
        return len(doomed)

    def _notify(self, key: CacheKey, value: Optional[object]) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, value)
            except Exception:
                self._logger.error("Cache listener raised.", exc_info=True)


def profile_fetcher(api: AuthApi) -> Callable[[], Awaitable[User]]:
    """Build the ``my-data`` loader used to warm :data:`PROFILE_KEY`.

    The returned coroutine raises ``NetworkUnavailable`` (transport),
    ``AuthRejected`` (non-success response) or ``ClassificationAmbiguous``
    (a body that is not a user record).
    """

    async def _load() -> User:
        response = await api.get_my_data()
        if not response.success:
            raise AuthRejected(response.message, status_code=response.status_code)
        nested = response.data.get("user")
        candidate = nested if isinstance(nested, dict) else response.data
        try:
            return User.model_validate(candidate)
        except ValidationError as exc:
            raise ClassificationAmbiguous() from exc

    return _load
