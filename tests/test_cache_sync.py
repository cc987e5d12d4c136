"""Tests for the reactive profile cache."""

import asyncio

import pytest

from authcore.errors import AuthRejected, ClassificationAmbiguous
from authcore.models.user import User
from authcore.services.cache_sync import (
    PROFILE_KEY,
    ReactiveCacheSynchronizer,
    profile_fetcher,
)


@pytest.fixture
def cache(logger, clock):
    return ReactiveCacheSynchronizer(logger, default_max_age_s=60, clock=clock)


def _counting_fetcher(value):
    calls = []

    async def _fetch():
        calls.append(1)
        await asyncio.sleep(0)
        return value

    return _fetch, calls


class TestFetch:

    @pytest.mark.asyncio
    async def test_fresh_entry_is_served_from_cache(self, cache):
        fetch, calls = _counting_fetcher("profile")
        await cache.fetch(PROFILE_KEY, fetch)
        assert await cache.fetch(PROFILE_KEY, fetch) == "profile"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_stale_entry_is_refetched(self, cache, clock):
        fetch, calls = _counting_fetcher("profile")
        await cache.fetch(PROFILE_KEY, fetch)
        clock.advance(61)
        await cache.fetch(PROFILE_KEY, fetch)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_concurrent_fetches_are_deduplicated(self, cache):
        fetch, calls = _counting_fetcher("profile")
        results = await asyncio.gather(*(cache.fetch(PROFILE_KEY, fetch) for _ in range(4)))
        assert results == ["profile"] * 4
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_failure_leaves_cache_empty(self, cache):
        async def _boom():
            raise AuthRejected("nope")

        with pytest.raises(AuthRejected):
            await cache.fetch(PROFILE_KEY, _boom)
        assert cache.get(PROFILE_KEY) is None


class TestPurge:

    @pytest.mark.asyncio
    async def test_purge_removes_namespace_and_notifies(self, cache):
        seen = []
        cache.subscribe(lambda key, value: seen.append((key, value)))
        fetch, _ = _counting_fetcher("profile")
        await cache.fetch(PROFILE_KEY, fetch)
        await cache.fetch(("prefs", "theme"), fetch)

        assert cache.purge() == 1
        assert cache.keys() == [("prefs", "theme")]
        assert seen[-1] == (PROFILE_KEY, None)

    @pytest.mark.asyncio
    async def test_late_result_from_previous_identity_is_discarded(self, cache):
        release = asyncio.Event()

        async def _slow():
            await release.wait()
            return "previous-user"

        pending = asyncio.ensure_future(cache.fetch(PROFILE_KEY, _slow))
        await asyncio.sleep(0)
        cache.purge()
        release.set()

        assert await pending == "previous-user"
        assert cache.get(PROFILE_KEY) is None


class TestProfileFetcher:

    @pytest.mark.asyncio
    async def test_reads_nested_user(self, api, make_response):
        api.get_my_data.return_value = make_response(user={"id": 5, "full_name": "B"})
        user = await profile_fetcher(api)()
        assert user == User(id="5", full_name="B")

    @pytest.mark.asyncio
    async def test_reads_flat_body(self, api, make_response):
        api.get_my_data.return_value = make_response(id="9", phone_number="84911111111")
        assert (await profile_fetcher(api)()).phone_number == "84911111111"

    @pytest.mark.asyncio
    async def test_rejection_raises(self, api, make_response):
        api.get_my_data.return_value = make_response(401, "Unauthorized")
        with pytest.raises(AuthRejected):
            await profile_fetcher(api)()

    @pytest.mark.asyncio
    async def test_unusable_body_is_ambiguous(self, api, make_response):
        api.get_my_data.return_value = make_response(message="ok")
        with pytest.raises(ClassificationAmbiguous):
            await profile_fetcher(api)()
