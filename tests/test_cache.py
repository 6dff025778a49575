"""
Tests for the conversation cache.

Tests cover:
- Fresh hits within the TTL
- Rebuild after expiry
- Stale fallback when a rebuild fails
- Empty result with an error when nothing was ever built
- One rebuild shared by concurrent callers
- Invalidation
"""

import asyncio

import pytest

from inbox_service.cache import ConversationCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class ScriptedLoader:
    """Returns the queued results in order; exceptions are raised."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class TestCacheLifecycle:
    """Test read-through population and expiry."""

    @pytest.mark.asyncio
    async def test_first_call_builds_then_hits(self):
        loader = ScriptedLoader(["a", "b"])
        cache = ConversationCache(loader, ttl_seconds=30, clock=FakeClock())

        first = await cache.get()
        second = await cache.get()

        assert first.conversations == ("a", "b")
        assert first.from_cache is False
        assert second.from_cache is True
        assert second.stale is False
        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_rebuilds_after_ttl(self):
        clock = FakeClock()
        loader = ScriptedLoader(["a"], ["a", "b"])
        cache = ConversationCache(loader, ttl_seconds=30, clock=clock)

        await cache.get()
        clock.now += 31
        result = await cache.get()

        assert result.conversations == ("a", "b")
        assert result.from_cache is False
        assert loader.calls == 2


class TestCacheFailures:
    """Test behaviour when the store is unreachable."""

    @pytest.mark.asyncio
    async def test_stale_list_served_until_recovery(self):
        """Test that a failed rebuild keeps serving the last good list."""
        clock = FakeClock()
        loader = ScriptedLoader(["a"], RuntimeError("store down"), RuntimeError("store down"), ["a", "c"])
        cache = ConversationCache(loader, ttl_seconds=30, clock=clock)

        await cache.get()
        clock.now += 31

        for _ in range(2):
            result = await cache.get()
            assert result.conversations == ("a",)
            assert result.from_cache is True
            assert result.stale is True
            assert "store down" in result.error

        recovered = await cache.get()
        assert recovered.conversations == ("a", "c")
        assert recovered.stale is False
        assert recovered.error is None

    @pytest.mark.asyncio
    async def test_empty_with_error_when_never_built(self):
        cache = ConversationCache(ScriptedLoader(RuntimeError("boom")), ttl_seconds=30, clock=FakeClock())

        result = await cache.get()

        assert result.conversations == ()
        assert result.from_cache is False
        assert "boom" in result.error


class TestCacheConcurrency:
    """Test rebuild coalescing."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_rebuild(self):
        release = asyncio.Event()
        calls = 0

        async def slow_loader():
            nonlocal calls
            calls += 1
            await release.wait()
            return ["a"]

        cache = ConversationCache(slow_loader, ttl_seconds=30, clock=FakeClock())

        tasks = [asyncio.create_task(cache.get()) for _ in range(5)]
        await asyncio.sleep(0)
        assert cache.rebuilding is True
        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert all(result.conversations == ("a",) for result in results)
        assert cache.rebuilding is False


class TestCacheInvalidation:
    """Test invalidate() and peek()."""

    @pytest.mark.asyncio
    async def test_invalidate_forces_rebuild(self):
        loader = ScriptedLoader(["a"], ["b"])
        cache = ConversationCache(loader, ttl_seconds=30, clock=FakeClock())

        await cache.get()
        cache.invalidate()

        assert cache.peek().stale is True
        assert (await cache.get()).conversations == ("b",)

    @pytest.mark.asyncio
    async def test_invalidated_entry_is_still_the_fallback(self):
        loader = ScriptedLoader(["a"], RuntimeError("down"))
        cache = ConversationCache(loader, ttl_seconds=30, clock=FakeClock())

        await cache.get()
        cache.invalidate()
        result = await cache.get()

        assert result.conversations == ("a",)
        assert result.stale is True

    def test_peek_on_empty_cache(self):
        cache = ConversationCache(ScriptedLoader(), ttl_seconds=30, clock=FakeClock())

        result = cache.peek(error="timed out")

        assert result.conversations == ()
        assert result.error == "timed out"
