import asyncio

import pytest
from unittest.mock import AsyncMock, Mock

from cache import CacheEntry, CacheStore
from util import utc_now


@pytest.fixture
def repository():
    repository = Mock()
    repository.save_all = AsyncMock(return_value=0)
    repository.load_all = AsyncMock(return_value=[])
    return repository


class TestCacheStore:
    def test_get_returns_what_was_set(self, clock):
        cache = CacheStore(clock=clock)
        cache.set("experiment:1", {"name": "x"}, ttl=10)
        assert cache.get("experiment:1") == {"name": "x"}
        assert cache.has("experiment:1")

    def test_missing_key(self, clock):
        cache = CacheStore(clock=clock)
        assert cache.get("nothing") is None
        assert not cache.has("nothing")

    def test_entry_expires_after_ttl(self, clock):
        cache = CacheStore(clock=clock)
        cache.set("k", "v", ttl=0.1)
        clock.advance(0.05)
        assert cache.get("k") == "v"
        clock.advance(0.1)
        assert cache.get("k") is None

    def test_expired_entry_is_removed_on_lookup(self, clock):
        cache = CacheStore(clock=clock)
        cache.set("k", "v", ttl=1)
        clock.advance(2)
        assert not cache.has("k")
        assert "k" not in cache._entries

    def test_set_overwrites_and_renews(self, clock):
        cache = CacheStore(clock=clock)
        cache.set("k", 1, ttl=1)
        clock.advance(0.9)
        cache.set("k", 2, ttl=1)
        clock.advance(0.9)
        assert cache.get("k") == 2

    @pytest.mark.asyncio
    async def test_expiry_with_real_clock(self):
        cache = CacheStore()
        cache.set("k", "v", ttl=0.1)
        await asyncio.sleep(0.15)
        assert cache.get("k") is None

    def test_remove_and_clear(self, clock):
        cache = CacheStore(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.remove("a")
        assert cache.keys() == ["b"]
        cache.clear()
        assert cache.keys() == []

    def test_stats_only_count_live_entries(self, clock):
        cache = CacheStore(clock=clock)
        cache.set("experiment:1", 1, ttl=10)
        cache.set("scenario:2", 2, ttl=1)
        clock.advance(5)
        stats = cache.stats()
        assert stats.size == 1
        assert stats.keys == ["experiment:1"]

    def test_writes_without_a_loop_stay_pending(self, clock, repository):
        cache = CacheStore(repository, clock=clock)
        cache.set("k", "v")
        assert cache.has_pending_writes
        repository.save_all.assert_not_called()


class TestCachePersistence:
    @pytest.mark.asyncio
    async def test_writes_are_debounced(self, repository):
        cache = CacheStore(repository, debounce_seconds=0.05)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("c", 3)
        assert repository.save_all.call_count == 0
        await asyncio.sleep(0.15)
        assert repository.save_all.call_count == 1
        saved = repository.save_all.call_args.args[0]
        assert sorted(e.key for e in saved) == ["a", "b", "c"]
        assert not cache.has_pending_writes

    @pytest.mark.asyncio
    async def test_close_flushes_pending_writes(self, repository):
        cache = CacheStore(repository, debounce_seconds=10)
        cache.set("a", 1)
        await cache.close()
        assert repository.save_all.call_count == 1

    @pytest.mark.asyncio
    async def test_failed_flush_is_not_raised(self, repository):
        repository.save_all = AsyncMock(side_effect=OSError("disk full"))
        cache = CacheStore(repository)
        cache.set("a", 1)
        await cache.flush()
        assert cache.has_pending_writes
        assert cache.get("a") == 1

    @pytest.mark.asyncio
    async def test_load_skips_expired_entries(self, repository, clock):
        repository.load_all = AsyncMock(
            return_value=[
                CacheEntry(key="live", data=1, expires_at=clock() + 10, last_updated=utc_now()),
                CacheEntry(key="old", data=2, expires_at=clock() - 10, last_updated=utc_now()),
            ]
        )
        cache = CacheStore(repository, clock=clock)
        assert await cache.load() == 1
        assert cache.get("live") == 1
        assert cache.get("old") is None

    @pytest.mark.asyncio
    async def test_unreadable_snapshot_means_cold_cache(self, repository, clock):
        repository.load_all = AsyncMock(side_effect=ValueError("corrupt"))
        cache = CacheStore(repository, clock=clock)
        assert await cache.load() == 0
        assert cache.keys() == []

    @pytest.mark.asyncio
    async def test_load_without_repository(self):
        cache = CacheStore()
        assert await cache.load() == 0
