import fnmatch
import logging

import pytest

from media_rec.cache import (
    CacheLayer,
    MemoryCacheBackend,
    RedisCacheBackend,
    SQLiteCacheBackend,
    cache_key,
    create_cache_backend,
    media_key,
    recommendations_key,
)
from media_rec.errors import CacheError
from media_rec.models import Candidate, CandidateSource, MediaIdentity


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the backend."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.closed = False

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.expiry[key] = ex

    async def delete(self, *keys):
        for key in keys:
            self.store.pop(key, None)

    async def flushdb(self):
        self.store.clear()

    async def scan_iter(self, match=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self):
        self.closed = True


class BrokenBackend:
    async def get(self, key):
        raise ConnectionError("backend down")

    async def set(self, key, value, ttl):
        raise ConnectionError("backend down")

    async def delete(self, key):
        raise ConnectionError("backend down")

    async def clear(self, prefix=None):
        raise ConnectionError("backend down")

    async def close(self):
        raise ConnectionError("backend down")


def test_key_scheme():
    breaking_bad = MediaIdentity("tv", 1396)
    assert cache_key("media", "tv", 1396) == "media:tv:1396"
    assert media_key(breaking_bad) == "media:tv:1396"
    assert recommendations_key(breaking_bad) == "recommendations:tv:1396"
    assert recommendations_key(breaking_bad, chain=True) == "recommendations:tv:1396:chain"
    assert media_key(MediaIdentity("movie", 1396)) != media_key(breaking_bad)
    with pytest.raises(ValueError):
        cache_key()


def test_create_cache_backend():
    assert isinstance(create_cache_backend("memory"), MemoryCacheBackend)
    assert isinstance(create_cache_backend("redis"), RedisCacheBackend)
    with pytest.raises(CacheError):
        create_cache_backend("memcached")


@pytest.mark.asyncio
async def test_memory_round_trip_and_expiry(fake_clock):
    cache = CacheLayer(MemoryCacheBackend(clock=fake_clock))
    await cache.set("media:tv:1", {"title": "Show"}, ttl=60)

    assert await cache.get("media:tv:1") == {"title": "Show"}
    fake_clock.advance(59)
    assert await cache.get("media:tv:1") == {"title": "Show"}
    fake_clock.advance(1)
    assert await cache.get("media:tv:1") is None


@pytest.mark.asyncio
async def test_memory_invalidate_and_prefix_clear(fake_clock):
    backend = MemoryCacheBackend(clock=fake_clock)
    cache = CacheLayer(backend)
    await cache.set("media:tv:1", 1, ttl=60)
    await cache.set("media:tv:2", 2, ttl=60)
    await cache.set("recommendations:tv:1", [], ttl=60)

    await cache.invalidate("media:tv:1")
    assert await cache.get("media:tv:1") is None

    await cache.clear(prefix="media:")
    assert await cache.get("media:tv:2") is None
    assert await cache.get("recommendations:tv:1") == []

    await cache.clear()
    assert len(backend) == 0


@pytest.mark.asyncio
async def test_memory_sweeps_unread_expired_entries(fake_clock):
    backend = MemoryCacheBackend(clock=fake_clock, sweep_interval=3)
    await backend.set("media:tv:1", "a", 10)
    await backend.set("media:tv:2", "b", 10)
    fake_clock.advance(20)
    assert len(backend) == 2

    # The third write triggers a sweep before storing
    await backend.set("media:tv:3", "c", 10)
    assert len(backend) == 1
    assert await backend.get("media:tv:3") == "c"

    await backend.set("media:tv:4", "d", 100)
    fake_clock.advance(50)
    assert backend.purge_expired() == 1
    assert len(backend) == 1


@pytest.mark.asyncio
async def test_sqlite_persists_across_instances(tmp_path, fake_clock):
    path = tmp_path / "cache" / "media.db"
    first = CacheLayer(SQLiteCacheBackend(path, clock=fake_clock))
    await first.set("media:movie:603", {"title": "The Matrix"}, ttl=3600)

    second = CacheLayer(SQLiteCacheBackend(path, clock=fake_clock))
    assert await second.get("media:movie:603") == {"title": "The Matrix"}

    fake_clock.advance(3600)
    assert await second.get("media:movie:603") is None


@pytest.mark.asyncio
async def test_sqlite_prefix_clear_and_purge(tmp_path, fake_clock):
    backend = SQLiteCacheBackend(tmp_path / "media.db", clock=fake_clock)
    cache = CacheLayer(backend)
    await cache.set("media:tv:1", 1, ttl=10)
    await cache.set("media_extra:tv:1", 2, ttl=1000)
    await cache.set("recommendations:tv:1", 3, ttl=1000)

    await cache.clear(prefix="media:")
    assert await cache.get("media:tv:1") is None
    assert await cache.get("media_extra:tv:1") == 2

    fake_clock.advance(2000)
    assert backend.purge_expired() == 2


@pytest.mark.asyncio
async def test_redis_backend_uses_native_ttl():
    fake = FakeRedis()
    cache = CacheLayer(RedisCacheBackend(client=fake))

    await cache.set("media:tv:1396", {"title": "Breaking Bad"}, ttl=604800)
    assert fake.expiry["media:tv:1396"] == 604800
    assert await cache.get("media:tv:1396") == {"title": "Breaking Bad"}

    await cache.set("recommendations:tv:1396", [], ttl=86400)
    await cache.clear(prefix="recommendations:")
    assert "recommendations:tv:1396" not in fake.store
    assert "media:tv:1396" in fake.store

    await cache.clear()
    assert fake.store == {}

    await cache.close()
    # Injected clients belong to the caller
    assert fake.closed is False


@pytest.mark.asyncio
async def test_backend_failures_degrade_to_miss_and_noop(caplog):
    cache = CacheLayer(BrokenBackend())

    with caplog.at_level(logging.WARNING):
        assert await cache.get("media:tv:1") is None
        await cache.set("media:tv:1", {"a": 1}, ttl=60)
        await cache.invalidate("media:tv:1")
        await cache.clear()
        await cache.close()

    assert "Cache read failed" in caplog.text
    assert "Cache write failed" in caplog.text
    assert "Cache invalidate failed" in caplog.text
    assert "Cache clear failed" in caplog.text


@pytest.mark.asyncio
async def test_undecodable_entries_are_misses(fake_clock):
    backend = MemoryCacheBackend(clock=fake_clock)
    await backend.set("media:tv:1", "{not json", 60)
    assert await CacheLayer(backend).get("media:tv:1") is None


@pytest.mark.asyncio
async def test_typed_media_and_recommendation_helpers(fake_clock, metadata_factory):
    cache = CacheLayer(MemoryCacheBackend(clock=fake_clock))
    seed = MediaIdentity("tv", 1396)
    meta = metadata_factory("tv", 1396, patterns=frozenset({"Hidden World"}))

    await cache.set_media(meta)
    assert await cache.get_media(seed) == meta

    candidate = Candidate(MediaIdentity("tv", 60059), CandidateSource.DIRECT, seed, via_title="Better Call Saul")
    candidate.add_path(0.8, CandidateSource.DIRECT)
    candidate.add_path(0.4, CandidateSource.SIMILAR)
    await cache.set_recommendations(seed, [candidate], chain=True)

    assert await cache.get_recommendations(seed) is None
    restored = await cache.get_recommendations(seed, chain=True)
    assert len(restored) == 1
    assert restored[0].identity == candidate.identity
    assert restored[0].score == pytest.approx(0.6)
    assert restored[0].match_count == 2
    assert restored[0].sources == {CandidateSource.DIRECT, CandidateSource.SIMILAR}
    assert restored[0].via_title == "Better Call Saul"

    await cache.invalidate_seed(seed)
    assert await cache.get_media(seed) is None
    assert await cache.get_recommendations(seed, chain=True) is None


@pytest.mark.asyncio
async def test_recommendation_ttl_is_shorter_than_media_ttl(fake_clock, metadata_factory):
    cache = CacheLayer(MemoryCacheBackend(clock=fake_clock))
    seed = MediaIdentity("tv", 1396)
    await cache.set_media(metadata_factory("tv", 1396))
    await cache.set_recommendations(seed, [])

    fake_clock.advance(2 * 24 * 60 * 60)
    assert await cache.get_recommendations(seed) is None
    assert await cache.get_media(seed) is not None
