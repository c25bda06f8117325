"""
Keyed, TTL-bound cache with pluggable backends.

Key scheme (``":"``-joined, built only through ``cache_key``):

    media:{type}:{id}                    normalized MediaMetadata
    recommendations:{type}:{id}          full per-seed candidate list
    recommendations:{type}:{id}:chain    same, with chain expansion

Backend failures never reach callers: a failed read is a miss, a failed
write/invalidate/clear is a no-op, both logged.
"""

import asyncio
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import redis.asyncio as aioredis

from .config import CACHE_BACKEND, CACHE_DB_PATH, MEDIA_CACHE_TTL, RECOMMENDATIONS_CACHE_TTL, REDIS_URL
from .errors import CacheError
from .models import Candidate, MediaIdentity, MediaMetadata

logger = logging.getLogger(__name__)

KEY_SEPARATOR = ":"
MEDIA_PREFIX = "media"
RECOMMENDATIONS_PREFIX = "recommendations"
CHAIN_SUFFIX = "chain"

Clock = Callable[[], float]


def cache_key(*parts) -> str:
    """Single canonical key builder. Every cache key goes through here."""
    if not parts:
        raise ValueError("cache_key needs at least one part")
    return KEY_SEPARATOR.join(str(p) for p in parts)


def media_key(identity: MediaIdentity) -> str:
    return cache_key(MEDIA_PREFIX, identity.media_type.value, identity.external_id)


def recommendations_key(identity: MediaIdentity, chain: bool = False) -> str:
    parts = [RECOMMENDATIONS_PREFIX, identity.media_type.value, identity.external_id]
    if chain:
        parts.append(CHAIN_SUFFIX)
    return cache_key(*parts)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: str
    expires_at: float

    def expired(self, now: float) -> bool:
        return self.expires_at <= now


class MemoryCacheBackend:
    """
    In-process dict backend. Entries carry an absolute expiry from ``clock``.

    Expired entries are evicted when read, and swept every ``sweep_interval``
    writes so unread keys do not accumulate.
    """

    def __init__(self, clock: Clock = time.time, sweep_interval: int = 100):
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self.sweep_interval = max(1, sweep_interval)
        self._writes_since_sweep = 0

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            del self._entries[key]
        self._writes_since_sweep = 0
        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries")
        return len(expired)

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            return None
        return entry.value

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._writes_since_sweep += 1
        if self._writes_since_sweep >= self.sweep_interval:
            self.purge_expired()
        self._entries[key] = CacheEntry(key, value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def clear(self, prefix: str | None = None) -> None:
        if prefix is None:
            self._entries.clear()
            return
        for key in [k for k in self._entries if k.startswith(prefix)]:
            del self._entries[key]

    async def close(self) -> None:
        pass

    def __len__(self) -> int:
        return len(self._entries)


class SQLiteCacheBackend:
    """
    SQLite-file backend for persistence across CLI runs.

    sqlite3 is blocking, so every call runs in a worker thread via
    ``asyncio.to_thread`` with its own short-lived connection.
    """

    def __init__(self, path: str | Path = CACHE_DB_PATH, clock: Clock = time.time):
        self.path = Path(path)
        self._clock = clock
        self._initialized = False

    @contextmanager
    def _connect(self):
        if not self._initialized:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=5.0)
        try:
            if not self._initialized:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS cache_entries (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        expires_at REAL NOT NULL
                    )
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache_entries(expires_at)")
                self._initialized = True
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _get(self, key: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return None
            entry = CacheEntry(key, row[0], row[1])
            if entry.expired(self._clock()):
                conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                return None
            return entry.value

    def _set(self, key: str, value: str, ttl: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, self._clock() + ttl),
            )

    def _delete(self, key: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))

    def _clear(self, prefix: str | None) -> None:
        with self._connect() as conn:
            if prefix is None:
                conn.execute("DELETE FROM cache_entries")
            else:
                # substr() instead of LIKE: keys may contain LIKE wildcards
                conn.execute(
                    "DELETE FROM cache_entries WHERE substr(key, 1, ?) = ?",
                    (len(prefix), prefix),
                )

    def purge_expired(self) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (self._clock(),))
            return cursor.rowcount

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await asyncio.to_thread(self._set, key, value, ttl)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    async def clear(self, prefix: str | None = None) -> None:
        await asyncio.to_thread(self._clear, prefix)

    async def close(self) -> None:
        pass


class RedisCacheBackend:
    """Shared Redis backend. Expiry is Redis-native (``SET ... EX``)."""

    def __init__(self, url: str = REDIS_URL, client: aioredis.Redis | None = None):
        self.url = url
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        return self._client

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self.client.set(key, value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def clear(self, prefix: str | None = None) -> None:
        if prefix is None:
            await self.client.flushdb()
            return
        keys = [key async for key in self.client.scan_iter(match=f"{prefix}*")]
        if keys:
            await self.client.delete(*keys)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def create_cache_backend(kind: str | None = None, **kwargs):
    """Build the backend named by ``kind`` (default: MEDIA_REC_CACHE_BACKEND)."""
    kind = (kind or CACHE_BACKEND).strip().lower()
    if kind == "memory":
        return MemoryCacheBackend(**kwargs)
    if kind == "sqlite":
        return SQLiteCacheBackend(**kwargs)
    if kind == "redis":
        return RedisCacheBackend(**kwargs)
    raise CacheError(f"Unknown cache backend '{kind}'. Must be 'memory', 'sqlite' or 'redis'")


class CacheLayer:
    """JSON-encoding cache front end that degrades every backend failure."""

    def __init__(self, backend=None):
        self.backend = backend if backend is not None else create_cache_backend()

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self.backend.get(key)
        except Exception as exc:
            logger.warning(f"Cache read failed for {key}: {type(exc).__name__}: {exc}")
            return None
        if raw is None:
            logger.debug(f"Cache miss: {key}")
            return None
        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as exc:
            logger.warning(f"Discarding undecodable cache entry {key}: {exc}")
            return None
        logger.debug(f"Cache hit: {key}")
        return value

    async def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as exc:
            logger.warning(f"Not caching {key}: value is not JSON-serializable ({exc})")
            return
        try:
            await self.backend.set(key, raw, int(ttl))
        except Exception as exc:
            logger.warning(f"Cache write failed for {key}: {type(exc).__name__}: {exc}")

    async def invalidate(self, key: str) -> None:
        try:
            await self.backend.delete(key)
        except Exception as exc:
            logger.warning(f"Cache invalidate failed for {key}: {type(exc).__name__}: {exc}")

    async def clear(self, prefix: str | None = None) -> None:
        try:
            await self.backend.clear(prefix)
        except Exception as exc:
            logger.warning(f"Cache clear failed: {type(exc).__name__}: {exc}")
            return
        logger.info(f"Cleared cache{f' (prefix {prefix})' if prefix else ''}")

    async def close(self) -> None:
        try:
            await self.backend.close()
        except Exception as exc:
            logger.warning(f"Cache close failed: {type(exc).__name__}: {exc}")

    # Typed helpers for the two value kinds the recommender stores

    async def get_media(self, identity: MediaIdentity) -> MediaMetadata | None:
        payload = await self.get(media_key(identity))
        if payload is None:
            return None
        try:
            return MediaMetadata.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(f"Discarding malformed cached metadata for {identity}: {exc}")
            return None

    async def set_media(self, metadata: MediaMetadata, ttl: int = MEDIA_CACHE_TTL) -> None:
        await self.set(media_key(metadata.identity), metadata.to_dict(), ttl)

    async def get_recommendations(self, identity: MediaIdentity, chain: bool = False) -> list[Candidate] | None:
        payload = await self.get(recommendations_key(identity, chain))
        if payload is None:
            return None
        try:
            return [Candidate.from_dict(entry) for entry in payload]
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning(f"Discarding malformed cached recommendations for {identity}: {exc}")
            return None

    async def set_recommendations(
        self,
        identity: MediaIdentity,
        candidates: list[Candidate],
        chain: bool = False,
        ttl: int = RECOMMENDATIONS_CACHE_TTL,
    ) -> None:
        await self.set(recommendations_key(identity, chain), [c.to_dict() for c in candidates], ttl)

    async def invalidate_seed(self, identity: MediaIdentity) -> None:
        """Drop every entry derived from one identity."""
        await self.invalidate(media_key(identity))
        await self.invalidate(recommendations_key(identity))
        await self.invalidate(recommendations_key(identity, chain=True))
