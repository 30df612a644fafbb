"""
ResponseCache - TTL cache for provider responses over a persistent store.

Features:
- Pluggable backing store (in-memory or SQL table), upsert by key
- Freshness enforced on read, even when the store has not reaped yet
- Stale lookups for serving expired payloads when the provider is down
- TTL policy by request class
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from loguru import logger

Clock = Callable[[], datetime]

# TTLs in seconds
DETAIL_TTL = 24 * 60 * 60
GENRE_LIST_TTL = 24 * 60 * 60
POPULAR_TTL = 60 * 60
LIST_TTL = 30 * 60
DEFAULT_TTL = 60 * 60

_DETAIL_RE = re.compile(r"^/(movie|tv|person)/\d+$")
_GENRE_LIST_RE = re.compile(r"^/genre/(movie|tv)/list$")


def ttl_for_path(path: str) -> int:
    """Pick a TTL for a provider path; low-volatility data lives longer."""
    if _DETAIL_RE.match(path) or _GENRE_LIST_RE.match(path):
        return DETAIL_TTL
    if "/popular" in path or "/trending" in path:
        return POPULAR_TTL
    if path.startswith(("/discover", "/search")):
        return LIST_TTL
    if path.startswith(("/movie/", "/tv/")):
        return LIST_TTL
    return DEFAULT_TTL


class CacheStatus(str, Enum):
    """Which path served a response."""

    HIT = "HIT"
    MISS = "MISS"
    STALE = "STALE"


@dataclass
class CacheEntry:
    """A cached provider response."""

    key: str
    payload: Any
    expires_at: datetime
    created_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return self.expires_at > now


class CacheStore(ABC):
    """Backing store for response cache entries."""

    @abstractmethod
    async def get(self, key: str, now: datetime) -> CacheEntry | None:
        """Return the entry for key if it has not expired at ``now``."""
        ...

    @abstractmethod
    async def upsert(self, entry: CacheEntry) -> None:
        """Insert or replace the entry with the same key."""
        ...

    @abstractmethod
    async def find_stale(self, key: str) -> CacheEntry | None:
        """Return the entry for key regardless of expiry."""
        ...

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        """Remove entries expired at ``now``. Returns count removed."""
        ...


class MemoryCacheStore(CacheStore):
    """
    Process-local store. Expired entries stay until swept, like a TTL index
    that has not run yet. Oldest entries are evicted at capacity.
    """

    def __init__(self, max_size: int = 1000):
        self._entries: dict[str, CacheEntry] = {}
        self._max_size = max_size
        self._lock = asyncio.Lock()

    async def get(self, key: str, now: datetime) -> CacheEntry | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.is_fresh(now):
                return None
            return entry

    async def upsert(self, entry: CacheEntry) -> None:
        async with self._lock:
            if len(self._entries) >= self._max_size and entry.key not in self._entries:
                oldest_key = min(
                    self._entries, key=lambda k: self._entries[k].created_at
                )
                del self._entries[oldest_key]
            self._entries[entry.key] = entry

    async def find_stale(self, key: str) -> CacheEntry | None:
        async with self._lock:
            return self._entries.get(key)

    async def delete_expired(self, now: datetime) -> int:
        async with self._lock:
            expired = [k for k, v in self._entries.items() if not v.is_fresh(now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    writes: int = 0
    swept: int = 0
    last_sweep: datetime | None = field(default=None)

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "writes": self.writes,
            "swept": self.swept,
            "last_sweep": self.last_sweep.isoformat() if self.last_sweep else None,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class ResponseCache:
    """
    TTL cache for provider responses.

    Usage:
        cache = ResponseCache(MemoryCacheStore())

        payload = await cache.get(key)
        if payload is None:
            payload = await fetch()
            await cache.set(key, payload, ttl_for_path(path))
    """

    def __init__(
        self,
        store: CacheStore,
        clock: Clock = datetime.now,
        debug: bool = False,
    ):
        self._store = store
        self._clock = clock
        self._debug = debug
        self._stats = CacheStats()

    async def get(self, key: str) -> Any | None:
        """Return the payload for key, or None when absent or expired."""
        now = self._clock()
        entry = await self._store.get(key, now)

        # The store may lag behind on expiry
        if entry is None or not entry.is_fresh(now):
            self._stats.misses += 1
            self._log(f"MISS: {key[:80]}")
            return None

        self._stats.hits += 1
        self._log(f"HIT: {key[:80]}")
        return entry.payload

    async def get_stale(self, key: str) -> Any | None:
        """Return any payload stored for key, fresh or not."""
        entry = await self._store.find_stale(key)
        if entry is None:
            return None

        self._stats.stale_hits += 1
        self._log(f"STALE: {key[:80]} (expired {entry.expires_at.isoformat()})")
        return entry.payload

    async def set(self, key: str, payload: Any, ttl_seconds: float) -> None:
        """Store payload under key for ttl_seconds."""
        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=payload,
            expires_at=now + timedelta(seconds=ttl_seconds),
            created_at=now,
        )
        await self._store.upsert(entry)
        self._stats.writes += 1
        self._log(f"SET: {key[:80]} (TTL: {ttl_seconds}s)")

    async def invalidate_expired(self) -> int:
        """Sweep expired entries out of the store."""
        now = self._clock()
        removed = await self._store.delete_expired(now)
        self._stats.swept += removed
        self._stats.last_sweep = now
        if removed:
            logger.info(f"Response cache sweep removed {removed} expired entries")
        return removed

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[ResponseCache] {message}")
