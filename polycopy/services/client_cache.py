"""
Signing client cache.

Creating an authenticated CLOB client costs a rate-limited API-key round
trip, so clients are memoized per user for a TTL. Concurrent requests for
the same user share one in-flight construction.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from polycopy.utils.logging import LoggerMixin


@dataclass
class CachedClientEntry:
    owner: str
    client: Any
    created_at: float
    last_used_at: float


def normalize_key(user_key: str) -> str:
    return user_key.strip().lower()


class SigningClientCache(LoggerMixin):
    """TTL + approximate LRU cache of per-user signing clients."""

    def __init__(
        self,
        factory: Callable[[str], Awaitable[Any]],
        ttl: float = 3600.0,
        max_size: int = 1000,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")

        self._factory = factory
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock

        self._entries: dict[str, CachedClientEntry] = {}
        self._pending: dict[str, asyncio.Task] = {}

        self._hits = 0
        self._misses = 0
        self._creations = 0

    async def get(self, user_key: str) -> Any:
        """Return the user's client, constructing it at most once at a time."""
        key = normalize_key(user_key)
        now = self._clock()

        entry = self._entries.get(key)
        if entry is not None:
            if now - entry.created_at < self.ttl:
                entry.last_used_at = now
                self._hits += 1
                return entry.client

            del self._entries[key]
            self.log.debug("Cached client expired", user=key, age=round(now - entry.created_at))

        self._misses += 1
        return await self._await_construction(key)

    async def refresh(self, user_key: str) -> Any:
        """Drop the cached client and build a new one."""
        key = normalize_key(user_key)
        self._entries.pop(key, None)
        return await self._await_construction(key)

    def clear(self, user_key: Optional[str] = None) -> None:
        """Remove one user's client, or everything, from cache and pending map."""
        if user_key is None:
            self._entries.clear()
            self._pending.clear()
            self.log.info("Client cache cleared")
            return

        key = normalize_key(user_key)
        self._entries.pop(key, None)
        self._pending.pop(key, None)

    async def prewarm(self, user_keys: Iterable[str]) -> int:
        """Build clients ahead of time. Returns how many are now cached."""
        keys = [normalize_key(k) for k in user_keys]
        results = await asyncio.gather(*(self.get(k) for k in keys), return_exceptions=True)

        warmed = 0
        for key, result in zip(keys, results):
            if isinstance(result, Exception):
                self.log.warning("Failed to pre-warm client", user=key, error=str(result))
            else:
                warmed += 1

        self.log.info("Client cache pre-warmed", requested=len(keys), warmed=warmed)
        return warmed

    def cached_keys(self) -> list[str]:
        return list(self._entries)

    def keys_older_than(self, age: float) -> list[str]:
        """Users whose client was built at least `age` seconds ago."""
        now = self._clock()
        return [key for key, entry in self._entries.items() if now - entry.created_at >= age]

    def get_stats(self) -> dict:
        now = self._clock()
        total = self._hits + self._misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "pending": len(self._pending),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
            "creations": self._creations,
            "entries": [
                {
                    "user": entry.owner,
                    "age_seconds": round(now - entry.created_at, 1),
                    "idle_seconds": round(now - entry.last_used_at, 1),
                }
                for entry in self._entries.values()
            ],
        }

    # ===================
    # Internals
    # ===================

    async def _await_construction(self, key: str) -> Any:
        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(self._construct(key), name=f"clob-client-{key}")
            self._pending[key] = task

        # Shield so one caller's cancellation does not fail everyone waiting
        return await asyncio.shield(task)

    async def _construct(self, key: str) -> Any:
        this_task = asyncio.current_task()
        try:
            self._creations += 1
            client = await self._factory(key)

            # A clear() during construction invalidates the result
            if self._pending.get(key) is this_task:
                self._store(key, client)
            return client
        except Exception as e:
            self.log.warning("Client construction failed", user=key, error=str(e))
            raise
        finally:
            if self._pending.get(key) is this_task:
                del self._pending[key]

    def _store(self, key: str, client: Any) -> None:
        if key not in self._entries and len(self._entries) >= self.max_size:
            self._evict_least_recently_used()

        now = self._clock()
        self._entries[key] = CachedClientEntry(
            owner=key,
            client=client,
            created_at=now,
            last_used_at=now,
        )

    def _evict_least_recently_used(self) -> None:
        oldest = min(self._entries.values(), key=lambda e: e.last_used_at)
        del self._entries[oldest.owner]
        self.log.debug("Evicted least recently used client", user=oldest.owner)
