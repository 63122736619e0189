"""
Rate-limited request channel.

Every call to an upstream service group (CLOB reads, CLOB auth, block
explorers) goes through a channel. A channel serves its queue strictly
FIFO, spaces consecutive calls by 1 / calls_per_second, enforces a
rolling daily quota and optionally caches responses by key.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from polycopy.utils.logging import LoggerMixin

T = TypeVar("T")

DAY_SECONDS = 24 * 60 * 60

_MISSING = object()


class QuotaExceededError(Exception):
    """Raised when a channel's daily quota is used up."""

    def __init__(self, channel: str, retry_after: float, daily_limit: int):
        self.channel = channel
        self.retry_after = max(0.0, retry_after)
        self.daily_limit = daily_limit
        super().__init__(
            f"Daily quota of {daily_limit} calls exhausted for channel '{channel}'. "
            f"Resets in {int(self.retry_after // 3600)}h "
            f"{int(self.retry_after % 3600 // 60)}m"
        )


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


@dataclass
class _QueuedRequest:
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    cache_key: Optional[str]
    cache_ttl: Optional[float]


class RateLimitedChannel(LoggerMixin):
    """FIFO request queue with call spacing, a daily quota and a response cache."""

    def __init__(
        self,
        name: str,
        calls_per_second: float,
        calls_per_day: int,
        cache_ttl: float = 300.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        day_seconds: float = DAY_SECONDS,
    ):
        if calls_per_second <= 0:
            raise ValueError(f"Channel[{name}] calls_per_second must be > 0")
        if calls_per_day < 1:
            raise ValueError(f"Channel[{name}] calls_per_day must be >= 1")

        self.name = name
        self.calls_per_second = calls_per_second
        self.calls_per_day = calls_per_day
        self.cache_ttl = cache_ttl

        self._clock = clock
        self._sleep = sleep_fn
        self._day_seconds = day_seconds
        self._min_interval = 1.0 / calls_per_second

        self._queue: deque[_QueuedRequest] = deque()
        self._cache: dict[str, CacheEntry] = {}
        self._last_request_time: Optional[float] = None
        self._daily_count = 0
        self._daily_reset_at = self._clock() + day_seconds
        self._processing_task: Optional[asyncio.Task] = None

    # ===================
    # Public API
    # ===================

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        cache_key: Optional[str] = None,
        cache_ttl: Optional[float] = None,
    ) -> T:
        """
        Run an operation through the channel.

        Args:
            operation: Zero-argument coroutine function performing the call
            cache_key: Serve from / store into the response cache under this key
            cache_ttl: Override the channel's cache TTL for this entry

        Returns:
            The operation's result, unchanged

        Raises:
            QuotaExceededError: The daily quota is exhausted
            Exception: Whatever the operation raised
        """
        if cache_key is not None:
            cached = self._cache_get(cache_key)
            if cached is not _MISSING:
                return cached

        self._roll_daily_window()
        if self._daily_count >= self.calls_per_day:
            raise self._quota_error()

        future = asyncio.get_running_loop().create_future()
        self._queue.append(_QueuedRequest(operation, future, cache_key, cache_ttl))
        self._ensure_processing()

        # Cancelling the caller does not pull the request out of the queue
        return await asyncio.shield(future)

    def get_stats(self) -> dict:
        """Queue and quota usage for observability."""
        self._roll_daily_window()
        return {
            "name": self.name,
            "queue_length": len(self._queue),
            "daily_call_count": self._daily_count,
            "daily_limit": self.calls_per_day,
            "remaining_calls": max(0, self.calls_per_day - self._daily_count),
            "reset_in_seconds": max(0.0, self._daily_reset_at - self._clock()),
            "cache_size": len(self._cache),
        }

    def clear_cache(self) -> None:
        self._cache.clear()

    def clean_cache(self) -> int:
        """Drop expired cache entries. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._cache.items() if entry.expires_at <= now]
        for key in expired:
            del self._cache[key]
        return len(expired)

    async def close(self) -> None:
        """Stop processing and cancel anything still queued."""
        if self._processing_task:
            self._processing_task.cancel()
            try:
                await self._processing_task
            except asyncio.CancelledError:
                pass
            self._processing_task = None

        while self._queue:
            request = self._queue.popleft()
            if not request.future.done():
                request.future.cancel()

    # ===================
    # Internals
    # ===================

    def _cache_get(self, key: str) -> Any:
        entry = self._cache.get(key)
        if entry is None:
            return _MISSING
        if entry.expires_at <= self._clock():
            del self._cache[key]
            return _MISSING
        return entry.value

    def _cache_put(self, key: str, value: Any, ttl: Optional[float]) -> None:
        ttl = self.cache_ttl if ttl is None else ttl
        if ttl > 0:
            self._cache[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def _roll_daily_window(self) -> None:
        now = self._clock()
        if now < self._daily_reset_at:
            return

        # Advance in whole days so the next reset is always in the future
        elapsed_days = int((now - self._daily_reset_at) // self._day_seconds) + 1
        self._daily_reset_at += elapsed_days * self._day_seconds
        if self._daily_count:
            self.log.info(
                "Daily quota window reset",
                channel=self.name,
                calls_used=self._daily_count,
            )
        self._daily_count = 0

    def _quota_error(self) -> QuotaExceededError:
        return QuotaExceededError(
            self.name,
            retry_after=self._daily_reset_at - self._clock(),
            daily_limit=self.calls_per_day,
        )

    def _ensure_processing(self) -> None:
        if self._processing_task is None or self._processing_task.done():
            self._processing_task = asyncio.create_task(
                self._process_queue(), name=f"channel-{self.name}"
            )

    async def _wait_for_spacing(self) -> None:
        if self._last_request_time is None:
            return
        # One sleep to the deadline, never a re-check of the residue
        next_allowed = self._last_request_time + self._min_interval
        wait = next_allowed - self._clock()
        if wait > 0:
            await self._sleep(wait)

    def _reject_queued(self) -> None:
        error = self._quota_error()
        rejected = 0
        while self._queue:
            request = self._queue.popleft()
            if not request.future.done():
                request.future.set_exception(
                    QuotaExceededError(error.channel, error.retry_after, error.daily_limit)
                )
                rejected += 1

        self.log.warning(
            "Daily quota exhausted, rejected queued requests",
            channel=self.name,
            rejected=rejected,
            retry_after=round(error.retry_after, 1),
        )

    async def _process_queue(self) -> None:
        while self._queue:
            self._roll_daily_window()
            if self._daily_count >= self.calls_per_day:
                self._reject_queued()
                return

            await self._wait_for_spacing()

            request = self._queue.popleft()
            self._last_request_time = self._clock()
            self._daily_count += 1

            try:
                result = await request.operation()
            except Exception as e:
                if not request.future.done():
                    request.future.set_exception(e)
                continue

            if request.cache_key is not None:
                self._cache_put(request.cache_key, result, request.cache_ttl)
            if not request.future.done():
                request.future.set_result(result)
