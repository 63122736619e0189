"""
Sliding-window rate limits for Polymarket CLOB endpoints.

Polymarket documents per-endpoint budgets as N requests per window
(for example 2400 order posts / 10s burst and 24000 / 10min sustained).
Callers await wait_if_needed(name) before the request.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from polycopy.utils.logging import get_logger

logger = get_logger(__name__)

# Limit names
CLOB_API_KEYS = "clob-api-keys"
CLOB_MARKETS = "clob-markets"
CLOB_BOOK = "clob-book"
CLOB_POST_ORDER = "clob-post-order"
CLOB_POST_ORDER_SUSTAINED = "clob-post-order-sustained"
CLOB_DELETE_ORDER = "clob-delete-order"
CLOB_DELETE_ORDER_SUSTAINED = "clob-delete-order-sustained"


@dataclass(frozen=True)
class WindowLimit:
    name: str
    max_requests: int
    window_seconds: float

    def validate(self) -> None:
        if self.max_requests < 1:
            raise ValueError(f"WindowLimit[{self.name}] max_requests must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError(f"WindowLimit[{self.name}] window_seconds must be > 0")


class WindowRateLimiter:
    """Named sliding-window limits. Unknown names are not throttled."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._clock = clock
        self._sleep = sleep_fn
        self._limits: dict[str, WindowLimit] = {}
        self._history: dict[str, deque[float]] = {}

    def register_limit(self, name: str, max_requests: int, window_seconds: float) -> None:
        limit = WindowLimit(name, max_requests, window_seconds)
        limit.validate()
        self._limits[name] = limit

    def _prune(self, name: str, now: float) -> deque[float]:
        history = self._history.setdefault(name, deque())
        window = self._limits[name].window_seconds
        while history and history[0] + window <= now:
            history.popleft()
        return history

    async def wait_if_needed(self, name: str) -> float:
        """Wait until the window has room, then record the request.

        Returns the total seconds spent waiting.
        """
        limit = self._limits.get(name)
        if limit is None:
            return 0.0

        waited = 0.0
        not_before = 0.0
        while True:
            # A coarse clock may read just short of the deadline we slept to
            now = max(self._clock(), not_before)
            history = self._prune(name, now)
            if len(history) < limit.max_requests:
                history.append(now)
                return waited

            not_before = history[0] + limit.window_seconds
            delay = not_before - now
            if waited == 0.0:
                logger.debug("Rate limit window full, waiting", limit=name, delay=round(delay, 3))
            await self._sleep(delay)
            waited += delay

    def current_count(self, name: str) -> int:
        """Requests recorded in the current window."""
        if name not in self._limits:
            return 0
        return len(self._prune(name, self._clock()))

    def clear(self, name: Optional[str] = None) -> None:
        if name:
            self._history.pop(name, None)
        else:
            self._history.clear()


def build_clob_rate_limiter(settings, **kwargs) -> WindowRateLimiter:
    """Register Polymarket's documented CLOB budgets from settings."""
    limiter = WindowRateLimiter(**kwargs)
    limiter.register_limit(CLOB_API_KEYS, settings.clob_api_key_limit, settings.clob_api_key_window_seconds)
    limiter.register_limit(CLOB_MARKETS, settings.clob_markets_limit, settings.clob_read_window_seconds)
    limiter.register_limit(CLOB_BOOK, settings.clob_book_limit, settings.clob_read_window_seconds)

    # Posting and cancelling share the same published budgets
    for burst, sustained in (
        (CLOB_POST_ORDER, CLOB_POST_ORDER_SUSTAINED),
        (CLOB_DELETE_ORDER, CLOB_DELETE_ORDER_SUSTAINED),
    ):
        limiter.register_limit(
            burst, settings.clob_order_burst_limit, settings.clob_order_burst_window_seconds
        )
        limiter.register_limit(
            sustained, settings.clob_order_sustained_limit, settings.clob_order_sustained_window_seconds
        )
    return limiter
