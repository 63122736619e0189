"""
Background refresh of cached signing clients.

Clients are rebuilt shortly before their TTL runs out so a trade never
pays for construction on the hot path.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

from polycopy.db.database import Database
from polycopy.services.client_cache import SigningClientCache
from polycopy.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RefreshResult:
    refreshed: int = 0
    skipped: int = 0
    errors: int = 0


class ClientRefreshWorker:
    """Periodically refreshes clients older than ttl - refresh_before_expiry."""

    def __init__(
        self,
        cache: SigningClientCache,
        db: Database,
        refresh_before_expiry: float = 900.0,
        interval: float = 300.0,
    ):
        self.cache = cache
        self.db = db
        self.refresh_before_expiry = refresh_before_expiry
        self.interval = interval

        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def refresh_threshold(self) -> float:
        return max(0.0, self.cache.ttl - self.refresh_before_expiry)

    async def start(self, prewarm: bool = True) -> None:
        """Start the refresh loop, optionally pre-warming every funded user first."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run(prewarm))
        logger.info(
            "Client refresh worker started",
            interval=self.interval,
            threshold=self.refresh_threshold,
        )

    async def stop(self) -> None:
        """Stop the refresh loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Client refresh worker stopped")

    async def prewarm_all(self) -> int:
        """Build clients for all users that have a proxy wallet."""
        users = await self.db.list_users_with_proxy_wallet()
        logger.info("Pre-warming CLOB clients", users=len(users))
        return await self.cache.prewarm(user.address for user in users)

    async def refresh_expiring(self) -> RefreshResult:
        """One refresh pass over the cache."""
        result = RefreshResult()
        threshold = self.refresh_threshold

        for key in self.cache.keys_older_than(threshold):
            try:
                user = await self.db.get_user_by_address(key)
                if user is None or not user.proxy_wallet:
                    logger.warning("Skipping client refresh, user gone or has no proxy wallet", user=key)
                    self.cache.clear(key)
                    result.skipped += 1
                    continue

                await self.cache.refresh(key)
                result.refreshed += 1
            except Exception as e:
                logger.error("Failed to refresh CLOB client", user=key, error=str(e))
                result.errors += 1

        if result.refreshed or result.errors:
            logger.info(
                "CLOB client refresh completed",
                refreshed=result.refreshed,
                skipped=result.skipped,
                errors=result.errors,
            )
        return result

    async def _run(self, prewarm: bool) -> None:
        if prewarm:
            try:
                await self.prewarm_all()
            except Exception as e:
                logger.error("Error pre-warming CLOB clients", error=str(e))

        while self._running:
            await asyncio.sleep(self.interval)
            try:
                await self.refresh_expiring()
            except Exception as e:
                logger.error("Error in CLOB client refresh worker", error=str(e))
