"""
polycopy - order execution and deposit scanning for Polymarket copy trading.

Builds every service once at startup and passes them by reference.
"""

import asyncio
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from polycopy.config import Settings, get_settings
from polycopy.db.database import Database
from polycopy.platforms.polymarket import PolymarketGateway
from polycopy.services.channel import RateLimitedChannel
from polycopy.services.client_cache import SigningClientCache
from polycopy.services.client_refresh import ClientRefreshWorker
from polycopy.services.clob_client import ClobClientFactory
from polycopy.services.deposit_scanner import DepositScanner
from polycopy.services.execution import OrderExecutionEngine
from polycopy.services.explorer import ExplorerClient
from polycopy.services.order_monitor import SettlementMonitor
from polycopy.services.rate_limiter import WindowRateLimiter, build_clob_rate_limiter
from polycopy.services.token_balance import TokenBalanceService
from polycopy.services.trade_executor import TradeExecutor
from polycopy.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


@dataclass
class Services:
    """Process-lifetime service graph."""
    settings: Settings
    db: Database
    gateway: PolymarketGateway
    clob_channel: RateLimitedChannel
    clob_auth_channel: RateLimitedChannel
    rate_limiter: WindowRateLimiter
    client_cache: SigningClientCache
    refresh_worker: ClientRefreshWorker
    engine: OrderExecutionEngine
    monitor: SettlementMonitor
    trade_executor: TradeExecutor
    explorer: ExplorerClient
    deposit_scanner: DepositScanner

    async def initialize(self) -> None:
        await self.db.init()
        await self.db.create_tables()
        await self.gateway.initialize()
        await self.explorer.initialize()

    async def close(self) -> None:
        await self.refresh_worker.stop()
        for channel in (self.clob_channel, self.clob_auth_channel):
            await channel.close()
        await self.explorer.close()
        await self.gateway.close()
        await self.db.close()


def build_services(settings: Settings) -> Services:
    """Wire the service graph from settings."""
    db = Database(settings.database_url)
    gateway = PolymarketGateway(settings.polymarket_clob_url, timeout=settings.clob_timeout_seconds)
    rate_limiter = build_clob_rate_limiter(settings)

    clob_channel = RateLimitedChannel(
        "clob",
        calls_per_second=settings.clob_calls_per_second,
        calls_per_day=settings.clob_calls_per_day,
        cache_ttl=settings.clob_cache_ttl_seconds,
    )
    clob_auth_channel = RateLimitedChannel(
        "clob-auth",
        calls_per_second=settings.clob_auth_calls_per_second,
        calls_per_day=settings.clob_auth_calls_per_day,
        cache_ttl=0,
    )

    factory = ClobClientFactory(
        db=db,
        auth_channel=clob_auth_channel,
        rate_limiter=rate_limiter,
        clob_url=settings.polymarket_clob_url,
        chain_id=settings.chain_id,
        signature_type=settings.clob_signature_type,
        mnemonic=settings.hd_wallet_mnemonic,
    )
    client_cache = SigningClientCache(
        factory.create,
        ttl=settings.client_cache_ttl_seconds,
        max_size=settings.client_cache_max_size,
    )
    refresh_worker = ClientRefreshWorker(
        client_cache,
        db,
        refresh_before_expiry=settings.client_refresh_before_expiry_seconds,
        interval=settings.client_refresh_interval_seconds,
    )

    balances = TokenBalanceService(
        settings.polygon_rpc_url,
        settings.ctf_contract_address,
        decimals=settings.ctf_token_decimals,
    )
    engine = OrderExecutionEngine.from_settings(
        settings,
        gateway=gateway,
        channel=clob_channel,
        rate_limiter=rate_limiter,
        client_cache=client_cache,
        balances=balances,
    )
    monitor = SettlementMonitor(
        db,
        engine.get_order_status,
        poll_interval=settings.settlement_poll_interval_seconds,
        timeout=settings.settlement_timeout_seconds,
    )
    trade_executor = TradeExecutor(db, engine, monitor)

    explorer = ExplorerClient.from_settings(settings)
    deposit_scanner = DepositScanner(
        db,
        explorer,
        chain_id=settings.deposit_chain_id,
        token_address=settings.deposit_token_address,
        token_symbol=settings.deposit_token_symbol,
        default_limit=settings.deposit_scan_limit,
    )

    return Services(
        settings=settings,
        db=db,
        gateway=gateway,
        clob_channel=clob_channel,
        clob_auth_channel=clob_auth_channel,
        rate_limiter=rate_limiter,
        client_cache=client_cache,
        refresh_worker=refresh_worker,
        engine=engine,
        monitor=monitor,
        trade_executor=trade_executor,
        explorer=explorer,
        deposit_scanner=deposit_scanner,
    )


async def run(settings: Settings) -> None:
    """Run background workers until a shutdown signal."""
    services = build_services(settings)
    await services.initialize()
    await services.refresh_worker.start(prewarm=True)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda s, f: stop.set())

    logger.info("polycopy started")
    try:
        # Drop expired cached responses every explorer cache TTL
        cache_interval: Optional[float] = settings.explorer_cache_ttl_seconds or None
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=cache_interval)
            except asyncio.TimeoutError:
                services.explorer.clean_caches()
                services.clob_channel.clean_cache()
    finally:
        logger.info("Shutting down services...")
        await services.close()


def main() -> None:
    """Main entry point."""
    settings = get_settings()
    setup_logging(settings.log_level)

    logger.info("polycopy", version="0.1.0", log_level=settings.log_level)

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
    except Exception as e:
        logger.error("Fatal error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
