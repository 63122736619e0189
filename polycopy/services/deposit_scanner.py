"""
Incremental deposit scanner.

Finds incoming USDC.e transfers to a user's proxy wallet through the block
explorer, starting after the last scanned block, and records each
transaction exactly once.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Any, Optional

from polycopy.db.database import Database
from polycopy.db.models import Deposit, DepositStatus, IN_FLIGHT_DEPOSIT_STATUSES, User
from polycopy.services.explorer import ExplorerClient
from polycopy.utils.logging import LoggerMixin

AMOUNT_QUANTUM = Decimal("0.000001")


@dataclass
class HistoricalDeposit:
    """A deposit as seen on-chain."""
    transaction_hash: str
    block_number: int
    timestamp: datetime
    amount: Decimal
    amount_raw: str
    from_address: str
    to_address: str
    token_symbol: str
    token_address: str


@dataclass
class SyncResult:
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    last_block: int = 0


@dataclass
class DepositHistory:
    deposits: list[Deposit]
    stats: dict[str, Any] = field(default_factory=dict)
    sync: Optional[SyncResult] = None
    sync_error: Optional[str] = None


class DepositScanner(LoggerMixin):
    """Scans and records deposits for one tracked token."""

    def __init__(
        self,
        db: Database,
        explorer: ExplorerClient,
        chain_id: int,
        token_address: str,
        token_symbol: str = "USDC.e",
        default_limit: int = 100,
    ):
        self.db = db
        self.explorer = explorer
        self.chain_id = chain_id
        self.token_address = token_address.lower()
        self.token_symbol = token_symbol
        self.default_limit = default_limit

    async def get_checkpoint(self, user_id: str) -> int:
        """Last scanned block: the stored checkpoint, else the newest stored deposit."""
        checkpoint = await self.db.get_deposit_checkpoint(user_id)
        if checkpoint is not None:
            return checkpoint.last_block
        return await self.db.get_max_deposit_block(user_id)

    async def _start_block(self, user: User, from_block: Optional[int]) -> int:
        if from_block is not None:
            return from_block
        last_block = await self.get_checkpoint(user.id)
        return last_block + 1 if last_block > 0 else 0

    async def _get_user(self, user_address: str) -> Optional[User]:
        return await self.db.get_user_by_address(user_address)

    # ===================
    # Scanning
    # ===================

    async def scan(
        self,
        user_address: str,
        limit: Optional[int] = None,
        from_block: Optional[int] = None,
    ) -> list[HistoricalDeposit]:
        """
        Incoming deposits since the checkpoint, newest first.

        Returns an empty list for unknown users or users without a proxy
        wallet. Explorer errors propagate.
        """
        user = await self._get_user(user_address)
        if user is None or not user.proxy_wallet:
            self.log.debug("No proxy wallet to scan", user=user_address)
            return []

        limit = self.default_limit if limit is None else limit
        deposits = await self._fetch(user, await self._start_block(user, from_block))
        return deposits[:limit]

    async def _fetch(self, user: User, start_block: int) -> list[HistoricalDeposit]:
        proxy_wallet = user.proxy_wallet.lower()

        self.log.info(
            "Scanning deposits",
            user=user.address,
            proxy_wallet=proxy_wallet,
            start_block=start_block,
        )

        transfers = await self.explorer.get_token_transfers(
            proxy_wallet,
            self.chain_id,
            contract_address=self.token_address,
            start_block=start_block,
        )

        deposits = [
            self._to_deposit(tx)
            for tx in transfers
            if str(tx.get("to", "")).lower() == proxy_wallet
            and str(tx.get("contractAddress", "")).lower() == self.token_address
        ]
        deposits.sort(key=lambda d: (d.timestamp, d.block_number), reverse=True)
        return deposits

    def _to_deposit(self, tx: dict[str, Any]) -> HistoricalDeposit:
        decimals = int(tx.get("tokenDecimal") or 6)
        raw_value = str(tx.get("value", "0"))
        amount = (Decimal(raw_value) / Decimal(10 ** decimals)).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)

        return HistoricalDeposit(
            transaction_hash=str(tx["hash"]).lower(),
            block_number=int(tx["blockNumber"]),
            timestamp=datetime.fromtimestamp(int(tx["timeStamp"]), tz=timezone.utc),
            amount=amount,
            amount_raw=raw_value,
            from_address=str(tx.get("from", "")).lower(),
            to_address=str(tx.get("to", "")).lower(),
            token_symbol=tx.get("tokenSymbol") or self.token_symbol,
            token_address=self.token_address,
        )

    # ===================
    # Sync
    # ===================

    async def sync(
        self,
        user_address: str,
        limit: Optional[int] = None,
        from_block: Optional[int] = None,
    ) -> SyncResult:
        """
        Record newly found deposits. Existing hashes are skipped, never rewritten.

        Deposits are recorded oldest first. A limit caps how many new records
        one call creates; the checkpoint then stops before the first deposit
        left unprocessed, so the next sync picks up from there.

        Raises:
            LookupError: Unknown user
        """
        user = await self._get_user(user_address)
        if user is None:
            raise LookupError(f"User not found: {user_address}")

        result = SyncResult()
        if not user.proxy_wallet:
            return result

        start_block = await self._start_block(user, from_block)
        # Oldest first so a limited sync can resume where it stopped
        deposits = sorted(
            await self._fetch(user, start_block),
            key=lambda d: (d.block_number, d.timestamp),
        )

        failed_blocks: list[int] = []
        new_checkpoint: Optional[int] = None
        for deposit in deposits:
            if limit is not None and result.synced >= limit:
                new_checkpoint = deposit.block_number - 1
                break

            try:
                existing = await self.db.get_deposit_by_hash(user.id, deposit.transaction_hash)
                if existing is not None:
                    result.skipped += 1
                    continue

                await self.db.create_deposit(
                    user_id=user.id,
                    transaction_hash=deposit.transaction_hash,
                    block_number=deposit.block_number,
                    timestamp=deposit.timestamp,
                    amount=deposit.amount,
                    amount_raw=deposit.amount_raw,
                    token_symbol=deposit.token_symbol,
                    token_address=deposit.token_address,
                    from_address=deposit.from_address,
                    to_address=deposit.to_address,
                    status=DepositStatus.COMPLETED,
                    is_historical=True,
                )
                result.synced += 1
            except Exception as e:
                self.log.error(
                    "Failed to record deposit",
                    user=user.address,
                    tx_hash=deposit.transaction_hash,
                    error=str(e),
                )
                failed_blocks.append(deposit.block_number)
                result.errors += 1

        if new_checkpoint is None:
            new_checkpoint = deposits[-1].block_number if deposits else max(start_block - 1, 0)
        if failed_blocks:
            # Rescan from the earliest failure next time
            new_checkpoint = min(new_checkpoint, min(failed_blocks) - 1)
        result.last_block = await self.db.advance_deposit_checkpoint(user.id, new_checkpoint)

        self.log.info(
            "Deposit sync complete",
            user=user.address,
            synced=result.synced,
            skipped=result.skipped,
            errors=result.errors,
            last_block=result.last_block,
        )
        return result

    async def get_complete_history(self, user_address: str, auto_sync: bool = True) -> DepositHistory:
        """All stored deposits with stats, syncing first when asked.

        A failed sync is logged and recorded but stored records are still returned.
        """
        user = await self._get_user(user_address)
        if user is None:
            raise LookupError(f"User not found: {user_address}")

        history = DepositHistory(deposits=[])

        if auto_sync and user.proxy_wallet:
            # Full rescan when nothing is recorded yet
            has_deposits = await self.db.count_deposits(user.id) > 0
            try:
                history.sync = await self.sync(
                    user.address,
                    from_block=None if has_deposits else 0,
                )
            except Exception as e:
                self.log.error("Error syncing deposits, returning stored records", user=user.address, error=str(e))
                history.sync_error = str(e)
                await self.db.record_deposit_sync_error(user.id, str(e))

        history.deposits = await self.db.list_deposits(user.id)
        history.stats = self.compute_stats(history.deposits)
        return history

    @staticmethod
    def compute_stats(deposits: list[Deposit]) -> dict[str, Any]:
        total_amount = sum(
            (Decimal(d.amount) for d in deposits if d.status != DepositStatus.FAILED),
            Decimal("0"),
        )
        return {
            "total": len(deposits),
            "completed": sum(1 for d in deposits if d.status == DepositStatus.COMPLETED),
            "pending": sum(1 for d in deposits if d.status in IN_FLIGHT_DEPOSIT_STATUSES),
            "total_amount": str(total_amount.quantize(AMOUNT_QUANTUM)),
        }
