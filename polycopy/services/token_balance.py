"""
Outcome token balances from the Conditional Tokens (ERC1155) contract.
"""

from decimal import Decimal
from typing import Optional

from web3 import AsyncWeb3

from polycopy.utils.logging import get_logger

logger = get_logger(__name__)

ERC1155_BALANCE_ABI = [
    {
        "constant": True,
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "id", "type": "uint256"}
        ],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function"
    }
]


class TokenBalanceService:
    """Reads conditional-token inventory held by proxy wallets."""

    def __init__(self, rpc_url: str, ctf_address: str, decimals: int = 6):
        self.rpc_url = rpc_url
        self.ctf_address = ctf_address
        self.decimals = decimals
        self._web3: Optional[AsyncWeb3] = None

    def _contract(self):
        if self._web3 is None:
            self._web3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self.rpc_url))
        return self._web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self.ctf_address),
            abi=ERC1155_BALANCE_ABI,
        )

    async def get_balance(self, wallet_address: str, token_id: str) -> Decimal:
        """Outcome token balance in whole shares."""
        raw = await self._contract().functions.balanceOf(
            AsyncWeb3.to_checksum_address(wallet_address),
            int(token_id),
        ).call()

        balance = Decimal(raw) / Decimal(10 ** self.decimals)
        logger.debug(
            "Outcome token balance",
            wallet=wallet_address,
            token_id=token_id[:20],
            balance=str(balance),
        )
        return balance
