"""
Per-user authenticated CLOB client construction.

Each user gets a deterministic signer derived from the service HD wallet;
orders are signed by that key on behalf of the user's Gnosis Safe (the
funder). Building a client costs an API-key round trip, so callers should
go through SigningClientCache rather than this factory directly.
"""

import asyncio
from typing import Any, Callable, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import ApiCreds
from py_clob_client.exceptions import PolyApiException
from web3 import Web3

from polycopy.db.database import Database
from polycopy.platforms.base import PlatformError
from polycopy.services.channel import RateLimitedChannel
from polycopy.services.rate_limiter import CLOB_API_KEYS, WindowRateLimiter
from polycopy.utils.logging import LoggerMixin

Account.enable_unaudited_hdwallet_features()

# BIP44 indices must fit in 31 bits
MAX_DERIVATION_INDEX = 2147483647


def derivation_path_for(user_address: str) -> str:
    """BIP44 path whose index is keccak(checksum address) mod 2^31 - 1."""
    checksum = Web3.to_checksum_address(user_address.lower())
    digest = Web3.keccak(text=checksum)
    index = int.from_bytes(digest, "big") % MAX_DERIVATION_INDEX
    return f"m/44'/60'/0'/0/{index}"


class ClobClientFactory(LoggerMixin):
    """Builds authenticated ClobClient instances for users."""

    def __init__(
        self,
        db: Database,
        auth_channel: RateLimitedChannel,
        rate_limiter: WindowRateLimiter,
        clob_url: str,
        chain_id: int,
        signature_type: int,
        mnemonic: Optional[str],
        client_class: Callable[..., Any] = ClobClient,
    ):
        self.db = db
        self.auth_channel = auth_channel
        self.rate_limiter = rate_limiter
        self.clob_url = clob_url
        self.chain_id = chain_id
        self.signature_type = signature_type
        self._mnemonic = mnemonic
        self._client_class = client_class

    def derive_signer(self, user_address: str) -> LocalAccount:
        """Derive the order signer for a user from the HD mnemonic."""
        if not self._mnemonic or not self._mnemonic.strip():
            raise RuntimeError("HD_WALLET_MNEMONIC is not configured")
        return Account.from_mnemonic(
            self._mnemonic.strip(),
            account_path=derivation_path_for(user_address),
        )

    async def create(self, user_address: str) -> Any:
        """
        Build an authenticated client for a user.

        Raises:
            LookupError: Unknown user
            ValueError: User has no proxy wallet to fund orders
            PlatformError: API credentials could not be obtained
        """
        user = await self.db.get_user_by_address(user_address)
        if user is None:
            raise LookupError(f"User not found: {user_address}")
        if not user.proxy_wallet:
            raise ValueError(
                f"User {user_address} has no proxy wallet. Deploy the Safe before trading."
            )

        signer = self.derive_signer(user.address)
        creds = await self.auth_channel.execute(lambda: self._obtain_api_creds(signer))

        client = self._client_class(
            self.clob_url,
            chain_id=self.chain_id,
            key=signer.key.hex(),
            creds=creds,
            signature_type=self.signature_type,
            funder=Web3.to_checksum_address(user.proxy_wallet),
        )

        self.log.info(
            "CLOB client created",
            user=user.address,
            signer=signer.address,
            funder=user.proxy_wallet,
        )
        return client

    async def _obtain_api_creds(self, signer: LocalAccount) -> ApiCreds:
        """Create API credentials, deriving existing ones when creation fails."""
        l1_client = self._client_class(
            self.clob_url,
            chain_id=self.chain_id,
            key=signer.key.hex(),
        )

        await self.rate_limiter.wait_if_needed(CLOB_API_KEYS)
        try:
            creds = await asyncio.to_thread(l1_client.create_api_key)
        except PolyApiException as e:
            # Creation fails once a key exists for this signer
            self.log.debug(
                "API key creation failed, deriving",
                signer=signer.address,
                error=str(getattr(e, "error_msg", e)),
            )
            await self.rate_limiter.wait_if_needed(CLOB_API_KEYS)
            creds = await asyncio.to_thread(l1_client.derive_api_key)

        if creds is None:
            raise PlatformError(
                f"Failed to obtain API credentials for signer {signer.address}. "
                "The derived wallet may need to be registered on Polymarket first.",
                "polymarket",
            )
        return creds
