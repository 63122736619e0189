"""
Etherscan / Polygonscan client.

Every call runs through a RateLimitedChannel. Etherscan-family keys share
their quota across networks, so when both providers are configured with
the same key they also share one channel.
"""

from typing import Any, Optional

import httpx

from polycopy.platforms.base import PlatformError
from polycopy.services.channel import RateLimitedChannel
from polycopy.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_END_BLOCK = 99999999

# status "0" messages that mean "empty result" rather than an error
EMPTY_RESULT_MESSAGES = ("no transactions", "no records")
ERROR_MESSAGE_WORDS = ("error", "invalid", "rate limit")


class ExplorerAPIError(PlatformError):
    """Block explorer returned an error."""
    pass


class ExplorerClient:
    """Rate-limited token transfer lookups."""

    def __init__(
        self,
        etherscan_channel: RateLimitedChannel,
        polygonscan_channel: RateLimitedChannel,
        etherscan_api_key: Optional[str],
        polygonscan_api_key: Optional[str],
        etherscan_api_url: str,
        polygonscan_api_url: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.etherscan_channel = etherscan_channel
        self.polygonscan_channel = polygonscan_channel
        self.etherscan_api_key = etherscan_api_key
        # One Etherscan key works on every Etherscan network
        self.polygonscan_api_key = polygonscan_api_key or etherscan_api_key
        self.etherscan_api_url = etherscan_api_url
        self.polygonscan_api_url = polygonscan_api_url
        self.timeout = timeout
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "ExplorerClient":
        """Build the client and its channels, sharing one when the keys match."""
        etherscan_channel = RateLimitedChannel(
            "etherscan",
            calls_per_second=settings.explorer_calls_per_second,
            calls_per_day=settings.explorer_calls_per_day,
            cache_ttl=settings.explorer_cache_ttl_seconds,
        )
        if settings.explorer_shares_quota:
            logger.info("Using shared rate limiter for Etherscan and Polygonscan (same API key)")
            polygonscan_channel = etherscan_channel
        else:
            polygonscan_channel = RateLimitedChannel(
                "polygonscan",
                calls_per_second=settings.explorer_calls_per_second,
                calls_per_day=settings.explorer_calls_per_day,
                cache_ttl=settings.explorer_cache_ttl_seconds,
            )

        return cls(
            etherscan_channel=etherscan_channel,
            polygonscan_channel=polygonscan_channel,
            etherscan_api_key=settings.etherscan_api_key,
            polygonscan_api_key=settings.polygonscan_api_key,
            etherscan_api_url=settings.etherscan_api_url,
            polygonscan_api_url=settings.polygonscan_api_url,
            timeout=settings.explorer_timeout_seconds,
            **kwargs,
        )

    @property
    def shares_quota(self) -> bool:
        return self.etherscan_channel is self.polygonscan_channel

    async def initialize(self) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)

    async def close(self) -> None:
        await self.etherscan_channel.close()
        if not self.shares_quota:
            await self.polygonscan_channel.close()
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _provider_for(self, chain_id: int) -> tuple[str, RateLimitedChannel, str, Optional[str]]:
        if int(chain_id) == 1:
            return "etherscan", self.etherscan_channel, self.etherscan_api_url, self.etherscan_api_key
        return "polygonscan", self.polygonscan_channel, self.polygonscan_api_url, self.polygonscan_api_key

    async def call(
        self,
        chain_id: int,
        params: dict[str, str],
        cache_key: Optional[str] = None,
    ) -> dict[str, Any]:
        """Make a rate-limited explorer API call."""
        provider, channel, url, api_key = self._provider_for(chain_id)
        if not api_key:
            raise ExplorerAPIError(f"{provider} API key not configured", provider)

        query = {**params, "chainid": str(chain_id), "apikey": api_key}
        return await channel.execute(lambda: self._request(provider, url, query), cache_key=cache_key)

    async def _request(self, provider: str, url: str, query: dict[str, str]) -> dict[str, Any]:
        if not self._http_client:
            raise RuntimeError("Client not initialized")

        try:
            response = await self._http_client.get(url, params=query)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ExplorerAPIError(
                f"{provider} API error: {e.response.status_code}",
                provider,
                str(e.response.status_code),
                status_code=e.response.status_code,
            )

        if str(data.get("status")) == "0":
            message = str(data.get("message") or "")
            lower = message.lower()
            is_error = (
                message == "NOTOK"
                or any(word in lower for word in ERROR_MESSAGE_WORDS)
                or (lower != "ok" and not any(m in lower for m in EMPTY_RESULT_MESSAGES))
            )
            if is_error:
                # Etherscan puts the detail of NOTOK into result
                detail = data.get("result") if isinstance(data.get("result"), str) else message
                raise ExplorerAPIError(f"{provider} API error: {detail or 'Unknown error'}", provider)

        return data

    async def get_token_transfers(
        self,
        address: str,
        chain_id: int,
        contract_address: Optional[str] = None,
        start_block: int = 0,
        end_block: int = DEFAULT_END_BLOCK,
    ) -> list[dict[str, Any]]:
        """ERC20 transfers touching an address, newest first."""
        address = address.lower()
        contract = contract_address.lower() if contract_address else None

        params = {
            "module": "account",
            "action": "tokentx" if contract else "txlist",
            "address": address,
            "startblock": str(start_block),
            "endblock": str(end_block),
            "sort": "desc",
        }
        if contract:
            params["contractaddress"] = contract

        cache_key = f"transfers-{chain_id}-{address}-{contract or 'all'}-{start_block}-{end_block}"
        data = await self.call(chain_id, params, cache_key=cache_key)

        result = data.get("result")
        if isinstance(result, list):
            return result

        logger.debug("No token transfers found", address=address, chain_id=chain_id, contract=contract)
        return []

    def get_stats(self) -> dict:
        return {
            "etherscan": self.etherscan_channel.get_stats(),
            "polygonscan": self.polygonscan_channel.get_stats(),
            "shared": self.shares_quota,
        }

    def clean_caches(self) -> None:
        self.etherscan_channel.clean_cache()
        if not self.shares_quota:
            self.polygonscan_channel.clean_cache()
