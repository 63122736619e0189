"""
Tests for the block explorer client.
"""

import httpx
import pytest

from polycopy.config import Settings
from polycopy.services.channel import RateLimitedChannel
from polycopy.services.explorer import ExplorerAPIError, ExplorerClient

USDC = "0x2791bca1f2de4661ed88a30c99a7a9449aa84174"
WALLET = "0x2222222222222222222222222222222222222222"


def make_client(clock, handler, etherscan_key="key", polygonscan_key=None) -> ExplorerClient:
    channel = RateLimitedChannel("explorer", 5, 1000, cache_ttl=300, clock=clock, sleep_fn=clock.sleep)
    return ExplorerClient(
        etherscan_channel=channel,
        polygonscan_channel=channel,
        etherscan_api_key=etherscan_key,
        polygonscan_api_key=polygonscan_key,
        etherscan_api_url="https://etherscan.test/api",
        polygonscan_api_url="https://polygonscan.test/api",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestRequests:
    """Test request building and response handling."""

    async def test_token_transfers(self, clock):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "1", "message": "OK", "result": [{"hash": "0x1"}]})

        client = make_client(clock, handler)
        transfers = await client.get_token_transfers(WALLET.upper().replace("0X", "0x"), 137, USDC, start_block=1001)

        assert transfers == [{"hash": "0x1"}]
        params = seen[0].url.params
        assert seen[0].url.host == "polygonscan.test"
        assert params["action"] == "tokentx"
        assert params["address"] == WALLET
        assert params["contractaddress"] == USDC
        assert params["startblock"] == "1001"
        assert params["chainid"] == "137"
        assert params["apikey"] == "key"
        await client.close()

    async def test_mainnet_uses_etherscan(self, clock):
        hosts: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            hosts.append(request.url.host)
            return httpx.Response(200, json={"status": "1", "message": "OK", "result": []})

        client = make_client(clock, handler)
        await client.get_token_transfers(WALLET, 1, USDC)

        assert hosts == ["etherscan.test"]
        await client.close()

    async def test_no_transactions_is_empty(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "0", "message": "No transactions found", "result": []})

        client = make_client(clock, handler)

        assert await client.get_token_transfers(WALLET, 137, USDC) == []
        await client.close()

    async def test_notok_raises(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "0", "message": "NOTOK", "result": "Invalid API Key"})

        client = make_client(clock, handler)

        with pytest.raises(ExplorerAPIError) as exc_info:
            await client.get_token_transfers(WALLET, 137, USDC)

        assert "Invalid API Key" in str(exc_info.value)
        await client.close()

    async def test_status_zero_without_message_raises(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "0", "message": "", "result": []})

        client = make_client(clock, handler)

        with pytest.raises(ExplorerAPIError) as exc_info:
            await client.get_token_transfers(WALLET, 137, USDC)

        assert "Unknown error" in str(exc_info.value)
        await client.close()

    async def test_rate_limit_message_raises(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"status": "0", "message": "Max rate limit reached", "result": "Max rate limit reached"}
            )

        client = make_client(clock, handler)

        with pytest.raises(ExplorerAPIError):
            await client.get_token_transfers(WALLET, 137, USDC)
        await client.close()

    async def test_http_error_raises(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="bad gateway")

        client = make_client(clock, handler)

        with pytest.raises(ExplorerAPIError) as exc_info:
            await client.get_token_transfers(WALLET, 137, USDC)

        assert exc_info.value.status_code == 502
        await client.close()

    async def test_missing_key(self, clock):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        client = make_client(clock, handler, etherscan_key=None)

        with pytest.raises(ExplorerAPIError):
            await client.get_token_transfers(WALLET, 137, USDC)
        await client.close()

    async def test_responses_cached(self, clock):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"status": "1", "message": "OK", "result": []})

        client = make_client(clock, handler)
        await client.get_token_transfers(WALLET, 137, USDC)
        await client.get_token_transfers(WALLET, 137, USDC)

        assert calls == 1
        await client.close()


class TestFromSettings:
    """Test channel sharing between providers."""

    def test_same_key_shares_channel(self):
        settings = Settings(_env_file=None, etherscan_api_key="k", polygonscan_api_key="k")

        client = ExplorerClient.from_settings(settings)

        assert client.shares_quota
        assert client.get_stats()["shared"] is True

    def test_distinct_keys_separate_channels(self):
        settings = Settings(_env_file=None, etherscan_api_key="a", polygonscan_api_key="b")

        client = ExplorerClient.from_settings(settings)

        assert not client.shares_quota
        assert client.polygonscan_api_key == "b"

    def test_polygonscan_key_falls_back(self):
        settings = Settings(_env_file=None, etherscan_api_key="a")

        client = ExplorerClient.from_settings(settings)

        assert client.polygonscan_api_key == "a"
