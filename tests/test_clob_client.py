"""
Tests for per-user CLOB client construction.
"""

import pytest
from py_clob_client.exceptions import PolyApiException

from polycopy.services.channel import RateLimitedChannel
from polycopy.services.clob_client import ClobClientFactory, MAX_DERIVATION_INDEX, derivation_path_for
from polycopy.services.rate_limiter import CLOB_API_KEYS, WindowRateLimiter

from tests.conftest import PROXY_WALLET, USER_ADDRESS

MNEMONIC = "test test test test test test test test test test test junk"


class FakeClobClient:
    """Records constructor arguments; can refuse key creation."""

    instances: list["FakeClobClient"] = []
    key_exists = False

    def __init__(self, host, chain_id=None, key=None, creds=None, signature_type=None, funder=None):
        self.host = host
        self.chain_id = chain_id
        self.key = key
        self.creds = creds
        self.signature_type = signature_type
        self.funder = funder
        FakeClobClient.instances.append(self)

    def create_api_key(self):
        if FakeClobClient.key_exists:
            raise PolyApiException(error_msg={"error": "key already exists"})
        return "created-creds"

    def derive_api_key(self):
        return "derived-creds"


@pytest.fixture
def factory(db, clock):
    FakeClobClient.instances = []
    FakeClobClient.key_exists = False
    limiter = WindowRateLimiter(clock=clock, sleep_fn=clock.sleep)
    limiter.register_limit(CLOB_API_KEYS, 50, 10)
    return ClobClientFactory(
        db=db,
        auth_channel=RateLimitedChannel("clob-auth", 5, 1000, cache_ttl=0, clock=clock, sleep_fn=clock.sleep),
        rate_limiter=limiter,
        clob_url="https://clob.test",
        chain_id=137,
        signature_type=2,
        mnemonic=MNEMONIC,
        client_class=FakeClobClient,
    )


class TestDerivation:
    """Test deterministic signer derivation."""

    def test_path_is_deterministic(self):
        path = derivation_path_for(USER_ADDRESS)

        assert path == derivation_path_for(USER_ADDRESS.upper().replace("0X", "0x"))
        assert path.startswith("m/44'/60'/0'/0/")
        assert 0 <= int(path.rsplit("/", 1)[1]) < MAX_DERIVATION_INDEX

    def test_users_get_distinct_signers(self, factory):
        first = factory.derive_signer(USER_ADDRESS)
        second = factory.derive_signer(PROXY_WALLET)

        assert first.address != second.address
        assert factory.derive_signer(USER_ADDRESS).address == first.address

    def test_missing_mnemonic(self, db, clock):
        factory = ClobClientFactory(
            db=db,
            auth_channel=RateLimitedChannel("clob-auth", 5, 1000, clock=clock, sleep_fn=clock.sleep),
            rate_limiter=WindowRateLimiter(clock=clock),
            clob_url="https://clob.test",
            chain_id=137,
            signature_type=2,
            mnemonic=None,
        )

        with pytest.raises(RuntimeError):
            factory.derive_signer(USER_ADDRESS)


class TestCreate:
    """Test authenticated client creation."""

    async def test_create(self, factory, user):
        client = await factory.create(USER_ADDRESS)

        assert client.creds == "created-creds"
        assert client.signature_type == 2
        assert client.funder.lower() == PROXY_WALLET
        assert client.key == factory.derive_signer(USER_ADDRESS).key.hex()
        assert factory.rate_limiter.current_count(CLOB_API_KEYS) == 1

    async def test_derives_existing_key(self, factory, user):
        FakeClobClient.key_exists = True

        client = await factory.create(USER_ADDRESS)

        assert client.creds == "derived-creds"
        assert factory.rate_limiter.current_count(CLOB_API_KEYS) == 2

    async def test_unknown_user(self, factory):
        with pytest.raises(LookupError):
            await factory.create(USER_ADDRESS)

    async def test_user_without_proxy(self, factory, db):
        await db.create_user(USER_ADDRESS)

        with pytest.raises(ValueError):
            await factory.create(USER_ADDRESS)
