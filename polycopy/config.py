"""
Configuration management using Pydantic Settings.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Database Configuration
    # ===================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./polycopy.db",
        description="Database connection string (PostgreSQL in production)"
    )

    # ===================
    # Polymarket Configuration
    # ===================
    polymarket_clob_url: str = Field(
        default="https://clob.polymarket.com",
        description="Polymarket CLOB API URL"
    )
    clob_signature_type: int = Field(
        default=2,
        description="Order signature type (2 = Gnosis Safe proxy wallet)"
    )
    hd_wallet_mnemonic: Optional[str] = Field(
        default=None,
        description="Mnemonic used to derive per-user order signers"
    )

    # ===================
    # Polygon Configuration
    # ===================
    polygon_rpc_url: str = Field(
        default="https://polygon-rpc.com",
        description="Polygon RPC endpoint"
    )
    chain_id: int = Field(default=137, description="Polygon chain id")
    ctf_contract_address: str = Field(
        default="0x4d97dcd97ec945f40cf65f87097ace5ea0476045",
        description="Conditional Tokens Framework (ERC1155) contract"
    )
    ctf_token_decimals: int = Field(default=6, ge=0)

    # ===================
    # Block Explorer Configuration
    # ===================
    etherscan_api_key: Optional[str] = Field(default=None, description="Etherscan v2 API key")
    polygonscan_api_key: Optional[str] = Field(default=None, description="Polygonscan API key")
    etherscan_api_url: str = Field(
        default="https://api.etherscan.io/v2/api",
        description="Etherscan v2 multichain API URL"
    )
    polygonscan_api_url: str = Field(
        default="https://api.polygonscan.com/api",
        description="Polygonscan API URL"
    )
    explorer_calls_per_second: float = Field(default=5, gt=0)
    explorer_calls_per_day: int = Field(default=100_000, ge=1)
    explorer_cache_ttl_seconds: float = Field(default=300, ge=0)
    explorer_timeout_seconds: float = Field(default=30, gt=0)

    # ===================
    # CLOB Rate Limiting
    # ===================
    clob_calls_per_second: float = Field(default=20, gt=0)
    clob_calls_per_day: int = Field(default=1_000_000, ge=1)
    clob_cache_ttl_seconds: float = Field(default=300, ge=0)
    clob_auth_calls_per_second: float = Field(default=5, gt=0)
    clob_auth_calls_per_day: int = Field(default=100_000, ge=1)
    clob_timeout_seconds: float = Field(default=30, gt=0)

    clob_api_key_limit: int = Field(default=50, ge=1, description="API key requests per window")
    clob_api_key_window_seconds: float = Field(default=10, gt=0)
    clob_markets_limit: int = Field(default=250, ge=1)
    clob_book_limit: int = Field(default=200, ge=1)
    clob_read_window_seconds: float = Field(default=10, gt=0)
    clob_order_burst_limit: int = Field(default=2400, ge=1, description="Order posts per burst window")
    clob_order_burst_window_seconds: float = Field(default=10, gt=0)
    clob_order_sustained_limit: int = Field(default=24_000, ge=1, description="Order posts per sustained window")
    clob_order_sustained_window_seconds: float = Field(default=600, gt=0)

    # ===================
    # Signing Client Cache
    # ===================
    client_cache_ttl_seconds: float = Field(default=3600, gt=0)
    client_cache_max_size: int = Field(default=1000, ge=1)
    client_refresh_before_expiry_seconds: float = Field(
        default=900,
        ge=0,
        description="Refresh clients this long before they expire"
    )
    client_refresh_interval_seconds: float = Field(default=300, gt=0)

    # ===================
    # Order Execution
    # ===================
    default_slippage_tolerance: float = Field(default=0.05, description="Fractional price cushion")
    min_order_price: float = Field(default=0.001, gt=0)
    max_order_price: float = Field(default=0.999, lt=1)
    price_tick: float = Field(default=0.001, gt=0)
    min_order_value: float = Field(default=1.0, ge=0, description="Minimum order notional in USDC")
    order_type: str = Field(default="FOK", description="CLOB order type (FOK, FAK, GTC, GTD)")
    execution_max_retries: int = Field(
        default=1,
        ge=0,
        description="Extra attempts for transient (unknown) failures"
    )
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0)

    # ===================
    # Settlement Monitoring
    # ===================
    settlement_poll_interval_seconds: float = Field(default=5, gt=0)
    settlement_timeout_seconds: float = Field(default=300, gt=0)

    # ===================
    # Deposit Scanning
    # ===================
    deposit_chain_id: int = Field(default=137)
    deposit_token_address: str = Field(
        default="0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
        description="Tracked deposit token (USDC.e on Polygon)"
    )
    deposit_token_symbol: str = Field(default="USDC.e")
    deposit_scan_limit: int = Field(default=100, ge=1)

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")

    @field_validator("default_slippage_tolerance")
    @classmethod
    def validate_slippage(cls, v: float) -> float:
        """Slippage must be a fraction in [0, 1)."""
        if not 0 <= v < 1:
            raise ValueError("Slippage tolerance must be in [0, 1)")
        return v

    @field_validator("order_type")
    @classmethod
    def validate_order_type(cls, v: str) -> str:
        v = v.upper()
        if v not in ("FOK", "FAK", "GTC", "GTD"):
            raise ValueError(f"Unsupported order type: {v}")
        return v

    @model_validator(mode="after")
    def validate_price_bounds(self) -> "Settings":
        if self.min_order_price >= self.max_order_price:
            raise ValueError("min_order_price must be below max_order_price")
        return self

    @property
    def explorer_shares_quota(self) -> bool:
        """Etherscan and Polygonscan draw from one pool when keyed identically."""
        return bool(self.etherscan_api_key) and self.etherscan_api_key == self.polygonscan_api_key


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
