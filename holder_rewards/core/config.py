"""
Configuration management using Pydantic Settings.
Supports multiple environments: development, staging, production.
"""

from decimal import Decimal
from typing import Any, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


LAMPORTS_PER_SOL = 1_000_000_000


class RewardSettings(BaseSettings):
    """Application settings with environment-based configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Holder Rewards Engine"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"

    # API
    api_v1_prefix: str = "/api/v1"
    api_enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8000

    # Database
    database_url: str = "sqlite+aiosqlite:///./reward-state.db"
    database_echo: bool = False

    # Solana
    solana_rpc_url: str = "https://api.devnet.solana.com"
    solana_commitment: str = "confirmed"
    token_mint: str = ""
    reward_wallet_private_key: Optional[str] = None
    treasury_wallet_address: Optional[str] = None
    pool_addresses: List[str] = Field(default_factory=list)
    blacklist: List[str] = Field(default_factory=list)

    # External HTTP services
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    jupiter_base_url: str = "https://quote-api.jup.ag/v6"
    swap_slippage_bps: int = 100

    # Reward economics (injected, never decided by the engine)
    token_decimals: int = 9
    reward_value_mode: str = "TOKEN"
    min_holding_usd: Decimal = Decimal("5")
    holder_share_bps: int = 7500

    # Tax harvest thresholds
    min_tax_threshold_token: Decimal = Decimal("5")
    min_tax_threshold_usd: Decimal = Decimal("5")
    max_harvest_token: Decimal = Decimal("12000000")
    max_harvest_usd: Decimal = Decimal("2000")
    batch_count: int = 4
    batch_delay_token_mode: float = 10.0  # seconds
    batch_delay_usd_mode: float = 30.0  # seconds

    # Payouts
    min_payout_lamports: int = 100_000  # 0.0001 SOL dust floor
    min_payout_token: Decimal = Decimal("60")
    min_payout_usd: Decimal = Decimal("0.001")
    max_retries: int = 3

    # Scheduler settings
    scheduler_enabled: bool = True
    cycle_interval_seconds: int = 300
    cycles_per_epoch: int = 288
    eligible_refresh_interval_seconds: int = 3600
    history_retention_epochs: int = 30

    # Caching
    holder_cache_ttl: float = 300.0
    holder_cache_hard_ttl: float = 1800.0
    price_cache_ttl: float = 300.0
    price_cache_hard_ttl: float = 3600.0

    # Upstream protection
    upstream_timeout_seconds: float = 30.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_window_seconds: float = 60.0
    circuit_breaker_cooldown_seconds: float = 300.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    log_file: Optional[str] = None

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("reward_value_mode")
    @classmethod
    def validate_reward_value_mode(cls, v: str) -> str:
        if v.upper() not in ("TOKEN", "USD"):
            raise ValueError("Reward value mode must be TOKEN or USD")
        return v.upper()

    @field_validator("blacklist", "pool_addresses", mode="before")
    @classmethod
    def split_address_list(cls, v: Any) -> Any:
        # Accept "addr1,addr2" from plain env vars as well as JSON lists
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("holder_share_bps")
    @classmethod
    def validate_holder_share(cls, v: int) -> int:
        if not 0 <= v <= 10_000:
            raise ValueError("Holder share must be between 0 and 10000 basis points")
        return v

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    def validate_for_startup(self, require_chain: bool = True) -> None:
        """
        Check threshold and chain configuration before the scheduler starts.

        Raises:
            ConfigurationError: if any value would make cycles meaningless
        """
        problems = []

        if self.cycle_interval_seconds <= 0:
            problems.append("cycle_interval_seconds must be positive")
        if self.cycles_per_epoch <= 0:
            problems.append("cycles_per_epoch must be positive")
        if self.batch_count < 1:
            problems.append("batch_count must be at least 1")
        if self.max_retries < 1:
            problems.append("max_retries must be at least 1")
        if self.min_holding_usd < 0:
            problems.append("min_holding_usd must not be negative")
        if self.min_payout_lamports < 0:
            problems.append("min_payout_lamports must not be negative")
        if self.batch_delay_token_mode < 0 or self.batch_delay_usd_mode < 0:
            problems.append("batch delays must not be negative")
        if self.min_tax_threshold_token > self.max_harvest_token:
            problems.append("min_tax_threshold_token exceeds max_harvest_token")
        if self.min_tax_threshold_usd > self.max_harvest_usd:
            problems.append("min_tax_threshold_usd exceeds max_harvest_usd")
        if self.holder_cache_hard_ttl < self.holder_cache_ttl:
            problems.append("holder_cache_hard_ttl must be >= holder_cache_ttl")
        if self.price_cache_hard_ttl < self.price_cache_ttl:
            problems.append("price_cache_hard_ttl must be >= price_cache_ttl")

        if require_chain:
            if not self.token_mint:
                problems.append("TOKEN_MINT is required")
            if not self.reward_wallet_private_key:
                problems.append("REWARD_WALLET_PRIVATE_KEY is required")
            if self.holder_share_bps < 10_000 and not self.treasury_wallet_address:
                problems.append("TREASURY_WALLET_ADDRESS is required when holder share is below 100%")

        if problems:
            raise ConfigurationError(
                "Invalid reward configuration",
                {"problems": problems}
            )


# Global settings instance
settings = RewardSettings()


class DatabaseConfig:
    """Database-specific configuration."""

    @staticmethod
    def get_database_url(url: Optional[str] = None) -> str:
        """Get database URL with an async driver."""
        url = url or settings.database_url
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://")
        if url.startswith("sqlite:///"):
            return url.replace("sqlite:///", "sqlite+aiosqlite:///")
        return url

    @staticmethod
    def get_engine_config(url: str) -> dict:
        """Get SQLAlchemy engine configuration."""
        if url.startswith("sqlite"):
            return {}
        return {
            "pool_size": 5,
            "max_overflow": 10,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }


class SolanaConfig:
    """Solana-specific configuration and constants."""

    TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
    WSOL_MINT = "So11111111111111111111111111111111111111112"
    # Fee buffer kept aside for every SOL transfer
    TRANSFER_FEE_LAMPORTS = 5000

    @staticmethod
    def get_rpc_config() -> dict:
        """Get Solana RPC client configuration."""
        return {
            "endpoint": settings.solana_rpc_url,
            "commitment": settings.solana_commitment,
            "timeout": settings.upstream_timeout_seconds,
        }
