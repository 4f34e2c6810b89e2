"""Engine configuration using pydantic-settings.

Endpoint lists are comma-separated URLs; the first entry is the primary
provider and the rest are rotated to on failure.
"""

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from hotwallet.errors import ConfigurationError
from hotwallet.networks import NETWORKS, EndpointOverrides, Network

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ======================
    # Key custody
    # ======================
    master_key: Optional[str] = Field(
        default=None,
        description="Fernet master key for encrypting private keys (required in production)",
    )
    persist_wallets: bool = Field(
        default=False, description="Store encrypted wallet records in the database"
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/hotwallet.db",
        description="Database connection URL",
    )

    # ======================
    # Provider endpoints (comma-separated)
    # ======================
    eth_rpc_urls: Optional[str] = Field(default=None, description="Ethereum JSON-RPC URLs")
    matic_rpc_urls: Optional[str] = Field(default=None, description="Polygon JSON-RPC URLs")
    bnb_rpc_urls: Optional[str] = Field(default=None, description="BSC JSON-RPC URLs")
    btc_rpc_urls: Optional[str] = Field(default=None, description="Esplora API base URLs")
    sol_rpc_urls: Optional[str] = Field(default=None, description="Solana JSON-RPC URLs")

    eth_ws_url: Optional[str] = Field(default=None, description="Ethereum websocket URL")
    matic_ws_url: Optional[str] = Field(default=None, description="Polygon websocket URL")
    bnb_ws_url: Optional[str] = Field(default=None, description="BSC websocket URL")
    sol_ws_url: Optional[str] = Field(default=None, description="Solana websocket URL")

    eth_explorer_url: Optional[str] = Field(default=None, description="Etherscan-compatible API URL")
    matic_explorer_url: Optional[str] = Field(default=None, description="Polygonscan API URL")
    bnb_explorer_url: Optional[str] = Field(default=None, description="BscScan API URL")

    etherscan_api_key: Optional[str] = Field(default=None, description="Etherscan API key")
    polygonscan_api_key: Optional[str] = Field(default=None, description="Polygonscan API key")
    bscscan_api_key: Optional[str] = Field(default=None, description="BscScan API key")

    # ======================
    # Confirmations
    # ======================
    confirmations_eth: int = Field(default=12, description="Confirmations required on ETH")
    confirmations_matic: int = Field(default=64, description="Confirmations required on MATIC")
    confirmations_bnb: int = Field(default=15, description="Confirmations required on BNB")
    confirmations_btc: int = Field(default=2, description="Confirmations required on BTC")
    confirmations_sol: int = Field(default=1, description="Confirmations required on SOL")

    # ======================
    # Resilience
    # ======================
    rate_limit_capacity: int = Field(default=10, description="Token bucket size per service")
    rate_limit_refill_per_second: float = Field(default=10.0, description="Tokens added per second")
    rate_limit_timeout: float = Field(default=30.0, description="Max seconds to wait for a token")
    circuit_failure_threshold: int = Field(default=5, description="Failures before opening")
    circuit_reset_timeout: float = Field(default=30.0, description="Seconds before half-open")
    circuit_failure_window: float = Field(default=60.0, description="Failure counting window")
    endpoint_max_failures: int = Field(default=3, description="Consecutive failures before an endpoint cools down")
    endpoint_cooldown: float = Field(default=60.0, description="Seconds an unhealthy endpoint sits out rotation")
    request_timeout: float = Field(default=30.0, description="HTTP timeout in seconds")

    # ======================
    # Gas fallbacks
    # ======================
    fallback_gas_price_eth_gwei: int = Field(default=50, description="ETH fallback gas price")
    fallback_gas_price_gwei: int = Field(default=5, description="Fallback gas price for other EVM chains")
    fallback_fee_rate_btc: int = Field(default=20, description="BTC fallback sat/vB")
    fallback_priority_fee_sol: int = Field(default=0, description="SOL fallback micro-lamports/CU")

    # ======================
    # Monitoring
    # ======================
    monitor_poll_interval: float = Field(default=15.0, description="Seconds between polls")
    monitor_max_reconnect_attempts: int = Field(default=5, description="Reconnect attempts")
    monitor_backoff_base: float = Field(default=2.0, description="Initial reconnect delay")
    monitor_backoff_max: float = Field(default=30.0, description="Max reconnect delay")

    # ======================
    # NFT
    # ======================
    ipfs_gateway: str = Field(default="https://ipfs.io/ipfs/", description="IPFS HTTP gateway")
    metadata_cache_ttl: float = Field(default=3600.0, description="NFT metadata cache TTL")

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    def resolve_master_key(self) -> str:
        """Return the configured master key.

        Production refuses to start without one; other environments get an
        ephemeral key so wallets do not survive a restart.
        """
        if self.master_key:
            return self.master_key
        if self.is_production:
            raise ConfigurationError("MASTER_KEY is required in production")

        from cryptography.fernet import Fernet

        logger.warning("MASTER_KEY not set - using an ephemeral key, wallets will not survive restart")
        self.master_key = Fernet.generate_key().decode()
        return self.master_key

    def endpoints_for(self, network: Network) -> EndpointOverrides:
        """Resolve endpoint configuration for a network, falling back to defaults."""
        config = NETWORKS[network]
        key = network.value.lower()

        raw_urls = getattr(self, f"{key}_rpc_urls", None)
        urls = [u.strip() for u in raw_urls.split(",") if u.strip()] if raw_urls else list(config.rpc_urls)

        api_keys = {
            Network.ETH: self.etherscan_api_key,
            Network.MATIC: self.polygonscan_api_key,
            Network.BNB: self.bscscan_api_key,
        }

        return EndpointOverrides(
            rpc_urls=urls,
            ws_url=getattr(self, f"{key}_ws_url", None) or config.ws_url,
            explorer_api_url=getattr(self, f"{key}_explorer_url", None) or config.explorer_api_url,
            explorer_api_key=api_keys.get(network),
            confirmations=getattr(self, f"confirmations_{key}"),
            fallback_fee_price=self.fallback_fee_price(network),
        )

    def fallback_fee_price(self, network: Network) -> int:
        """Fallback fee price in the network's pricing unit."""
        if network == Network.ETH:
            return self.fallback_gas_price_eth_gwei * 10**9
        if network in (Network.MATIC, Network.BNB):
            return self.fallback_gas_price_gwei * 10**9
        if network == Network.BTC:
            return self.fallback_fee_rate_btc
        return self.fallback_priority_fee_sol


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
