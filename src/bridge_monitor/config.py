#!/usr/bin/env python3
"""Configuration management for the bridge monitor.

This module provides type-safe configuration dataclasses with validation
for both chains and for the monitoring loop. Configuration is loaded from
environment variables with sensible defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from web3 import Web3

from .models import ChainId

# Get logger for this module
logger = logging.getLogger(__name__)


def _checksum(value: str, description: str) -> str:
    if not Web3.is_address(value):
        raise ValueError(f"Invalid {description}: {value}")
    return Web3.to_checksum_address(value)


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for one side of the bridge.

    Attributes:
        chain_id: Which layer this configuration describes
        rpc_url: HTTP(S) or WS(S) RPC endpoint
        bridge_address: Checksummed address of the bridge contract
        token_address: Optional checksummed token address whose transfers are recorded
        start_block: First block to scan when no cursor has been persisted
    """

    chain_id: ChainId
    rpc_url: str
    bridge_address: str
    token_address: str | None = None
    start_block: int | None = None

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        name = self.chain_id.value

        if not self.rpc_url:
            raise ValueError(f"{name} RPC URL is required ({name}_RPC_URL)")

        parsed = urlparse(self.rpc_url)
        if parsed.scheme not in ('http', 'https', 'ws', 'wss'):
            raise ValueError(
                f"Invalid RPC URL scheme: {parsed.scheme}. "
                "Expected http, https, ws, or wss"
            )

        if not self.bridge_address:
            raise ValueError(f"{name} bridge address is required ({name}_BRIDGE_ADDRESS)")

        # Use object.__setattr__ since dataclass is frozen
        object.__setattr__(self, 'bridge_address', _checksum(self.bridge_address, f"{name} bridge address"))
        if self.token_address:
            object.__setattr__(self, 'token_address', _checksum(self.token_address, f"{name} token address"))

        if self.start_block is not None and self.start_block < 0:
            raise ValueError(f"{name} start block must be non-negative, got {self.start_block}")


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Configuration for polling, reconciliation and retries."""
    confirmation_lag: int = 6  # blocks behind head treated as final
    poll_interval: int = 12  # seconds between polls
    l2_timeout: int = 900  # seconds a deposit may wait for its L2 credit
    sweep_interval: int = 30  # seconds between timeout sweeps
    lookback_blocks: int = 100  # blocks to look back on first start
    max_block_range: int = 2000  # largest eth_getLogs range
    retry_count: int = 3  # retries after a failed RPC call
    base_delay: float = 1.0  # first backoff delay in seconds
    max_delay: float = 30.0  # backoff ceiling in seconds
    request_timeout: int = 30  # HTTP request timeout in seconds
    suspend_interval: int = 60  # seconds a chain is suspended after retries run out
    reorg_window: int = 64  # recent block hashes re-checked for reorgs
    shutdown_grace: int = 10  # seconds tasks get to finish on shutdown
    archive_after: int = 86_400  # seconds terminal operations stay in memory

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.confirmation_lag < 0:
            raise ValueError(f"Confirmation lag must be non-negative, got {self.confirmation_lag}")
        if self.confirmation_lag > 1000:
            raise ValueError(f"Confirmation lag too high (max 1000), got {self.confirmation_lag}")

        if self.poll_interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {self.poll_interval}")
        if self.poll_interval > 300:
            raise ValueError(f"Poll interval too long (max 300s), got {self.poll_interval}")

        if self.l2_timeout <= 0:
            raise ValueError(f"L2 timeout must be positive, got {self.l2_timeout}")

        if self.sweep_interval <= 0:
            raise ValueError(f"Sweep interval must be positive, got {self.sweep_interval}")

        if self.lookback_blocks < 0:
            raise ValueError(f"Lookback blocks must be non-negative, got {self.lookback_blocks}")

        if self.max_block_range <= 0:
            raise ValueError(f"Max block range must be positive, got {self.max_block_range}")

        if self.retry_count < 0:
            raise ValueError(f"Retry count must be non-negative, got {self.retry_count}")
        if self.retry_count > 10:
            raise ValueError(f"Retry count too high (max 10), got {self.retry_count}")

        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError(
                f"Backoff delays must satisfy 0 <= base_delay <= max_delay, "
                f"got {self.base_delay} and {self.max_delay}"
            )

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.reorg_window <= 0:
            raise ValueError(f"Reorg window must be positive, got {self.reorg_window}")


@dataclass(frozen=True, slots=True)
class MonitorConfig:
    """Main configuration for the bridge monitor.

    Attributes:
        l1: Settlement chain configuration
        l2: Scaling chain configuration
        monitoring: Polling, timeout and retry settings
        alert_webhook_url: Optional endpoint receiving alerts as JSON
    """

    l1: ChainConfig
    l2: ChainConfig
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    alert_webhook_url: str | None = None

    def __post_init__(self) -> None:
        """Validate monitor configuration."""
        if self.l1.chain_id is not ChainId.L1 or self.l2.chain_id is not ChainId.L2:
            raise ValueError("l1 and l2 configurations must be for L1 and L2 respectively")

        if self.alert_webhook_url:
            parsed = urlparse(self.alert_webhook_url)
            if parsed.scheme not in ('http', 'https'):
                raise ValueError(f"Invalid alert webhook URL scheme: {parsed.scheme}")

    @staticmethod
    def _chain_from_env(chain_id: ChainId, example_rpc: str) -> ChainConfig:
        name = chain_id.value

        rpc_url = os.environ.get(f"{name}_RPC_URL", "")
        if not rpc_url:
            raise ValueError(
                f"{name}_RPC_URL environment variable is required. "
                f"Example: {example_rpc}"
            )

        bridge_address = os.environ.get(f"{name}_BRIDGE_ADDRESS", "")
        if not bridge_address:
            raise ValueError(
                f"{name}_BRIDGE_ADDRESS environment variable is required. "
                f"This is the address of the deployed {name}Bridge contract"
            )

        start_block = os.environ.get(f"{name}_START_BLOCK")

        return ChainConfig(
            chain_id=chain_id,
            rpc_url=rpc_url,
            bridge_address=bridge_address,
            token_address=os.environ.get(f"{name}_TOKEN_ADDRESS") or None,
            start_block=int(start_block) if start_block else None,
        )

    @classmethod
    def from_env(cls) -> "MonitorConfig":
        """Load configuration from environment variables.

        Returns:
            MonitorConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        l1 = cls._chain_from_env(ChainId.L1, "https://ethereum-sepolia.publicnode.com")
        l2 = cls._chain_from_env(ChainId.L2, "https://sepolia.optimism.io")

        monitoring = MonitoringConfig(
            confirmation_lag=int(os.environ.get("CONFIRMATION_LAG", "6")),
            poll_interval=int(os.environ.get("POLL_INTERVAL", "12")),
            l2_timeout=int(os.environ.get("L2_TIMEOUT", "900")),
            sweep_interval=int(os.environ.get("SWEEP_INTERVAL", "30")),
            lookback_blocks=int(os.environ.get("LOOKBACK_BLOCKS", "100")),
            retry_count=int(os.environ.get("RETRY_COUNT", "3")),
        )

        return cls(
            l1=l1,
            l2=l2,
            monitoring=monitoring,
            alert_webhook_url=os.environ.get("ALERT_WEBHOOK_URL") or None,
        )

    def chain(self, chain_id: ChainId) -> ChainConfig:
        return self.l1 if chain_id is ChainId.L1 else self.l2

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("Bridge Monitor Configuration")
        logger.info("=" * 60)

        for chain in (self.l1, self.l2):
            logger.info(f"{chain.chain_id.value} Chain:")
            logger.info(f"  RPC URL: {chain.rpc_url}")
            logger.info(f"  Bridge: {chain.bridge_address}")
            if chain.token_address:
                logger.info(f"  Token: {chain.token_address}")
            if chain.start_block is not None:
                logger.info(f"  Start Block: {chain.start_block}")

        logger.info("Monitoring Settings:")
        logger.info(f"  Confirmation Lag: {self.monitoring.confirmation_lag} blocks")
        logger.info(f"  Poll Interval: {self.monitoring.poll_interval} seconds")
        logger.info(f"  L2 Timeout: {self.monitoring.l2_timeout} seconds")
        logger.info(f"  Sweep Interval: {self.monitoring.sweep_interval} seconds")
        logger.info(f"  Retry Count: {self.monitoring.retry_count}")

        logger.info(f"Alert Webhook: {'[SET]' if self.alert_webhook_url else '[NOT SET]'}")
        logger.info("=" * 60)
