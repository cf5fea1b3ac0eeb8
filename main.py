#!/usr/bin/env python3
"""Entry point for the bridge monitor service.

Loads configuration from the environment and runs the monitor until it is
interrupted.
"""

import argparse
import asyncio
import logging
import os
import sys

# Called from main() once the log level is known
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# Get logger for this module
logger = logging.getLogger(__name__)

from bridge_monitor.monitor import BridgeMonitor


async def main() -> None:
    """Main entry point for the bridge monitor.

    Parses startup arguments, loads configuration from environment,
    and runs the monitor until interrupted.

    Raises:
        SystemExit: On configuration or runtime errors
    """
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Bridge Monitor - reconcile L1 deposits with L2 credits and track gas savings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  L1_RPC_URL            - RPC endpoint for the L1 settlement chain
  L2_RPC_URL            - RPC endpoint for the L2 scaling chain
  L1_BRIDGE_ADDRESS     - L1Bridge contract address
  L2_BRIDGE_ADDRESS     - L2Bridge contract address
  L1_TOKEN_ADDRESS      - Optional L1 token whose transfers are recorded
  L2_TOKEN_ADDRESS      - Optional L2 token whose transfers are recorded
  L1_START_BLOCK        - Optional first L1 block to scan
  L2_START_BLOCK        - Optional first L2 block to scan
  CONFIRMATION_LAG      - Blocks behind head treated as final (default: 6)
  POLL_INTERVAL         - Polling interval in seconds (default: 12)
  L2_TIMEOUT            - Seconds a deposit may wait for its L2 credit (default: 900)
  ALERT_WEBHOOK_URL     - Optional endpoint receiving alerts as JSON
  LOG_LEVEL             - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    args: argparse.Namespace = parser.parse_args()

    setup_logging(args.log_level)
    logger.info("=== Bridge Monitor Starting ===")

    monitor: BridgeMonitor | None = None
    try:
        monitor = BridgeMonitor.from_env()
        await monitor.run()

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - L1_RPC_URL / L2_RPC_URL: RPC endpoints for both chains")
        logger.error("  - L1_BRIDGE_ADDRESS / L2_BRIDGE_ADDRESS: bridge contract addresses")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
        if monitor is not None:
            monitor.stop()

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
