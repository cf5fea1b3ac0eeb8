"""
Bridge monitor service.

This module contains the service that wires both chain watchers to the
reconciliation engine and the gas analytics aggregator, and manages their
lifecycle as asyncio tasks.
"""

import asyncio
import logging

from .alerts import AlertSink, LoggingAlertSink, WebhookAlertSink
from .config import MonitorConfig
from .event_watcher import EventWatcher
from .gas_analytics import GasAnalyticsAggregator
from .models import ChainEvent, ChainId, ReorgNotice
from .reconciliation_engine import ReconciliationEngine
from .repository import InMemoryRepository, Repository
from .utils.chain_client import ChainClient
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)


class BridgeMonitor:
    """
    Main service that orchestrates both watchers and the reconciliation engine.

    This class focuses on construction and lifecycle management; event
    handling lives in EventWatcher and ReconciliationEngine.
    """

    STATUS_LOG_INTERVAL = 30  # seconds
    BRIDGE_CONTRACTS = {ChainId.L1: "L1Bridge", ChainId.L2: "L2Bridge"}
    TOKEN_CONTRACT = "BridgeToken"

    def __init__(
        self,
        config: MonitorConfig,
        repository: Repository | None = None,
        alert_sink: AlertSink | None = None,
        clients: dict[ChainId, ChainClient] | None = None
    ):
        """
        Initialize the bridge monitor.

        Args:
            config: Monitor configuration
            repository: Persistence backend (in-memory when omitted)
            alert_sink: Alert destination (webhook if configured, else log)
            clients: Pre-built chain clients (built from config when omitted)
        """
        self.config = config
        self.running = False

        self.repository = repository or InMemoryRepository()
        if alert_sink is None:
            alert_sink = (
                WebhookAlertSink(config.alert_webhook_url)
                if config.alert_webhook_url else LoggingAlertSink()
            )
        self.alert_sink = alert_sink

        self.contract_util = ContractUtility()
        self.clients = clients or {chain_id: self._build_client(chain_id) for chain_id in ChainId}

        monitoring = config.monitoring
        self.aggregator = GasAnalyticsAggregator(self.repository)
        self.engine = ReconciliationEngine(
            repository=self.repository,
            aggregator=self.aggregator,
            alert_sink=self.alert_sink,
            l2_timeout=monitoring.l2_timeout,
        )

        # One ordered queue per source chain
        self.queues: dict[ChainId, asyncio.Queue[ChainEvent | ReorgNotice]] = {
            chain_id: asyncio.Queue() for chain_id in ChainId
        }
        self.watchers: dict[ChainId, EventWatcher] = {
            chain_id: EventWatcher(
                client=self.clients[chain_id],
                queue=self.queues[chain_id],
                repository=self.repository,
                alert_sink=self.alert_sink,
                start_block=config.chain(chain_id).start_block,
                lookback_blocks=monitoring.lookback_blocks,
                max_block_range=monitoring.max_block_range,
                poll_interval=monitoring.poll_interval,
                suspend_interval=monitoring.suspend_interval,
            )
            for chain_id in ChainId
        }

        # Async coordination
        self.shutdown_event = asyncio.Event()

    def _build_client(self, chain_id: ChainId) -> ChainClient:
        chain = self.config.chain(chain_id)
        monitoring = self.config.monitoring

        token_abi = self.contract_util.get_contract_abi(self.TOKEN_CONTRACT) if chain.token_address else None
        client = ChainClient(
            chain_id=chain_id,
            rpc_url=chain.rpc_url,
            bridge_address=chain.bridge_address,
            bridge_abi=self.contract_util.get_contract_abi(self.BRIDGE_CONTRACTS[chain_id]),
            token_address=chain.token_address,
            token_abi=token_abi,
            confirmation_lag=monitoring.confirmation_lag,
            retry_count=monitoring.retry_count,
            base_delay=monitoring.base_delay,
            max_delay=monitoring.max_delay,
            request_timeout=monitoring.request_timeout,
            reorg_window=monitoring.reorg_window,
        )
        logger.info(f"{chain_id.value} client: {chain.rpc_url} (bridge {chain.bridge_address})")
        return client

    @classmethod
    def from_env(cls) -> "BridgeMonitor":
        """
        Create a BridgeMonitor instance from environment variables.

        Raises:
            ValueError: If required environment variables are missing
        """
        config = MonitorConfig.from_env()
        config.log_config()
        return cls(config)

    async def _periodic_status_logger(self) -> None:
        """Log status periodically while running."""
        while self.running:
            await asyncio.sleep(self.STATUS_LOG_INTERVAL)
            stats = self.engine.get_stats()
            watchers = ", ".join(
                f"{w.chain_id.value}@{w.cursor} ({'ok' if w.healthy else 'degraded'})"
                for w in self.watchers.values()
            )
            logger.info(
                f"Status: {stats['AWAITING_L2']} awaiting L2, {stats['MATCHED']} matched, "
                f"{stats['TIMED_OUT']} timed out, {stats['events_quarantined']} quarantined; "
                f"watchers: {watchers}"
            )

    async def _check_task_health(self, tasks: dict[str, asyncio.Task]) -> bool:
        """Check if any critical task has failed."""
        for name, task in tasks.items():
            if task.done() and name != "status":  # status task can end normally
                try:
                    await task
                except Exception as e:
                    logger.error(f"{name} task failed: {e}", exc_info=True)
                return False
        return True

    async def _cleanup_tasks(self, tasks: dict[str, asyncio.Task]) -> None:
        """Stop watchers, drain queued events within the grace period, then cancel."""
        grace = self.config.monitoring.shutdown_grace

        for watcher in self.watchers.values():
            await watcher.stop()

        # Cursors are only persisted once the engine has processed a range, so
        # cancelling in-flight polls or dropping queued events cannot skip blocks
        watcher_tasks = [task for name, task in tasks.items() if name.endswith("_watcher")]
        for task in watcher_tasks:
            task.cancel()
        await asyncio.gather(*watcher_tasks, return_exceptions=True)

        consumers_alive = any(
            not task.done() for name, task in tasks.items() if name.endswith("_consumer")
        )
        if consumers_alive:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(queue.join() for queue in self.queues.values())),
                    timeout=grace
                )
            except asyncio.TimeoutError:
                remaining = sum(queue.qsize() for queue in self.queues.values())
                logger.warning(f"Shutdown grace of {grace}s elapsed with {remaining} queued events")

        for task in tasks.values():
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks.values(), return_exceptions=True)

    async def run(self) -> None:
        """Main event loop for the monitor service."""
        self.running = True
        monitoring = self.config.monitoring
        logger.info("Bridge Monitor starting...")
        logger.info(f"Poll interval: {monitoring.poll_interval}s, confirmation lag: {monitoring.confirmation_lag}")

        tasks: dict[str, asyncio.Task] = {}
        try:
            self.engine.restore()
            for chain_id in ChainId:
                name = chain_id.value.lower()
                tasks[f"{name}_watcher"] = asyncio.create_task(self.watchers[chain_id].start_polling())
                tasks[f"{name}_consumer"] = asyncio.create_task(self.engine.consume(self.queues[chain_id]))
            tasks["sweeper"] = asyncio.create_task(
                self.engine.run_sweeper(monitoring.sweep_interval, archive_after=monitoring.archive_after)
            )
            tasks["status"] = asyncio.create_task(self._periodic_status_logger())

            logger.info("Bridge monitoring started, waiting for events...")

            # Wait until shutdown or task failure
            while self.running:
                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=1.0)
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    pass  # Continue running

                if not await self._check_task_health(tasks):
                    logger.error("Critical task failure, shutting down")
                    break

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            await self._cleanup_tasks(tasks)
            logger.info("Bridge Monitor stopped")

    def stop(self) -> None:
        """Stop the monitor service."""
        self.running = False
        self.shutdown_event.set()
