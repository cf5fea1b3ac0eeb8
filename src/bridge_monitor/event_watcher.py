"""
Per-chain polling watcher.

An EventWatcher polls its ChainClient for newly confirmed blocks, pushes
each bridge event exactly once onto its chain's queue, and persists the
cursor only after the engine has processed every queued event of a range.
A crash in between re-emits events on restart but never skips a block.
"""

import asyncio
import logging
from collections import OrderedDict
from enum import Enum
from typing import TYPE_CHECKING, Any

from .alerts import Alert, AlertKind, AlertSink
from .errors import ReorgDetected, RpcError
from .models import ChainEvent, ReorgNotice

if TYPE_CHECKING:
    from .repository import Repository
    from .utils.chain_client import ChainClient


class WatcherState(Enum):
    """Polling state of a watcher."""
    IDLE = "idle"
    POLLING = "polling"
    EMITTING = "emitting"
    REORG_RECOVERY = "reorg_recovery"
    SUSPENDED = "suspended"


class EventWatcher:
    """Polls one chain for confirmed bridge events."""

    MAX_EMITTED_KEYS: int = 10_000

    def __init__(
        self,
        client: "ChainClient",
        queue: "asyncio.Queue[ChainEvent | ReorgNotice]",
        repository: "Repository",
        alert_sink: AlertSink,
        start_block: int | None = None,
        lookback_blocks: int = 100,
        max_block_range: int = 2000,
        poll_interval: float = 12,
        suspend_interval: float = 60
    ) -> None:
        """
        Initialize the watcher.

        Args:
            client: ChainClient for this watcher's chain
            queue: Ordered queue consumed by the reconciliation engine
            repository: Store holding the persisted cursor
            alert_sink: Receives health signals
            start_block: First block to scan when no cursor is persisted
            lookback_blocks: Blocks below the safe head to start from when
                neither a cursor nor a start block is available
            max_block_range: Largest range requested in a single fetch
            poll_interval: Seconds between polls
            suspend_interval: Seconds to back off after retries are exhausted
        """
        self.client = client
        self.chain_id = client.chain_id
        self.queue = queue
        self.repository = repository
        self.alert_sink = alert_sink
        self.start_block = start_block
        self.lookback_blocks = lookback_blocks
        self.max_block_range = max_block_range
        self.poll_interval = poll_interval
        self.suspend_interval = suspend_interval

        self.state = WatcherState.IDLE
        self.cursor: int | None = None
        self.healthy = True
        self.is_running = False

        # Keys of emitted events with their block, for dedup and reorg rewinds
        self._emitted: OrderedDict[tuple[Any, str, int], int] = OrderedDict()

        self.events_emitted = 0
        self.duplicates_skipped = 0
        self.reorgs_handled = 0

        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}.{self.chain_id.value}")

    async def initialize_cursor(self) -> int:
        """
        Resolve the starting cursor (last fully processed block).

        Uses the persisted cursor when present, else the configured start
        block, else ``lookback_blocks`` below the safe head.
        """
        persisted = self.repository.load_cursor(self.chain_id)
        if persisted is not None:
            self.cursor = persisted
            source = "persisted cursor"
        elif self.start_block is not None:
            self.cursor = max(-1, self.start_block - 1)
            source = f"start block {self.start_block}"
        else:
            safe_head = await self.client.safe_head()
            self.cursor = max(-1, safe_head - self.lookback_blocks)
            source = f"lookback of {self.lookback_blocks} blocks"

        self.logger.info(f"Watching {self.chain_id.value} from block {self.cursor + 1} ({source})")
        return self.cursor

    async def poll_once(self) -> int:
        """
        Run a single poll tick.

        Returns:
            Number of events emitted during the tick

        Raises:
            RpcError: If the client exhausted its retries
        """
        if self.cursor is None:
            await self.initialize_cursor()

        self.state = WatcherState.POLLING
        safe_head = await self.client.safe_head()
        if safe_head <= self.cursor:
            return 0

        emitted = 0
        try:
            while self.cursor < safe_head:
                from_block = self.cursor + 1
                to_block = min(safe_head, from_block + self.max_block_range - 1)
                events = await self.client.fetch_events(from_block, to_block)

                self.state = WatcherState.EMITTING
                for event in events:
                    if await self._emit(event):
                        emitted += 1

                await self._commit(to_block)
                self.state = WatcherState.POLLING
        except ReorgDetected as reorg:
            await self._recover_from_reorg(reorg)

        return emitted

    async def _emit(self, event: ChainEvent) -> bool:
        key = event.unique_key
        if key in self._emitted:
            self.duplicates_skipped += 1
            self.logger.debug(f"Skipping already emitted {event}")
            return False

        await self.queue.put(event)

        if len(self._emitted) >= self.MAX_EMITTED_KEYS:
            self._emitted.popitem(last=False)
        self._emitted[key] = event.block_number
        self.events_emitted += 1
        return True

    async def _commit(self, block_number: int) -> None:
        """Wait for the engine to finish the queued events, then persist the cursor."""
        if not self.queue.empty():
            self.logger.debug(f"Waiting for {self.queue.qsize()} queued events before committing block {block_number}")
        await self.queue.join()
        self.cursor = block_number
        self.repository.save_cursor(self.chain_id, block_number)

    async def _recover_from_reorg(self, reorg: ReorgDetected) -> None:
        """Rewind the cursor and tell the engine which blocks were replaced."""
        self.state = WatcherState.REORG_RECOVERY
        self.reorgs_handled += 1
        affected = reorg.block_number
        rewind_to = max(0, affected - self.client.confirmation_lag)

        self.logger.warning(
            f"Reorg at block {affected} on {self.chain_id.value}, "
            f"rewinding cursor from {self.cursor} to {rewind_to}"
        )

        # Events from the replaced range must be emitted again if they reappear
        for key in [k for k, block in self._emitted.items() if block >= affected]:
            del self._emitted[key]

        await self.queue.put(ReorgNotice(self.chain_id, affected))
        await self._commit(min(self.cursor, rewind_to))
        self.state = WatcherState.POLLING

    async def _set_health(self, healthy: bool, reason: str = "") -> None:
        if healthy == self.healthy:
            return
        self.healthy = healthy
        if healthy:
            alert = Alert(AlertKind.HEALTH_RESTORED, f"{self.chain_id.value} polling recovered", self.chain_id)
        else:
            alert = Alert(AlertKind.HEALTH_DEGRADED, f"{self.chain_id.value} polling suspended: {reason}", self.chain_id)
        await self.alert_sink.emit(alert)

    async def start_polling(self) -> None:
        """
        Poll until stopped or cancelled.

        RPC failures suspend polling for ``suspend_interval`` and mark the
        chain degraded; the loop itself never exits on them.
        """
        if self.is_running:
            self.logger.warning("Polling already running")
            return

        self.is_running = True
        self.logger.info(f"Starting polling on {self.chain_id.value} every {self.poll_interval} seconds")

        while self.is_running:
            try:
                await self.poll_once()
                await self._set_health(True)
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                self.logger.info("Polling cancelled")
                raise
            except RpcError as e:
                self.state = WatcherState.SUSPENDED
                await self._set_health(False, str(e))
                self.logger.error(f"Suspending {self.chain_id.value} polling for {self.suspend_interval}s: {e}")
                await asyncio.sleep(self.suspend_interval)
            except Exception as e:
                self.logger.error(f"Error in polling loop: {e}", exc_info=True)
                # Continue polling despite errors
                await asyncio.sleep(self.poll_interval)

        self.state = WatcherState.IDLE

    async def stop(self) -> None:
        """Stop the polling loop after the current tick."""
        self.logger.info(f"Stopping polling on {self.chain_id.value}")
        self.is_running = False

    def get_status(self) -> dict[str, Any]:
        """
        Get current status of the watcher.

        Returns:
            Dictionary with status information
        """
        return {
            "chain_id": self.chain_id.value,
            "state": self.state.value,
            "cursor": self.cursor,
            "healthy": self.healthy,
            "is_running": self.is_running,
            "events_emitted": self.events_emitted,
            "duplicates_skipped": self.duplicates_skipped,
            "reorgs_handled": self.reorgs_handled,
        }
