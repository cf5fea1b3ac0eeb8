"""
Cross-chain reconciliation of bridge deposits.

This module pairs each L1 deposit with its L2 credit by deposit id, drives
the per-deposit state machine, sweeps for deposits whose credit never
arrived, and retracts matches invalidated by a reorg. All mutations of one
deposit are serialized through a per-deposit lock; different deposits
proceed independently.
"""

import asyncio
import logging
import time
from collections import Counter, OrderedDict
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .alerts import Alert, AlertKind, AlertSink
from .errors import ComputationError, DataIntegrityError, InvalidTransition
from .models import ChainEvent, ChainId, EventType, OperationState, PendingOperation, ReorgNotice

if TYPE_CHECKING:
    from .gas_analytics import GasAnalyticsAggregator
    from .repository import Repository

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Matches L1 deposits to L2 credits and tracks their lifecycle."""

    MAX_APPLIED_EVENTS: int = 100_000

    def __init__(
        self,
        repository: "Repository",
        aggregator: "GasAnalyticsAggregator",
        alert_sink: AlertSink,
        l2_timeout: float = 900,
        clock: Callable[[], float] = time.time
    ) -> None:
        """
        Initialize the engine.

        Args:
            repository: Store for transactions and operation snapshots
            aggregator: Receives every matched pair
            alert_sink: Receives timeout, retraction and integrity alerts
            l2_timeout: Seconds an L1 deposit may wait for its L2 credit
            clock: Source of the current Unix time
        """
        self.repository = repository
        self.aggregator = aggregator
        self.alert_sink = alert_sink
        self.l2_timeout = l2_timeout
        self.clock = clock

        self.operations: dict[int, PendingOperation] = {}
        self._locks: dict[int, asyncio.Lock] = {}

        # Applied event keys with their block, for idempotence and reorg rewinds
        self._applied: OrderedDict[tuple[ChainId, str, int], int] = OrderedDict()

        self.events_applied = 0
        self.duplicates_ignored = 0
        self.events_quarantined = 0
        self.integrity_errors = 0

    def _lock(self, deposit_id: int) -> asyncio.Lock:
        return self._locks.setdefault(deposit_id, asyncio.Lock())

    def _mark_applied(self, event: ChainEvent) -> None:
        if len(self._applied) >= self.MAX_APPLIED_EVENTS:
            self._applied.popitem(last=False)
        self._applied[event.unique_key] = event.block_number

    def _transition(self, op: PendingOperation, target: OperationState, reorg: bool = False) -> None:
        if not PendingOperation.can_transition(op.state, target, reorg):
            raise InvalidTransition(op.deposit_id, f"{op.state.value} -> {target.value} is not permitted")
        now = self.clock()
        logger.debug(f"Deposit {op.deposit_id}: {op.state.value} -> {target.value}")
        op.state = target
        op.last_updated_at = now
        op.history.append((target, now))

    async def _alert(self, kind: AlertKind, message: str, deposit_id: int | None = None,
                     chain_id: ChainId | None = None) -> None:
        await self.alert_sink.emit(Alert(kind, message, chain_id=chain_id, deposit_id=deposit_id))

    # Event intake

    async def handle(self, item: ChainEvent | ReorgNotice) -> None:
        """
        Process one queue item, quarantining failures.

        Never raises for a bad item, so a consumer loop keeps running.
        """
        try:
            match item:
                case ReorgNotice():
                    await self.handle_reorg(item)
                case ChainEvent():
                    await self.apply_event(item)
                case _:
                    raise TypeError(f"Unexpected queue item: {type(item)}")
        except DataIntegrityError as e:
            self.events_quarantined += 1
            self.integrity_errors += 1
            logger.error(f"Data integrity error, event quarantined: {e}")
            await self._alert(AlertKind.DATA_INTEGRITY, str(e), deposit_id=e.deposit_id)
        except Exception as e:
            self.events_quarantined += 1
            logger.error(f"Error processing {item}: {e}", exc_info=True)

    async def apply_event(self, event: ChainEvent) -> PendingOperation | None:
        """
        Apply a single chain event.

        Re-delivery of an already applied event is a no-op. Non-deposit
        events are recorded but not reconciled.

        Args:
            event: Normalized event from a watcher

        Returns:
            The affected operation, or None for non-deposit events

        Raises:
            DataIntegrityError: If the event conflicts with an accepted leg
        """
        if event.unique_key in self._applied:
            self.duplicates_ignored += 1
            logger.debug(f"Ignoring re-delivered {event}")
            return self.operations.get(event.deposit_id) if event.deposit_id is not None else None

        self.repository.save_transaction(event)

        if event.event_type is not EventType.DEPOSIT or event.deposit_id is None:
            self._mark_applied(event)
            self.events_applied += 1
            return None

        deposit_id = event.deposit_id
        async with self._lock(deposit_id):
            op = self.operations.get(deposit_id) or self._resume(deposit_id)
            if op is None:
                now = self.clock()
                op = PendingOperation(deposit_id=deposit_id, created_at=now, last_updated_at=now)
                op.history.append((op.state, now))
                self.operations[deposit_id] = op
            elif event.unique_key in self._applied:
                # Leg already held by the stored snapshot
                self.duplicates_ignored += 1
                logger.debug(f"Ignoring re-delivered {event}")
                return op

            try:
                if event.chain_id is ChainId.L1:
                    await self._apply_l1_leg(op, event)
                else:
                    await self._apply_l2_leg(op, event)
            finally:
                self._mark_applied(event)
                self.repository.save_operation(op)

        self.events_applied += 1
        return op

    def _resume(self, deposit_id: int) -> PendingOperation | None:
        """Load an operation released from memory (restart or archive) back from the repository."""
        op = self.repository.find_by_deposit_id(deposit_id)
        if op is None:
            return None
        self._adopt(op)
        logger.info(f"Deposit {deposit_id}: resumed in state {op.state.value} from repository")
        return op

    def _adopt(self, op: PendingOperation) -> None:
        self.operations[op.deposit_id] = op
        for leg in (op.l1_event, op.l2_event):
            if leg is not None:
                self._mark_applied(leg)

    def restore(self) -> int:
        """
        Load every non-terminal operation from the repository.

        Called once at startup so timeouts and reorgs keep covering
        deposits that were in flight when the process stopped.

        Returns:
            Number of operations restored
        """
        restored = 0
        for op in self.repository.pending_operations():
            if op.deposit_id in self.operations:
                continue
            self._adopt(op)
            restored += 1
        if restored:
            logger.info(f"Restored {restored} pending operations from repository")
        return restored

    def _check_conflict(self, op: PendingOperation, existing: ChainEvent | None, event: ChainEvent) -> bool:
        """
        Returns True if the event is a re-delivery of the accepted leg.

        Raises:
            DataIntegrityError: If a different transaction claims the same leg
        """
        if existing is None:
            return False
        if existing.transaction_hash == event.transaction_hash:
            return True

        message = (
            f"conflicting {event.chain_id.value} deposit leg {event.transaction_hash} "
            f"(block {event.block_number}); keeping {existing.transaction_hash} "
            f"(block {existing.block_number})"
        )
        op.integrity_errors.append(message)
        raise DataIntegrityError(op.deposit_id, message)

    async def _apply_l1_leg(self, op: PendingOperation, event: ChainEvent) -> None:
        if self._check_conflict(op, op.l1_event, event):
            return

        if op.state is OperationState.TIMED_OUT:
            # Leg lost to a reorg after the timeout; the outcome stays as is
            op.l1_event = event
            op.last_updated_at = self.clock()
            logger.warning(f"Deposit {op.deposit_id}: L1 leg observed again after timeout: {event}")
            return

        target =OperationState.MATCHED if op.l2_event is not None else OperationState.AWAITING_L2
        if not PendingOperation.can_transition(op.state, target):
            raise InvalidTransition(op.deposit_id, f"L1 leg not accepted in state {op.state.value}")

        op.l1_event = event
        self._transition(op, target)
        if target is OperationState.MATCHED:
            logger.info(f"Deposit {op.deposit_id}: L1 leg arrived after L2 credit")
            await self._complete(op)
        else:
            op.timeout_deadline = self.clock() + self.l2_timeout
            logger.info(f"Deposit {op.deposit_id} observed on L1, awaiting L2 credit: {event}")

    async def _apply_l2_leg(self, op: PendingOperation, event: ChainEvent) -> None:
        if self._check_conflict(op, op.l2_event, event):
            return

        if op.state not in (OperationState.AWAITING_L1, OperationState.AWAITING_L2, OperationState.TIMED_OUT):
            raise InvalidTransition(op.deposit_id, f"L2 leg not accepted in state {op.state.value}")

        op.l2_event = event
        match op.state:
            case OperationState.AWAITING_L2:
                self._transition(op, OperationState.MATCHED)
                await self._complete(op)
            case OperationState.AWAITING_L1:
                op.last_updated_at = self.clock()
                logger.info(f"Deposit {op.deposit_id}: L2 credit observed before L1 deposit")
            case OperationState.TIMED_OUT:
                op.last_updated_at = self.clock()
                logger.warning(f"Deposit {op.deposit_id}: L2 credit arrived after timeout")
                await self._alert(
                    AlertKind.LATE_COMPLETION,
                    f"Deposit {op.deposit_id} credited on L2 after timing out",
                    deposit_id=op.deposit_id, chain_id=ChainId.L2
                )

    async def _complete(self, op: PendingOperation) -> None:
        """Hand a freshly matched pair to the aggregator."""
        op.timeout_deadline = None
        try:
            record = self.aggregator.on_matched(op.l1_event, op.l2_event)
        except ComputationError as e:
            logger.warning(f"Deposit {op.deposit_id}: analytics incomplete: {e}")
            record = self.aggregator.incomplete(op.l1_event, op.l2_event, str(e))
            await self._alert(AlertKind.COMPUTATION, str(e), deposit_id=op.deposit_id)
        op.analytics_key = record.pair_key
        logger.info(f"Deposit {op.deposit_id} matched across L1 and L2")

    # Reorgs

    async def handle_reorg(self, notice: ReorgNotice) -> list[int]:
        """
        Retract every leg observed at or above a reorganised block.

        Args:
            notice: Chain and lowest replaced block

        Returns:
            Deposit ids whose operation was affected
        """
        chain_id, affected = notice.chain_id, notice.block_number
        logger.warning(f"Handling reorg on {chain_id.value} from block {affected}")

        # Archived or pre-restart operations can still hold a replaced leg
        for stored in self.repository.find_by_leg_block(chain_id, affected):
            if stored.deposit_id not in self.operations:
                self._adopt(stored)

        for key in [k for k, block in self._applied.items() if k[0] is chain_id and block >= affected]:
            del self._applied[key]
        self.repository.mark_reorged(chain_id, affected)

        candidates = [
            deposit_id for deposit_id, op in self.operations.items()
            if (leg := op.leg(chain_id)) is not None and leg.block_number >= affected
        ]

        retracted = []
        for deposit_id in candidates:
            async with self._lock(deposit_id):
                op = self.operations[deposit_id]
                leg = op.leg(chain_id)
                if leg is None or leg.block_number < affected:
                    continue
                await self._retract_leg(op, chain_id)
                self.repository.save_operation(op)
                retracted.append(deposit_id)
        return retracted

    async def _retract_leg(self, op: PendingOperation, chain_id: ChainId) -> None:
        previous = op.state
        if chain_id is ChainId.L1:
            op.l1_event = None
        else:
            op.l2_event = None

        match previous:
            case OperationState.MATCHED:
                self._transition(op, OperationState.RETRACTED, reorg=True)
                if op.analytics_key is not None:
                    self.aggregator.retract(op.analytics_key)
                    op.analytics_key = None
                if op.l1_event is None:
                    self._transition(op, OperationState.AWAITING_L1)
                else:
                    self._transition(op, OperationState.AWAITING_L2)
                    op.timeout_deadline = self.clock() + self.l2_timeout
            case OperationState.AWAITING_L2:
                self._transition(op, OperationState.AWAITING_L1, reorg=True)
                op.timeout_deadline = None
            case OperationState.TIMED_OUT:
                op.integrity_errors.append(f"{chain_id.value} leg removed by reorg after timeout")
            case _:
                op.last_updated_at = self.clock()

        logger.warning(
            f"Deposit {op.deposit_id}: {chain_id.value} leg retracted by reorg, "
            f"{previous.value} -> {op.state.value}"
        )
        await self._alert(
            AlertKind.RETRACTION,
            f"Deposit {op.deposit_id} {chain_id.value} leg retracted by reorg ({previous.value} -> {op.state.value})",
            deposit_id=op.deposit_id, chain_id=chain_id
        )

    # Timeouts

    async def sweep_timeouts(self) -> list[int]:
        """
        Move every AWAITING_L2 operation past its deadline to TIMED_OUT.

        Returns:
            Deposit ids that timed out during this sweep
        """
        now = self.clock()
        candidates = [
            deposit_id for deposit_id, op in self.operations.items()
            if op.state is OperationState.AWAITING_L2
            and op.timeout_deadline is not None
            and op.timeout_deadline <= now
        ]

        timed_out = []
        for deposit_id in candidates:
            async with self._lock(deposit_id):
                op = self.operations[deposit_id]
                # Re-check under the lock; a match may have landed meanwhile
                if (
                    op.state is not OperationState.AWAITING_L2
                    or op.timeout_deadline is None
                    or op.timeout_deadline > now
                ):
                    continue
                self._transition(op, OperationState.TIMED_OUT)
                op.timeout_deadline = None
                self.repository.save_operation(op)
                timed_out.append(deposit_id)

            logger.warning(f"Deposit {deposit_id} timed out waiting for L2 credit")
            await self._alert(
                AlertKind.TIMEOUT,
                f"Deposit {deposit_id} not credited on L2 within {self.l2_timeout}s",
                deposit_id=deposit_id
            )
        return timed_out

    def archive(self, older_than: float) -> int:
        """
        Release terminal operations not updated for ``older_than`` seconds.

        Their snapshots already live in the repository.

        Returns:
            Number of operations released
        """
        cutoff = self.clock() - older_than
        stale = []
        for deposit_id, op in self.operations.items():
            lock = self._locks.get(deposit_id)
            if lock is not None and lock.locked():
                continue
            if op.is_terminal and op.last_updated_at < cutoff:
                stale.append(deposit_id)
        for deposit_id in stale:
            del self.operations[deposit_id]
            self._locks.pop(deposit_id, None)
        if stale:
            logger.info(f"Archived {len(stale)} terminal operations")
        return len(stale)

    # Consumers

    async def consume(self, queue: "asyncio.Queue[ChainEvent | ReorgNotice]") -> None:
        """Process items from one watcher's queue in order, forever."""
        while True:
            item = await queue.get()
            try:
                await self.handle(item)
            finally:
                queue.task_done()

    async def run_sweeper(self, interval: float, archive_after: float | None = None) -> None:
        """Periodically sweep for timeouts and release archived operations."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep_timeouts()
                if archive_after is not None:
                    self.archive(archive_after)
            except Exception as e:
                logger.error(f"Error in timeout sweep: {e}", exc_info=True)

    def get_stats(self) -> dict[str, Any]:
        """
        Get current engine statistics.

        Returns:
            Dictionary with per-state counts and processing counters
        """
        states = Counter(op.state.value for op in self.operations.values())
        return {
            "operations": len(self.operations),
            **{state.value: states.get(state.value, 0) for state in OperationState},
            "events_applied": self.events_applied,
            "duplicates_ignored": self.duplicates_ignored,
            "events_quarantined": self.events_quarantined,
            "integrity_errors": self.integrity_errors,
        }
