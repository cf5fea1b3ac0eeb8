"""
Persistence boundary for the bridge monitor.

The engine, aggregator and watchers only depend on the Repository protocol.
Every write is an upsert keyed by transaction, deposit id, pair key or chain,
so callers can retry freely. InMemoryRepository backs tests and single-process
deployments that do not need durability.
"""

import logging
from typing import Protocol

from .models import ChainEvent, ChainId, GasAnalyticsRecord, PendingOperation

logger = logging.getLogger(__name__)


class Repository(Protocol):
    """Durable store for transactions, operations, analytics and cursors."""

    def save_transaction(self, event: ChainEvent) -> None: ...

    def mark_reorged(self, chain_id: ChainId, from_block: int) -> int: ...

    def save_operation(self, operation: PendingOperation) -> None: ...

    def find_by_deposit_id(self, deposit_id: int) -> PendingOperation | None: ...

    def pending_operations(self) -> list[PendingOperation]: ...

    def find_by_leg_block(self, chain_id: ChainId, from_block: int) -> list[PendingOperation]: ...

    def save_analytics(self, record: GasAnalyticsRecord) -> None: ...

    def find_analytics(self, pair_key: str) -> GasAnalyticsRecord | None: ...

    def load_cursor(self, chain_id: ChainId) -> int | None: ...

    def save_cursor(self, chain_id: ChainId, block_number: int) -> None: ...


class InMemoryRepository:
    """Dictionary-backed Repository with upsert semantics."""

    CONFIRMED = "CONFIRMED"
    REORGED = "REORGED"

    def __init__(self) -> None:
        # (chain, tx_hash, log_index) -> (event, status)
        self.transactions: dict[tuple[ChainId, str, int], tuple[ChainEvent, str]] = {}
        self.operations: dict[int, PendingOperation] = {}
        self.analytics: dict[str, GasAnalyticsRecord] = {}
        self.cursors: dict[ChainId, int] = {}

    def save_transaction(self, event: ChainEvent) -> None:
        self.transactions[event.unique_key] = (event, self.CONFIRMED)

    def mark_reorged(self, chain_id: ChainId, from_block: int) -> int:
        """Mark stored transactions at or above ``from_block`` as reorged.

        Returns:
            Number of transactions marked
        """
        marked = 0
        for key, (event, status) in self.transactions.items():
            if (
                event.chain_id is chain_id
                and event.block_number >= from_block
                and status != self.REORGED
            ):
                self.transactions[key] = (event, self.REORGED)
                marked += 1
        if marked:
            logger.info(f"Marked {marked} {chain_id.value} transactions from block {from_block} as reorged")
        return marked

    def transaction_status(self, event: ChainEvent) -> str | None:
        entry = self.transactions.get(event.unique_key)
        return entry[1] if entry else None

    def save_operation(self, operation: PendingOperation) -> None:
        self.operations[operation.deposit_id] = operation.snapshot()

    def find_by_deposit_id(self, deposit_id: int) -> PendingOperation | None:
        operation = self.operations.get(deposit_id)
        return operation.snapshot() if operation else None

    def pending_operations(self) -> list[PendingOperation]:
        return [op.snapshot() for op in self.operations.values() if not op.is_terminal]

    def find_by_leg_block(self, chain_id: ChainId, from_block: int) -> list[PendingOperation]:
        """Operations holding a ``chain_id`` leg at or above ``from_block``."""
        return [
            op.snapshot() for op in self.operations.values()
            if (leg := op.leg(chain_id)) is not None and leg.block_number >= from_block
        ]

    def save_analytics(self, record: GasAnalyticsRecord) -> None:
        self.analytics[record.pair_key] = record

    def find_analytics(self, pair_key: str) -> GasAnalyticsRecord | None:
        return self.analytics.get(pair_key)

    def load_cursor(self, chain_id: ChainId) -> int | None:
        return self.cursors.get(chain_id)

    def save_cursor(self, chain_id: ChainId, block_number: int) -> None:
        self.cursors[chain_id] = block_number
