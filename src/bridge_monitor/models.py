#!/usr/bin/env python3
"""Data models for the bridge monitor.

This module provides the immutable event records shared between the chain
watchers and the reconciliation engine, the mutable per-deposit operation
tracked by the engine, and the gas analytics records derived from matched
operations.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar


class ChainId(str, Enum):
    """The two layers of the bridge."""
    L1 = "L1"
    L2 = "L2"


class EventType(str, Enum):
    """Bridge-relevant event categories."""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER = "TRANSFER"


class OperationState(str, Enum):
    """Lifecycle of a cross-chain deposit."""
    AWAITING_L1 = "AWAITING_L1"
    AWAITING_L2 = "AWAITING_L2"
    MATCHED = "MATCHED"
    TIMED_OUT = "TIMED_OUT"
    RETRACTED = "RETRACTED"


@dataclass(frozen=True, slots=True)
class ChainEvent:
    """Normalized representation of a bridge log on either chain.

    Attributes:
        chain_id: Chain the log was emitted on
        event_type: DEPOSIT, WITHDRAWAL or TRANSFER
        transaction_hash: 0x-prefixed 32-byte transaction hash
        block_number: Block containing the log
        log_index: Position of the log within the block
        block_hash: 0x-prefixed hash of the containing block
        from_address: Sender (checksummed) or None when the event has no sender
        to_address: Recipient (checksummed)
        amount: Token amount in base units, as a decimal string
        deposit_id: Bridge correlation key, present for deposit legs
        gas_used: Gas consumed by the emitting transaction
        gas_price_wei: Effective gas price paid by the emitting transaction
        timestamp: Unix timestamp of the containing block
    """

    chain_id: ChainId
    event_type: EventType
    transaction_hash: str
    block_number: int
    log_index: int
    block_hash: str | None = None
    from_address: str | None = None
    to_address: str | None = None
    amount: str = "0"
    deposit_id: int | None = None
    gas_used: int | None = None
    gas_price_wei: int | None = None
    timestamp: int = 0

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"ChainEvent({self.chain_id.value} {self.event_type.value}, "
            f"tx={self.transaction_hash[:10]}..., "
            f"block={self.block_number}, "
            f"deposit={self.deposit_id})"
        )

    @property
    def unique_key(self) -> tuple[ChainId, str, int]:
        """Key used to deduplicate re-delivered logs."""
        return (self.chain_id, self.transaction_hash, self.log_index)

    @property
    def block_order(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "chain_id": self.chain_id.value,
            "event_type": self.event_type.value,
            "transaction_hash": self.transaction_hash,
            "block_number": self.block_number,
            "log_index": self.log_index,
            "block_hash": self.block_hash,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "amount": self.amount,
            "deposit_id": self.deposit_id,
            "gas_used": self.gas_used,
            "gas_price_wei": self.gas_price_wei,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class ReorgNotice:
    """Queued alongside events to tell the engine a block range was rewound."""
    chain_id: ChainId
    block_number: int


@dataclass(slots=True)
class PendingOperation:
    """A deposit tracked across both chains.

    Owned exclusively by the ReconciliationEngine while it is live; the
    repository only ever receives snapshots.
    """

    # Forward transitions driven by events and the timeout sweep
    TRANSITIONS: ClassVar[dict[OperationState, frozenset[OperationState]]] = {
        OperationState.AWAITING_L1: frozenset({OperationState.AWAITING_L2, OperationState.MATCHED}),
        OperationState.AWAITING_L2: frozenset({OperationState.MATCHED, OperationState.TIMED_OUT}),
        OperationState.MATCHED: frozenset(),
        OperationState.TIMED_OUT: frozenset(),
        OperationState.RETRACTED: frozenset({OperationState.AWAITING_L1, OperationState.AWAITING_L2}),
    }
    # Backward transitions only a reorg may cause
    REORG_TRANSITIONS: ClassVar[dict[OperationState, frozenset[OperationState]]] = {
        OperationState.AWAITING_L2: frozenset({OperationState.AWAITING_L1}),
        OperationState.MATCHED: frozenset({OperationState.RETRACTED}),
    }

    deposit_id: int
    created_at: float
    last_updated_at: float
    state: OperationState = OperationState.AWAITING_L1
    l1_event: ChainEvent | None = None
    l2_event: ChainEvent | None = None
    timeout_deadline: float | None = None
    analytics_key: str | None = None
    integrity_errors: list[str] = field(default_factory=list)
    history: list[tuple[OperationState, float]] = field(default_factory=list)

    @classmethod
    def can_transition(
        cls,
        current: OperationState,
        target: OperationState,
        reorg: bool = False
    ) -> bool:
        """Check whether the state machine permits ``current -> target``."""
        if target in cls.TRANSITIONS[current]:
            return True
        return reorg and target in cls.REORG_TRANSITIONS.get(current, frozenset())

    @property
    def is_terminal(self) -> bool:
        return self.state in (OperationState.MATCHED, OperationState.TIMED_OUT)

    def leg(self, chain_id: ChainId) -> ChainEvent | None:
        return self.l1_event if chain_id is ChainId.L1 else self.l2_event

    def snapshot(self) -> "PendingOperation":
        """Detached copy safe to hand to the repository."""
        return replace(
            self,
            integrity_errors=list(self.integrity_errors),
            history=list(self.history),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "deposit_id": self.deposit_id,
            "state": self.state.value,
            "l1_event": self.l1_event.to_dict() if self.l1_event else None,
            "l2_event": self.l2_event.to_dict() if self.l2_event else None,
            "created_at": self.created_at,
            "last_updated_at": self.last_updated_at,
            "timeout_deadline": self.timeout_deadline,
            "analytics_key": self.analytics_key,
            "integrity_errors": list(self.integrity_errors),
        }


@dataclass(frozen=True, slots=True)
class GasAnalyticsRecord:
    """Gas cost comparison for one matched L1/L2 pair.

    Attributes:
        pair_key: Combined transaction hashes of both legs, used for idempotence
        operation_type: Operation category, e.g. BRIDGE_DEPOSIT
        deposit_id: Correlation key of the pair
        l1_gas_cost_wei: gasUsed * gasPrice on L1, None when incomplete
        l2_gas_cost_wei: gasUsed * gasPrice on L2, None when incomplete
        l1_gas_cost_eth: L1 cost in ETH at fixed precision
        l2_gas_cost_eth: L2 cost in ETH at fixed precision
        savings_percentage: (l1 - l2) / l1 * 100, None when not applicable
        timestamp: Unix timestamp of the completing leg
        incomplete: Gas data was missing on at least one leg
        flagged: Record is stale or needs operator correction
        flag_reason: Why the record was flagged
    """

    pair_key: str
    operation_type: str
    deposit_id: int | None
    l1_gas_cost_wei: int | None
    l2_gas_cost_wei: int | None
    l1_gas_cost_eth: Decimal | None
    l2_gas_cost_eth: Decimal | None
    savings_percentage: Decimal | None
    timestamp: int
    incomplete: bool = False
    flagged: bool = False
    flag_reason: str | None = None

    @property
    def savings_applicable(self) -> bool:
        return self.savings_percentage is not None

    @property
    def savings_eth(self) -> Decimal | None:
        if self.l1_gas_cost_eth is None or self.l2_gas_cost_eth is None:
            return None
        return self.l1_gas_cost_eth - self.l2_gas_cost_eth

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "pair_key": self.pair_key,
            "operation_type": self.operation_type,
            "deposit_id": self.deposit_id,
            "l1_gas_cost_wei": str(self.l1_gas_cost_wei) if self.l1_gas_cost_wei is not None else None,
            "l2_gas_cost_wei": str(self.l2_gas_cost_wei) if self.l2_gas_cost_wei is not None else None,
            "l1_gas_cost_eth": str(self.l1_gas_cost_eth) if self.l1_gas_cost_eth is not None else None,
            "l2_gas_cost_eth": str(self.l2_gas_cost_eth) if self.l2_gas_cost_eth is not None else None,
            "savings_percentage": (
                str(self.savings_percentage) if self.savings_percentage is not None else "N/A"
            ),
            "timestamp": self.timestamp,
            "incomplete": self.incomplete,
            "flagged": self.flagged,
            "flag_reason": self.flag_reason,
        }
