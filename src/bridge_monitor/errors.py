"""
Error taxonomy for the bridge monitor.

Transient infrastructure failures surface as RpcError once ChainClient has
exhausted its retries. Reorganisations are reported as ReorgDetected and are
recovered by the watcher. Reconciliation problems (conflicting claims,
missing gas data) are never retried automatically.
"""

from typing import Any


class BridgeMonitorError(Exception):
    """Base class for all bridge monitor errors."""


class RpcError(BridgeMonitorError):
    """RPC transport failure that survived every retry attempt."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class ReorgDetected(BridgeMonitorError):
    """A previously returned block no longer matches the canonical chain."""

    def __init__(self, chain_id: Any, block_number: int) -> None:
        super().__init__(f"Reorg detected on {chain_id} at block {block_number}")
        self.chain_id = chain_id
        self.block_number = block_number


class DataIntegrityError(BridgeMonitorError):
    """Conflicting or impossible data for a single deposit."""

    def __init__(self, deposit_id: int | None, message: str) -> None:
        super().__init__(f"Deposit {deposit_id}: {message}")
        self.deposit_id = deposit_id


class InvalidTransition(DataIntegrityError):
    """A state change that the operation state machine does not permit."""


class ComputationError(BridgeMonitorError):
    """Gas analytics could not be derived from a matched pair."""
