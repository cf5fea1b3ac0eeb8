"""
Gas cost analytics for matched bridge operations.

This module turns a matched L1/L2 pair into a GasAnalyticsRecord comparing
what the operation cost on each layer, and keeps running aggregates over the
records that are still considered valid.
"""

import logging
from collections import defaultdict
from dataclasses import replace
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from .errors import ComputationError
from .models import ChainEvent, GasAnalyticsRecord

if TYPE_CHECKING:
    from .repository import Repository

logger = logging.getLogger(__name__)

WEI_PER_ETH = Decimal(10) ** 18
ETH_PRECISION = Decimal("1e-10")
PERCENT_PRECISION = Decimal("0.01")


def wei_to_eth(wei: int) -> Decimal:
    """Convert wei to ETH quantized to 10 decimal places."""
    return (Decimal(wei) / WEI_PER_ETH).quantize(ETH_PRECISION, rounding=ROUND_HALF_UP)


def pair_key(l1_event: ChainEvent, l2_event: ChainEvent) -> str:
    """Combined transaction hashes identifying a matched pair."""
    return f"{l1_event.transaction_hash}:{l2_event.transaction_hash}"


def savings_percentage(l1_cost_eth: Decimal, l2_cost_eth: Decimal) -> Decimal | None:
    """Percentage saved by running on L2, or None when L1 cost is zero."""
    if l1_cost_eth == 0:
        return None
    savings = (l1_cost_eth - l2_cost_eth) / l1_cost_eth * 100
    return savings.quantize(PERCENT_PRECISION, rounding=ROUND_HALF_UP)


class GasAnalyticsAggregator:
    """Derives and stores gas savings analytics from matched pairs."""

    BRIDGE_DEPOSIT = "BRIDGE_DEPOSIT"

    def __init__(self, repository: "Repository | None" = None) -> None:
        self.repository = repository
        # Live records keyed by pair key; retracted records are removed
        self.records: dict[str, GasAnalyticsRecord] = {}
        self.records_created = 0
        self.records_retracted = 0

    def on_matched(
        self,
        l1_event: ChainEvent,
        l2_event: ChainEvent,
        operation_type: str = BRIDGE_DEPOSIT
    ) -> GasAnalyticsRecord:
        """
        Compute the gas comparison for a matched pair.

        Re-processing the same pair returns the stored record without
        writing a second one.

        Args:
            l1_event: L1 leg of the pair
            l2_event: L2 leg of the pair
            operation_type: Operation category for the record

        Returns:
            The analytics record for the pair

        Raises:
            ComputationError: If either leg lacks gas_used or gas_price_wei
        """
        key = pair_key(l1_event, l2_event)
        if (existing := self.records.get(key)) is not None:
            logger.debug(f"Analytics for pair {key[:21]}... already recorded")
            return existing

        for leg in (l1_event, l2_event):
            if leg.gas_used is None or leg.gas_price_wei is None:
                raise ComputationError(
                    f"{leg.chain_id.value} leg {leg.transaction_hash} is missing gas data"
                )

        l1_cost_wei = l1_event.gas_used * l1_event.gas_price_wei
        l2_cost_wei = l2_event.gas_used * l2_event.gas_price_wei
        l1_cost_eth = wei_to_eth(l1_cost_wei)
        l2_cost_eth = wei_to_eth(l2_cost_wei)

        record = GasAnalyticsRecord(
            pair_key=key,
            operation_type=operation_type,
            deposit_id=l1_event.deposit_id,
            l1_gas_cost_wei=l1_cost_wei,
            l2_gas_cost_wei=l2_cost_wei,
            l1_gas_cost_eth=l1_cost_eth,
            l2_gas_cost_eth=l2_cost_eth,
            savings_percentage=savings_percentage(l1_cost_eth, l2_cost_eth),
            timestamp=max(l1_event.timestamp, l2_event.timestamp),
        )
        if not record.savings_applicable:
            logger.warning(f"L1 cost is zero for deposit {record.deposit_id}, savings not applicable")

        self._store(record)
        self.records_created += 1
        logger.info(
            f"Gas analytics for deposit {record.deposit_id}: "
            f"L1={l1_cost_eth} ETH, L2={l2_cost_eth} ETH, "
            f"savings={record.savings_percentage if record.savings_applicable else 'N/A'}%"
        )
        return record

    def incomplete(
        self,
        l1_event: ChainEvent,
        l2_event: ChainEvent,
        reason: str,
        operation_type: str = BRIDGE_DEPOSIT
    ) -> GasAnalyticsRecord:
        """Store a flagged record for a pair whose gas data is unusable."""
        key = pair_key(l1_event, l2_event)
        if (existing := self.records.get(key)) is not None:
            return existing

        record = GasAnalyticsRecord(
            pair_key=key,
            operation_type=operation_type,
            deposit_id=l1_event.deposit_id,
            l1_gas_cost_wei=None,
            l2_gas_cost_wei=None,
            l1_gas_cost_eth=None,
            l2_gas_cost_eth=None,
            savings_percentage=None,
            timestamp=max(l1_event.timestamp, l2_event.timestamp),
            incomplete=True,
            flagged=True,
            flag_reason=reason,
        )
        self._store(record)
        return record

    def retract(self, key: str, reason: str = "retracted") -> GasAnalyticsRecord | None:
        """
        Flag a previously emitted record for correction.

        The flagged version replaces the stored one and the record leaves the
        live aggregates, so a later re-match computes it afresh.

        Returns:
            The flagged record, or None if no unflagged record exists for the key
        """
        record = self.records.pop(key, None)
        if record is None and self.repository is not None:
            # Emitted before a restart; only the stored copy remains
            stored = self.repository.find_analytics(key)
            if stored is not None and not stored.flagged:
                record = stored
        if record is None:
            return None

        flagged = replace(record, flagged=True, flag_reason=reason)
        if self.repository is not None:
            self.repository.save_analytics(flagged)
        self.records_retracted += 1
        logger.warning(f"Analytics record for deposit {record.deposit_id} flagged: {reason}")
        return flagged

    def _store(self, record: GasAnalyticsRecord) -> None:
        self.records[record.pair_key] = record
        if self.repository is not None:
            self.repository.save_analytics(record)

    def _applicable(self) -> list[GasAnalyticsRecord]:
        return [
            r for r in self.records.values()
            if not r.flagged and r.savings_applicable
        ]

    def savings_summary(self) -> dict[str, Any]:
        """
        Summarize savings across all live, applicable records.

        Returns:
            Dictionary with record count, total ETH saved and average savings
        """
        records = self._applicable()
        if not records:
            return {"records": 0, "total_savings_eth": Decimal(0), "average_savings_percentage": None}

        total = sum((r.savings_eth for r in records), Decimal(0))
        average = sum((r.savings_percentage for r in records), Decimal(0)) / len(records)
        return {
            "records": len(records),
            "total_savings_eth": total,
            "average_savings_percentage": average.quantize(PERCENT_PRECISION, rounding=ROUND_HALF_UP),
        }

    def bucketed(self, bucket_seconds: int = 3600) -> list[dict[str, Any]]:
        """
        Average costs and savings per operation type and time bucket.

        Args:
            bucket_seconds: Width of each time bucket

        Returns:
            One dictionary per (operation_type, bucket_start), oldest first
        """
        if bucket_seconds <= 0:
            raise ValueError(f"Bucket width must be positive, got {bucket_seconds}")

        buckets: dict[tuple[str, int], list[GasAnalyticsRecord]] = defaultdict(list)
        for record in self._applicable():
            start = record.timestamp - record.timestamp % bucket_seconds
            buckets[(record.operation_type, start)].append(record)

        rows = []
        for (operation_type, start), records in sorted(buckets.items(), key=lambda item: (item[0][1], item[0][0])):
            count = len(records)
            rows.append({
                "operation_type": operation_type,
                "bucket_start": start,
                "records": count,
                "l1_gas_cost_eth": sum((r.l1_gas_cost_eth for r in records), Decimal(0)) / count,
                "l2_gas_cost_eth": sum((r.l2_gas_cost_eth for r in records), Decimal(0)) / count,
                "savings_percentage": (
                    sum((r.savings_percentage for r in records), Decimal(0)) / count
                ).quantize(PERCENT_PRECISION, rounding=ROUND_HALF_UP),
            })
        return rows

    def get_stats(self) -> dict[str, int]:
        """Get current aggregator statistics."""
        return {
            "live_records": len(self.records),
            "records_created": self.records_created,
            "records_retracted": self.records_retracted,
        }
