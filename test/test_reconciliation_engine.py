#!/usr/bin/env python3
"""Unit tests for the ReconciliationEngine module."""

import asyncio
from decimal import Decimal

import pytest

from bridge_monitor.alerts import AlertKind
from bridge_monitor.errors import DataIntegrityError, InvalidTransition
from bridge_monitor.gas_analytics import GasAnalyticsAggregator
from bridge_monitor.models import ChainId, EventType, OperationState, PendingOperation, ReorgNotice
from bridge_monitor.reconciliation_engine import ReconciliationEngine

from conftest import make_deposit


class TestStateMachine:
    """Tests for the permitted operation transitions."""

    @pytest.mark.parametrize("current,target", [
        (OperationState.AWAITING_L1, OperationState.AWAITING_L2),
        (OperationState.AWAITING_L1, OperationState.MATCHED),
        (OperationState.AWAITING_L2, OperationState.MATCHED),
        (OperationState.AWAITING_L2, OperationState.TIMED_OUT),
        (OperationState.RETRACTED, OperationState.AWAITING_L1),
        (OperationState.RETRACTED, OperationState.AWAITING_L2),
    ])
    def test_forward_transitions(self, current, target):
        assert PendingOperation.can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (OperationState.MATCHED, OperationState.AWAITING_L2),
        (OperationState.MATCHED, OperationState.TIMED_OUT),
        (OperationState.TIMED_OUT, OperationState.MATCHED),
        (OperationState.TIMED_OUT, OperationState.AWAITING_L2),
        (OperationState.AWAITING_L2, OperationState.AWAITING_L1),
    ])
    def test_backward_transitions_rejected(self, current, target):
        assert not PendingOperation.can_transition(current, target)

    def test_reorg_only_transitions(self):
        """Test that backward moves need a reorg."""
        assert PendingOperation.can_transition(OperationState.MATCHED, OperationState.RETRACTED, reorg=True)
        assert PendingOperation.can_transition(OperationState.AWAITING_L2, OperationState.AWAITING_L1, reorg=True)
        assert not PendingOperation.can_transition(OperationState.TIMED_OUT, OperationState.AWAITING_L1, reorg=True)


class TestReconciliationEngine:
    """Test suite for ReconciliationEngine functionality."""

    @pytest.mark.asyncio
    async def test_deposit_matched_within_timeout(self, engine, repository, clock):
        """Test an L1 deposit followed by its L2 credit."""
        await engine.apply_event(make_deposit(ChainId.L1, 7, block_number=100))
        assert engine.operations[7].state is OperationState.AWAITING_L2
        assert engine.operations[7].timeout_deadline == clock.now + 900

        clock.advance(60)
        op = await engine.apply_event(make_deposit(ChainId.L2, 7, block_number=5_000))

        assert op.state is OperationState.MATCHED
        assert op.timeout_deadline is None
        record = repository.analytics[op.analytics_key]
        assert record.savings_percentage == Decimal("99.52")
        assert repository.find_by_deposit_id(7).state is OperationState.MATCHED
        assert [state for state, _ in op.history] == [
            OperationState.AWAITING_L1, OperationState.AWAITING_L2, OperationState.MATCHED
        ]

    @pytest.mark.asyncio
    async def test_timeout_alerts_exactly_once(self, engine, alert_sink, clock):
        """Test that a deposit without an L2 credit times out and alerts once."""
        await engine.apply_event(make_deposit(ChainId.L1, 9, block_number=100))

        clock.advance(899)
        assert await engine.sweep_timeouts() == []

        clock.advance(1)
        assert await engine.sweep_timeouts() == [9]
        assert await engine.sweep_timeouts() == []

        assert engine.operations[9].state is OperationState.TIMED_OUT
        timeouts = alert_sink.of_kind(AlertKind.TIMEOUT)
        assert len(timeouts) == 1
        assert timeouts[0].deposit_id == 9

    @pytest.mark.asyncio
    async def test_reorg_returns_operation_to_awaiting_l1(self, engine, repository, aggregator, alert_sink):
        """Test that a reorg removing the L1 leg retracts the match and flags analytics."""
        l1 = make_deposit(ChainId.L1, 5, block_number=100)
        await engine.apply_event(l1)
        await engine.apply_event(make_deposit(ChainId.L2, 5, block_number=300))
        key = engine.operations[5].analytics_key

        affected = await engine.handle_reorg(ReorgNotice(ChainId.L1, 100))

        op = engine.operations[5]
        assert affected == [5]
        assert op.state is OperationState.AWAITING_L1
        assert op.l1_event is None
        assert op.l2_event is not None
        assert op.analytics_key is None
        assert OperationState.RETRACTED in [state for state, _ in op.history]
        assert repository.analytics[key].flagged
        assert key not in aggregator.records
        assert repository.transaction_status(l1) == repository.REORGED
        assert len(alert_sink.of_kind(AlertKind.RETRACTION)) == 1

    @pytest.mark.asyncio
    async def test_conflicting_deposit_keeps_first(self, engine, alert_sink):
        """Test that a second L1 transaction for the same deposit id is rejected."""
        first = make_deposit(ChainId.L1, 3, block_number=100, tx_seed=301)
        await engine.apply_event(first)
        before = engine.operations[3].state

        with pytest.raises(DataIntegrityError):
            await engine.apply_event(make_deposit(ChainId.L1, 3, block_number=101, tx_seed=302))

        op = engine.operations[3]
        assert op.state is before
        assert op.l1_event == first
        assert len(op.integrity_errors) == 1

    @pytest.mark.asyncio
    async def test_conflict_through_handle_is_quarantined(self, engine, alert_sink):
        """Test that handle() quarantines a conflicting event and alerts."""
        await engine.handle(make_deposit(ChainId.L1, 3, block_number=100, tx_seed=301))
        await engine.handle(make_deposit(ChainId.L1, 3, block_number=101, tx_seed=302))

        stats = engine.get_stats()
        assert stats["events_quarantined"] == 1
        assert stats["integrity_errors"] == 1
        alerts = alert_sink.of_kind(AlertKind.DATA_INTEGRITY)
        assert len(alerts) == 1
        assert alerts[0].deposit_id == 3

    @pytest.mark.asyncio
    async def test_redelivery_is_noop(self, engine, repository):
        """Test that replaying the same events changes nothing."""
        l1 = make_deposit(ChainId.L1, 11, block_number=100)
        l2 = make_deposit(ChainId.L2, 11, block_number=200)
        for event in (l1, l2, l1, l2):
            await engine.apply_event(event)

        assert engine.operations[11].state is OperationState.MATCHED
        assert engine.duplicates_ignored == 2
        assert len(repository.analytics) == 1
        assert len(engine.operations[11].history) == 3

    @pytest.mark.asyncio
    async def test_l2_before_l1(self, engine, repository):
        """Test that an L2 credit observed first waits for its L1 deposit."""
        op = await engine.apply_event(make_deposit(ChainId.L2, 12, block_number=200))
        assert op.state is OperationState.AWAITING_L1
        assert op.l2_event is not None
        assert op.timeout_deadline is None

        op = await engine.apply_event(make_deposit(ChainId.L1, 12, block_number=100))

        assert op.state is OperationState.MATCHED
        assert op.analytics_key in repository.analytics

    @pytest.mark.asyncio
    async def test_late_l2_credit_after_timeout(self, engine, alert_sink, clock):
        """Test that a credit after the timeout is recorded and alerted, not matched."""
        await engine.apply_event(make_deposit(ChainId.L1, 13, block_number=100))
        clock.advance(901)
        await engine.sweep_timeouts()

        op = await engine.apply_event(make_deposit(ChainId.L2, 13, block_number=200))

        assert op.state is OperationState.TIMED_OUT
        assert op.l2_event is not None
        assert op.analytics_key is None
        assert len(alert_sink.of_kind(AlertKind.LATE_COMPLETION)) == 1

    @pytest.mark.asyncio
    async def test_missing_gas_produces_flagged_record(self, engine, repository, alert_sink):
        """Test that missing gas data completes the match with an incomplete record."""
        await engine.apply_event(make_deposit(ChainId.L1, 14, block_number=100))
        op = await engine.apply_event(make_deposit(ChainId.L2, 14, block_number=200, missing_gas=True))

        assert op.state is OperationState.MATCHED
        record = repository.analytics[op.analytics_key]
        assert record.incomplete
        assert record.flagged
        assert len(alert_sink.of_kind(AlertKind.COMPUTATION)) == 1

    @pytest.mark.asyncio
    async def test_non_deposit_events_recorded_only(self, engine, repository):
        """Test that withdrawals and transfers are stored but not reconciled."""
        withdrawal = make_deposit(ChainId.L2, 15, block_number=200, event_type=EventType.WITHDRAWAL)
        transfer = make_deposit(ChainId.L1, 16, block_number=100, event_type=EventType.TRANSFER)

        assert await engine.apply_event(withdrawal) is None
        assert await engine.apply_event(transfer) is None

        assert engine.operations == {}
        assert repository.transaction_status(withdrawal) == repository.CONFIRMED
        assert repository.transaction_status(transfer) == repository.CONFIRMED

    @pytest.mark.asyncio
    async def test_l2_reorg_reopens_deposit(self, engine, clock):
        """Test that losing the L2 credit sends the operation back to AWAITING_L2."""
        await engine.apply_event(make_deposit(ChainId.L1, 17, block_number=100))
        await engine.apply_event(make_deposit(ChainId.L2, 17, block_number=200))

        await engine.handle_reorg(ReorgNotice(ChainId.L2, 150))

        op = engine.operations[17]
        assert op.state is OperationState.AWAITING_L2
        assert op.timeout_deadline == clock.now + 900

    @pytest.mark.asyncio
    async def test_reorg_before_match_drops_pending_leg(self, engine):
        """Test that an AWAITING_L2 operation goes back to AWAITING_L1 on an L1 reorg."""
        await engine.apply_event(make_deposit(ChainId.L1, 18, block_number=100))

        await engine.handle_reorg(ReorgNotice(ChainId.L1, 90))

        op = engine.operations[18]
        assert op.state is OperationState.AWAITING_L1
        assert op.timeout_deadline is None

    @pytest.mark.asyncio
    async def test_reorg_ignores_lower_blocks(self, engine):
        """Test that legs below the reorganised block are untouched."""
        await engine.apply_event(make_deposit(ChainId.L1, 19, block_number=100))
        await engine.apply_event(make_deposit(ChainId.L2, 19, block_number=200))

        assert await engine.handle_reorg(ReorgNotice(ChainId.L1, 101)) == []
        assert engine.operations[19].state is OperationState.MATCHED

    @pytest.mark.asyncio
    async def test_event_reapplied_after_reorg(self, engine):
        """Test that an event re-emitted after a reorg is applied again."""
        l1 = make_deposit(ChainId.L1, 20, block_number=100)
        await engine.apply_event(l1)
        await engine.apply_event(make_deposit(ChainId.L2, 20, block_number=200))
        await engine.handle_reorg(ReorgNotice(ChainId.L1, 100))

        op = await engine.apply_event(l1)

        assert op.state is OperationState.MATCHED
        assert engine.duplicates_ignored == 0

    @pytest.mark.asyncio
    async def test_matched_operation_never_times_out(self, engine, clock):
        """Test that the sweep leaves matched operations alone."""
        await engine.apply_event(make_deposit(ChainId.L1, 21, block_number=100))
        await engine.apply_event(make_deposit(ChainId.L2, 21, block_number=200))
        clock.advance(10_000)

        assert await engine.sweep_timeouts() == []
        assert engine.operations[21].state is OperationState.MATCHED

    @pytest.mark.asyncio
    async def test_concurrent_legs_match_once(self, engine, repository):
        """Test that both legs applied concurrently produce one match."""
        await asyncio.gather(
            engine.apply_event(make_deposit(ChainId.L1, 22, block_number=100)),
            engine.apply_event(make_deposit(ChainId.L2, 22, block_number=200)),
        )

        assert engine.operations[22].state is OperationState.MATCHED
        assert len(repository.analytics) == 1

    @pytest.mark.asyncio
    async def test_l1_leg_rejected_after_timeout_with_new_tx(self, engine, clock):
        """Test that a timed-out deposit cannot be matched by a second L1 claim."""
        await engine.apply_event(make_deposit(ChainId.L1, 23, block_number=100, tx_seed=2301))
        clock.advance(1_000)
        await engine.sweep_timeouts()

        with pytest.raises(DataIntegrityError):
            await engine.apply_event(make_deposit(ChainId.L1, 23, block_number=150, tx_seed=2302))
        assert engine.operations[23].state is OperationState.TIMED_OUT

    @pytest.mark.asyncio
    async def test_l1_leg_reobserved_after_timeout_and_reorg(self, engine, alert_sink, clock):
        """Test that an L1 leg re-emitted after a reorg on a timed-out deposit is recorded quietly."""
        l1 = make_deposit(ChainId.L1, 29, block_number=100)
        await engine.apply_event(l1)
        clock.advance(901)
        await engine.sweep_timeouts()
        await engine.handle_reorg(ReorgNotice(ChainId.L1, 100))
        assert engine.operations[29].l1_event is None

        await engine.handle(l1)

        op = engine.operations[29]
        assert op.state is OperationState.TIMED_OUT
        assert op.l1_event == l1
        assert op.analytics_key is None
        assert alert_sink.of_kind(AlertKind.DATA_INTEGRITY) == []
        assert engine.events_quarantined == 0

    @pytest.mark.asyncio
    async def test_archive_releases_old_terminal_operations(self, engine, repository, clock):
        """Test that archiving drops terminal operations but keeps snapshots."""
        await engine.apply_event(make_deposit(ChainId.L1, 24, block_number=100))
        await engine.apply_event(make_deposit(ChainId.L2, 24, block_number=200))
        await engine.apply_event(make_deposit(ChainId.L1, 25, block_number=101))

        clock.advance(100)
        assert engine.archive(older_than=3_600) == 0

        clock.advance(3_600)
        assert engine.archive(older_than=3_600) == 1
        assert 24 not in engine.operations
        assert 25 in engine.operations
        assert repository.find_by_deposit_id(24).state is OperationState.MATCHED

    @pytest.mark.asyncio
    async def test_consume_processes_queue_in_order(self, engine):
        """Test the queue consumer loop."""
        queue = asyncio.Queue()
        await queue.put(make_deposit(ChainId.L1, 26, block_number=100))
        await queue.put(make_deposit(ChainId.L2, 26, block_number=200))

        consumer = asyncio.create_task(engine.consume(queue))
        await asyncio.wait_for(queue.join(), timeout=1.0)
        consumer.cancel()
        await asyncio.gather(consumer, return_exceptions=True)

        assert engine.operations[26].state is OperationState.MATCHED

    @pytest.mark.asyncio
    async def test_get_stats(self, engine, clock):
        """Test the per-state counts."""
        await engine.apply_event(make_deposit(ChainId.L1, 27, block_number=100))
        await engine.apply_event(make_deposit(ChainId.L1, 28, block_number=101))
        await engine.apply_event(make_deposit(ChainId.L2, 28, block_number=200))

        stats = engine.get_stats()

        assert stats["operations"] == 2
        assert stats["AWAITING_L2"] == 1
        assert stats["MATCHED"] == 1
        assert stats["TIMED_OUT"] == 0
        assert stats["events_applied"] == 3


def test_invalid_transition_is_integrity_error():
    """Test the error hierarchy used for quarantining."""
    assert issubclass(InvalidTransition, DataIntegrityError)


def restart(repository, alert_sink, clock) -> ReconciliationEngine:
    """Build a fresh engine over an existing repository, as after a process restart."""
    return ReconciliationEngine(
        repository=repository,
        aggregator=GasAnalyticsAggregator(repository),
        alert_sink=alert_sink,
        l2_timeout=900,
        clock=clock,
    )


class TestRestart:
    """Tests for engines resuming from a populated repository."""

    @pytest.mark.asyncio
    async def test_l2_credit_after_restart_matches(self, engine, repository, alert_sink, clock):
        """Test that a credit arriving after a restart completes the stored deposit."""
        l1 = make_deposit(ChainId.L1, 7, block_number=100)
        await engine.apply_event(l1)

        restarted = restart(repository, alert_sink, clock)
        op = await restarted.apply_event(make_deposit(ChainId.L2, 7, block_number=200))

        assert op.state is OperationState.MATCHED
        stored = repository.find_by_deposit_id(7)
        assert stored.state is OperationState.MATCHED
        assert stored.l1_event == l1
        assert len(repository.analytics) == 1
        assert [state for state, _ in op.history] == [
            OperationState.AWAITING_L1, OperationState.AWAITING_L2, OperationState.MATCHED
        ]

    @pytest.mark.asyncio
    async def test_replayed_legs_after_restart_are_noops(self, engine, repository, alert_sink, clock):
        l1 = make_deposit(ChainId.L1, 8, block_number=100)
        l2 = make_deposit(ChainId.L2, 8, block_number=200)
        await engine.apply_event(l1)
        await engine.apply_event(l2)

        restarted = restart(repository, alert_sink, clock)
        await restarted.apply_event(l1)
        await restarted.apply_event(l2)

        assert restarted.duplicates_ignored == 2
        assert restarted.events_applied == 0
        assert len(repository.analytics) == 1
        assert len(repository.find_by_deposit_id(8).history) == 3

    @pytest.mark.asyncio
    async def test_archived_operation_reloaded_for_late_credit(self, engine, repository, alert_sink, clock):
        """Test that a credit for an archived timed-out deposit sees the stored state."""
        await engine.apply_event(make_deposit(ChainId.L1, 9, block_number=100))
        clock.advance(901)
        await engine.sweep_timeouts()
        clock.advance(3_601)
        assert engine.archive(older_than=3_600) == 1

        op = await engine.apply_event(make_deposit(ChainId.L2, 9, block_number=200))

        assert op.state is OperationState.TIMED_OUT
        assert op.l1_event is not None
        assert len(alert_sink.of_kind(AlertKind.LATE_COMPLETION)) == 1
        assert repository.find_by_deposit_id(9).l1_event is not None

    @pytest.mark.asyncio
    async def test_restore_keeps_timeouts_running(self, engine, repository, alert_sink, clock):
        """Test that restored pending deposits still time out."""
        await engine.apply_event(make_deposit(ChainId.L1, 10, block_number=100))
        await engine.apply_event(make_deposit(ChainId.L1, 11, block_number=101))
        await engine.apply_event(make_deposit(ChainId.L2, 11, block_number=200))

        restarted = restart(repository, alert_sink, clock)
        assert restarted.restore() == 1
        assert 11 not in restarted.operations

        clock.advance(900)
        assert await restarted.sweep_timeouts() == [10]
        assert repository.find_by_deposit_id(10).state is OperationState.TIMED_OUT
        assert [a.deposit_id for a in alert_sink.of_kind(AlertKind.TIMEOUT)] == [10]

    @pytest.mark.asyncio
    async def test_reorg_after_restart_retracts_stored_match(self, engine, repository, alert_sink, clock):
        """Test that a reorg reaches matches made before the restart."""
        l1 = make_deposit(ChainId.L1, 12, block_number=100)
        await engine.apply_event(l1)
        await engine.apply_event(make_deposit(ChainId.L2, 12, block_number=200))
        key = engine.operations[12].analytics_key

        restarted = restart(repository, alert_sink, clock)
        assert await restarted.handle_reorg(ReorgNotice(ChainId.L1, 100)) == [12]

        assert repository.find_by_deposit_id(12).state is OperationState.AWAITING_L1
        assert repository.analytics[key].flagged

        op = await restarted.apply_event(l1)

        assert op.state is OperationState.MATCHED
        assert not repository.analytics[key].flagged
