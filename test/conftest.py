"""Shared fixtures and event factories for the bridge monitor tests."""

import pytest

from bridge_monitor.alerts import Alert
from bridge_monitor.gas_analytics import GasAnalyticsAggregator
from bridge_monitor.models import ChainEvent, ChainId, EventType
from bridge_monitor.reconciliation_engine import ReconciliationEngine
from bridge_monitor.repository import InMemoryRepository

GWEI = 10 ** 9

RECIPIENT = "0x742d35Cc6634C0532925a3b844Bc9e7595f0fA99"
SENDER = "0x85BfE05492aFC3D04Ff3B2ca6771ACF6f853d90d"


def tx_hash(seed: int) -> str:
    return "0x" + f"{seed:064x}"


def make_deposit(
    chain_id: ChainId,
    deposit_id: int,
    block_number: int,
    tx_seed: int | None = None,
    log_index: int = 0,
    gas_used: int | None = None,
    gas_price_wei: int | None = None,
    missing_gas: bool = False,
    timestamp: int = 1_700_000_000,
    event_type: EventType = EventType.DEPOSIT,
) -> ChainEvent:
    """Build a deposit leg; gas defaults to 21000 at 50 gwei on L1 and 5000 at 1 gwei on L2."""
    if gas_used is None and not missing_gas:
        gas_used = 21_000 if chain_id is ChainId.L1 else 5_000
    if gas_price_wei is None and not missing_gas:
        gas_price_wei = 50 * GWEI if chain_id is ChainId.L1 else GWEI
    if tx_seed is None:
        tx_seed = deposit_id * 10 + (1 if chain_id is ChainId.L1 else 2)
    return ChainEvent(
        chain_id=chain_id,
        event_type=event_type,
        transaction_hash=tx_hash(tx_seed),
        block_number=block_number,
        log_index=log_index,
        block_hash=tx_hash(block_number + 1_000_000),
        from_address=SENDER if chain_id is ChainId.L1 else None,
        to_address=RECIPIENT,
        amount="1000000000000000000",
        deposit_id=deposit_id if event_type is EventType.DEPOSIT else None,
        gas_used=gas_used,
        gas_price_wei=gas_price_wei,
        timestamp=timestamp,
    )


class RecordingAlertSink:
    """Collects emitted alerts in memory."""

    def __init__(self):
        self.alerts: list[Alert] = []

    async def emit(self, alert: Alert) -> None:
        self.alerts.append(alert)

    def of_kind(self, kind) -> list[Alert]:
        return [a for a in self.alerts if a.kind is kind]


class FakeChainClient:
    """In-memory stand-in for ChainClient serving a fixed set of events."""

    def __init__(self, chain_id=ChainId.L1, head=120, confirmation_lag=6):
        self.chain_id = chain_id
        self.head = head
        self.confirmation_lag = confirmation_lag
        self.events = []
        self.requests = []
        self.failures: list[Exception] = []

    async def safe_head(self):
        if self.failures:
            raise self.failures.pop(0)
        return max(0, self.head - self.confirmation_lag)

    async def fetch_events(self, from_block, to_block):
        self.requests.append((from_block, to_block))
        if self.failures:
            raise self.failures.pop(0)
        return [e for e in self.events if from_block <= e.block_number <= to_block]


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def alert_sink():
    return RecordingAlertSink()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def aggregator(repository):
    return GasAnalyticsAggregator(repository)


@pytest.fixture
def engine(repository, aggregator, alert_sink, clock):
    """Create a ReconciliationEngine with a 900 second L2 timeout."""
    return ReconciliationEngine(
        repository=repository,
        aggregator=aggregator,
        alert_sink=alert_sink,
        l2_timeout=900,
        clock=clock,
    )
