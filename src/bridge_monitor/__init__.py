"""
Bridge Monitor package.

Cross-chain event ingestion, deposit reconciliation and gas savings analytics
for a two-layer bridge.
"""

from .config import MonitorConfig
from .event_watcher import EventWatcher
from .gas_analytics import GasAnalyticsAggregator
from .models import ChainEvent, ChainId, EventType, GasAnalyticsRecord, OperationState, PendingOperation
from .monitor import BridgeMonitor
from .reconciliation_engine import ReconciliationEngine

__all__ = [
    "MonitorConfig",
    "BridgeMonitor",
    "EventWatcher",
    "ReconciliationEngine",
    "GasAnalyticsAggregator",
    "ChainEvent",
    "ChainId",
    "EventType",
    "OperationState",
    "PendingOperation",
    "GasAnalyticsRecord",
]
__version__ = "0.1.0"
