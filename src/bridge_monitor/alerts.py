"""
Operator-facing signals emitted by the bridge monitor.

Sinks expose a single ``emit`` coroutine. Delivery failures are logged and
never propagate into the watchers or the engine.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import httpx

from .models import ChainId

logger = logging.getLogger(__name__)


class AlertKind(str, Enum):
    HEALTH_DEGRADED = "HEALTH_DEGRADED"
    HEALTH_RESTORED = "HEALTH_RESTORED"
    TIMEOUT = "TIMEOUT"
    RETRACTION = "RETRACTION"
    DATA_INTEGRITY = "DATA_INTEGRITY"
    COMPUTATION = "COMPUTATION"
    LATE_COMPLETION = "LATE_COMPLETION"


@dataclass(frozen=True, slots=True)
class Alert:
    """A single operator-visible notification."""
    kind: AlertKind
    message: str
    chain_id: ChainId | None = None
    deposit_id: int | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "chain_id": self.chain_id.value if self.chain_id else None,
            "deposit_id": self.deposit_id,
            "timestamp": self.timestamp,
        }


class AlertSink(Protocol):
    async def emit(self, alert: Alert) -> None: ...


class LoggingAlertSink:
    """Writes alerts to the log."""

    WARNING_KINDS = {
        AlertKind.HEALTH_DEGRADED,
        AlertKind.TIMEOUT,
        AlertKind.RETRACTION,
        AlertKind.DATA_INTEGRITY,
        AlertKind.COMPUTATION,
    }

    async def emit(self, alert: Alert) -> None:
        level = logging.WARNING if alert.kind in self.WARNING_KINDS else logging.INFO
        logger.log(level, f"[{alert.kind.value}] {alert.message}")


class WebhookAlertSink:
    """Posts alerts as JSON to an HTTP endpoint.

    Alerts are also logged locally, so a webhook outage does not hide them.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None
    ) -> None:
        """
        Initialize the webhook sink.

        Args:
            url: Endpoint receiving POSTed alerts
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used for testing)
        """
        self.url = url
        self.timeout = timeout
        self.transport = transport
        self.delivered = 0
        self.failed = 0
        self._fallback = LoggingAlertSink()

    async def emit(self, alert: Alert) -> None:
        await self._fallback.emit(alert)
        payload = alert.to_dict()
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                logger.debug(f"Posting alert to {self.url}: {json.dumps(payload)}")
                response = await client.post(self.url, json=payload, timeout=self.timeout)
                response.raise_for_status()
            self.delivered += 1
        except httpx.HTTPError as e:
            self.failed += 1
            logger.error(f"Failed to deliver {alert.kind.value} alert to webhook: {e}")
