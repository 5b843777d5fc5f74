"""Operator channel for advisory and operational alerts.

Alerts are emitted for conditions an operator must see but that must not
fail the primary path: attribution persistence failures during
registration, reconciliation passes that exhausted their scan retries, and
passes that failed on a database error.
Channel errors are logged and never propagate to callers.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_operator_logger = logging.getLogger("ledger.operator")


class AlertKind(str, Enum):
    ATTRIBUTION_PERSIST_FAILED = "attribution.persist_failed"
    SCAN_RETRIES_EXHAUSTED = "ledger.scan_retries_exhausted"
    RECONCILIATION_FAILED = "ledger.reconciliation_failed"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


class OperatorAlert(BaseModel):
    """A single alert routed to the operator channel."""

    kind: AlertKind
    severity: AlertSeverity = AlertSeverity.ERROR
    message: str
    tenant_id: str | None = None
    usage_type: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    raised_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class OperatorChannel(Protocol):
    """Protocol for alert delivery."""

    async def notify(self, alert: OperatorAlert) -> None:
        """Deliver *alert* to operators."""
        ...


class LoggingOperatorChannel:
    """Writes alerts to the ``ledger.operator`` logger.

    Optional async *forwarders* (pager, chat webhook) are invoked after the
    log line; their failures are logged and swallowed.
    """

    def __init__(self, forwarders: list[Callable[[OperatorAlert], Awaitable[None]]] | None = None) -> None:
        self._forwarders = list(forwarders or [])

    def add_forwarder(self, forwarder: Callable[[OperatorAlert], Awaitable[None]]) -> None:
        self._forwarders.append(forwarder)

    async def notify(self, alert: OperatorAlert) -> None:
        level = logging.ERROR if alert.severity == AlertSeverity.ERROR else logging.WARNING
        _operator_logger.log(
            level,
            "%s: %s (tenant=%s usage_type=%s)",
            alert.kind.value,
            alert.message,
            alert.tenant_id,
            alert.usage_type,
            extra={"alert": alert.model_dump(mode="json")},
        )
        if not self._forwarders:
            return

        async def _safe_call(forwarder: Callable[[OperatorAlert], Awaitable[None]]) -> None:
            try:
                await forwarder(alert)
            except Exception:
                logger.warning("Operator alert forwarder failed for %s", alert.kind.value, exc_info=True)

        await asyncio.gather(*(_safe_call(f) for f in self._forwarders))
