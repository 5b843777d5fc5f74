"""Usage typing, ingestion-edge classification and event store reads."""

from ledger_core.usage.events import RawUsageEvent, TimeWindow, UsageEvent
from ledger_core.usage.registry import NumericKind, UsageType, UsageTypeRegistry, UsageTypeSpec

__all__ = [
    "NumericKind",
    "RawUsageEvent",
    "TimeWindow",
    "UsageEvent",
    "UsageType",
    "UsageTypeRegistry",
    "UsageTypeSpec",
]
