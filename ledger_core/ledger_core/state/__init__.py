"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from ledger_core.state.database import get_engine, get_session_factory
from ledger_core.state.repository import (
    BillingCursorRepository,
    PassLockRepository,
    TenantAttributionRepository,
    UsageEventRepository,
    UsageSummaryRepository,
)

__all__ = [
    "BillingCursorRepository",
    "PassLockRepository",
    "TenantAttributionRepository",
    "UsageEventRepository",
    "UsageSummaryRepository",
    "get_engine",
    "get_session_factory",
]
