"""Tenant usage ledger: reconciliation passes, summaries and gated queries."""

from ledger_core.ledger.models import (
    BillingCursor,
    PairReport,
    PairState,
    PassResult,
    ReconcileReport,
    SummaryStatus,
    UsageSummary,
)
from ledger_core.ledger.queries import LedgerQueries
from ledger_core.ledger.reconciler import TenantUsageLedger, build_ledger

__all__ = [
    "BillingCursor",
    "LedgerQueries",
    "PairReport",
    "PairState",
    "PassResult",
    "ReconcileReport",
    "SummaryStatus",
    "TenantUsageLedger",
    "UsageSummary",
    "build_ledger",
]
