"""Default-deny access control for ledger queries."""

from ledger_core.access.gate import (
    AccessDecision,
    CallerContext,
    CallerKind,
    QueryScope,
    ServiceGrant,
    authorize,
    require,
)

__all__ = [
    "AccessDecision",
    "CallerContext",
    "CallerKind",
    "QueryScope",
    "ServiceGrant",
    "authorize",
    "require",
]
