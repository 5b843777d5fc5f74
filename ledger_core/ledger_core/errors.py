"""Exception taxonomy for the usage ledger.

Ingestion errors (:class:`UnknownUsageType`, :class:`InvalidUsageEvent`)
are raised at the edge and never reach the ledger.  Scan errors are
retried by the ledger before surfacing.  :class:`AccessDenied` and
:class:`AttributionPersistFailed` are audit-sensitive and must always be
surfaced to a caller or to the operator channel.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all ledger errors."""


class UnknownUsageType(LedgerError):
    """A raw event kind has no mapping in the usage type registry."""

    def __init__(self, raw_kind: str) -> None:
        self.raw_kind = raw_kind
        super().__init__(f"Unknown usage type: {raw_kind!r}")


class InvalidUsageEvent(LedgerError):
    """A classified event failed validation (unit mismatch, bad quantity)."""


class IncomparableUsageTypes(LedgerError):
    """Two different usage types were requested in one aggregate."""


class TenantProvisioningError(LedgerError):
    """The tenant provisioning service refused or failed a registration."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class AttributionPersistFailed(LedgerError):
    """Attribution could not be stored for an already-created tenant.

    Advisory: the tenant is not rolled back.
    """

    def __init__(self, tenant_id: str, reason: str) -> None:
        self.tenant_id = tenant_id
        self.reason = reason
        super().__init__(f"Failed to persist attribution for tenant {tenant_id}: {reason}")


class ScanError(LedgerError):
    """Base class for retryable event-store read failures."""


class ScanTimeout(ScanError):
    """A page read from the event store exceeded its timeout."""


class ScanIOError(ScanError):
    """The event store could not be read."""


class ReconciliationConflict(LedgerError):
    """Another pass for the same (tenant, usage type) pair is in flight."""

    def __init__(self, tenant_id: str, usage_type: str, held_by: str | None = None) -> None:
        self.tenant_id = tenant_id
        self.usage_type = usage_type
        self.held_by = held_by
        detail = f" (held by {held_by})" if held_by else ""
        super().__init__(f"Reconciliation already in flight for {tenant_id}/{usage_type}{detail}")


class AccessDenied(LedgerError):
    """The reporting access gate rejected a query."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)
