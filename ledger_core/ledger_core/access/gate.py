"""Reporting access gate for usage, attribution and cursor queries.

Default deny.  A tenant credential may read its own usage and
attribution and nothing else.  A service credential may do only what its
explicit grants allow.  Every query path in the ledger goes through
:func:`require` before touching storage.
"""

from __future__ import annotations

import logging
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from ledger_core.errors import AccessDenied

logger = logging.getLogger(__name__)

_audit_logger = logging.getLogger("ledger.access")


class CallerKind(str, Enum):
    TENANT = "tenant"
    SERVICE = "service"


class QueryScope(str, Enum):
    """What a query reads."""

    TENANT_USAGE = "tenant_usage"
    TENANT_ATTRIBUTION = "tenant_attribution"
    CROSS_TENANT_AGGREGATE = "cross_tenant_aggregate"
    BILLING_CURSOR = "billing_cursor"


class ServiceGrant(str, Enum):
    """Explicit capabilities a service credential can carry."""

    READ_ANY_USAGE = "usage:read:any"
    AGGREGATE = "usage:aggregate"
    OPERATE_LEDGER = "ledger:operate"


# Grants that unlock each scope for a service credential.
_SERVICE_SCOPE_GRANTS: dict[QueryScope, frozenset[ServiceGrant]] = {
    QueryScope.TENANT_USAGE: frozenset({ServiceGrant.READ_ANY_USAGE}),
    QueryScope.TENANT_ATTRIBUTION: frozenset({ServiceGrant.READ_ANY_USAGE}),
    QueryScope.CROSS_TENANT_AGGREGATE: frozenset({ServiceGrant.AGGREGATE}),
    QueryScope.BILLING_CURSOR: frozenset({ServiceGrant.OPERATE_LEDGER}),
}

# Scopes a tenant credential may use on its own tenant.
_TENANT_SCOPES: frozenset[QueryScope] = frozenset({QueryScope.TENANT_USAGE, QueryScope.TENANT_ATTRIBUTION})

# Scopes that require a target tenant.
_TENANT_BOUND_SCOPES: frozenset[QueryScope] = frozenset(
    {QueryScope.TENANT_USAGE, QueryScope.TENANT_ATTRIBUTION, QueryScope.BILLING_CURSOR}
)


class CallerContext(BaseModel):
    """Authenticated identity attached to a query.

    Attributes
    ----------
    kind:
        Tenant or service credential.
    subject:
        Credential subject, recorded in the access audit log.
    tenant_id:
        The caller's own tenant (tenant credentials only).
    grants:
        Service grants (service credentials only; ignored for tenants).
    """

    model_config = ConfigDict(frozen=True)

    kind: CallerKind
    subject: str = "anonymous"
    tenant_id: str | None = None
    grants: frozenset[str] = Field(default_factory=frozenset)

    @classmethod
    def for_tenant(cls, tenant_id: str, subject: str | None = None) -> CallerContext:
        return cls(kind=CallerKind.TENANT, subject=subject or f"tenant:{tenant_id}", tenant_id=tenant_id)

    @classmethod
    def for_service(cls, subject: str, grants: set[str] | frozenset[str] | list[str]) -> CallerContext:
        return cls(kind=CallerKind.SERVICE, subject=subject, grants=frozenset(grants))

    def has_grant(self, grant: ServiceGrant) -> bool:
        return self.kind == CallerKind.SERVICE and grant.value in self.grants


class AccessDecision(BaseModel):
    """Allow or deny, with the reason."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


def _deny(reason: str) -> AccessDecision:
    return AccessDecision(allowed=False, reason=reason)


def authorize(caller: CallerContext | None, tenant_id: str | None, scope: QueryScope) -> AccessDecision:
    """Decide whether *caller* may run a *scope* query against *tenant_id*.

    Parameters
    ----------
    caller:
        Authenticated caller, or ``None`` for an unauthenticated request.
    tenant_id:
        Target tenant; ``None`` for an unscoped query.
    scope:
        What the query reads.
    """
    scope = QueryScope(scope)
    if caller is None:
        return _deny("unauthenticated")

    if scope in _TENANT_BOUND_SCOPES and not tenant_id:
        return _deny(f"{scope.value} requires a tenant")

    if caller.kind == CallerKind.TENANT:
        if not caller.tenant_id:
            return _deny("tenant credential has no tenant")
        if scope not in _TENANT_SCOPES:
            return _deny(f"tenant credentials cannot query {scope.value}")
        if tenant_id != caller.tenant_id:
            return _deny("cross-tenant access denied")
        return AccessDecision(allowed=True, reason="own tenant")

    if caller.kind == CallerKind.SERVICE:
        for grant in _SERVICE_SCOPE_GRANTS.get(scope, frozenset()):
            if caller.has_grant(grant):
                return AccessDecision(allowed=True, reason=f"service grant {grant.value}")
        return _deny(f"service credential lacks a grant for {scope.value}")

    return _deny("unknown caller kind")


def require(caller: CallerContext | None, tenant_id: str | None, scope: QueryScope) -> AccessDecision:
    """Like :func:`authorize` but raise :class:`AccessDenied` on deny.

    Denials are written to the ``ledger.access`` audit logger.
    """
    decision = authorize(caller, tenant_id, scope)
    if not decision.allowed:
        _audit_logger.warning(
            "Access denied: subject=%s kind=%s target=%s scope=%s reason=%s",
            caller.subject if caller else None,
            caller.kind.value if caller else None,
            tenant_id,
            QueryScope(scope).value,
            decision.reason,
        )
        raise AccessDenied(decision.reason)
    logger.debug(
        "Access allowed: subject=%s target=%s scope=%s (%s)",
        caller.subject if caller else None,
        tenant_id,
        QueryScope(scope).value,
        decision.reason,
    )
    return decision
