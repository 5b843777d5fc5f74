"""Carries captured attribution through tenant creation into storage.

Tenant creation is authoritative.  Attribution is advisory: it is written
exactly once per tenant after the tenant exists, and a failure to write it
never undoes the tenant.  Such failures go to the operator channel.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_core.alerts import AlertKind, OperatorAlert, OperatorChannel
from ledger_core.attribution.capture import TenantAttribution
from ledger_core.errors import AttributionPersistFailed, TenantProvisioningError
from ledger_core.state.database import set_tenant_context
from ledger_core.state.repository import TenantAttributionRepository

logger = logging.getLogger(__name__)


class RegistrationRequest(BaseModel):
    """A validated registration handed to the tenant provisioner.

    ``registration_id`` is the idempotency key: the provisioner returns the
    same tenant for a repeated registration.
    """

    registration_id: str = Field(min_length=1, max_length=128)
    account_name: str = Field(min_length=1, max_length=255)
    email: str | None = Field(default=None, max_length=320)
    signup_method: str | None = Field(default=None, max_length=100)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TenantProvisioner(Protocol):
    """External tenant provisioning service."""

    async def create_tenant(self, request: RegistrationRequest) -> str:
        """Create (or return the existing) tenant for *request*; returns its id."""
        ...


class PropagationResult(BaseModel):
    """Outcome of a registration.

    ``attribution_recorded`` is true when the tenant has a stored
    attribution after the call, including one kept from an earlier
    registration.
    """

    tenant_id: str
    attribution_recorded: bool = False


class HttpTenantProvisioner:
    """Async HTTP client for the tenant provisioning service.

    Parameters
    ----------
    base_url:
        Root URL of the provisioning service.
    timeout:
        Per-request timeout in seconds.
    service_token:
        Bearer token sent with every request, if set.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        service_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if service_token:
            headers["Authorization"] = f"Bearer {service_token}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    async def create_tenant(self, request: RegistrationRequest) -> str:
        """``POST /tenants`` and return the ``tenant_id`` from the response.

        Raises
        ------
        TenantProvisioningError
            On transport errors, non-2xx responses or a response without a
            tenant id.
        """
        try:
            response = await self._client.post(
                "/tenants",
                json=request.model_dump(mode="json"),
                headers={"Idempotency-Key": request.registration_id},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Tenant provisioner returned %d: %s",
                exc.response.status_code,
                exc.response.text[:500],
            )
            raise TenantProvisioningError(
                f"Tenant provisioner returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            logger.warning("Tenant provisioner request failed: %s", exc)
            raise TenantProvisioningError(f"Tenant provisioner unreachable: {exc}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise TenantProvisioningError("Tenant provisioner returned a non-JSON body") from exc
        tenant_id = payload.get("tenant_id") if isinstance(payload, dict) else None
        if not isinstance(tenant_id, str) or not tenant_id:
            raise TenantProvisioningError("Tenant provisioner response had no tenant_id")
        return tenant_id

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()


class AttributionPropagator:
    """Creates the tenant, then records its attribution at most once.

    Parameters
    ----------
    session_factory:
        Factory for the attribution write session.
    provisioner:
        External tenant provisioning service.
    operator_channel:
        Receives :class:`AttributionPersistFailed` alerts.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provisioner: TenantProvisioner,
        operator_channel: OperatorChannel,
    ) -> None:
        self._session_factory = session_factory
        self._provisioner = provisioner
        self._operator_channel = operator_channel

    async def propagate(
        self, request: RegistrationRequest, attribution: TenantAttribution | None
    ) -> PropagationResult:
        """Provision the tenant and persist *attribution* bound to it.

        Returns
        -------
        PropagationResult
            Carries the tenant id, also when attribution could not be
            stored.  Storage failures (database errors, driver socket
            errors, a tenant id the storage layer rejects) are reported to
            the operator channel and never raised.

        Raises
        ------
        TenantProvisioningError
            Provisioning failed; nothing was recorded.
        """
        tenant_id = await self._provisioner.create_tenant(request)

        if attribution is None:
            logger.info("Tenant %s registered without attribution (organic)", tenant_id)
            return PropagationResult(tenant_id=tenant_id)

        bound = attribution.bind(tenant_id)
        try:
            written = await self._persist(bound)
        except (SQLAlchemyError, OSError, ValueError) as exc:
            failure = AttributionPersistFailed(tenant_id, type(exc).__name__)
            logger.error("%s", failure, exc_info=True)
            await self._operator_channel.notify(
                OperatorAlert(
                    kind=AlertKind.ATTRIBUTION_PERSIST_FAILED,
                    message=str(failure),
                    tenant_id=tenant_id,
                    details={
                        "registration_id": request.registration_id,
                        "utm_source": bound.utm_source,
                        "utm_campaign": bound.utm_campaign,
                        "referral_code": bound.referral_code,
                    },
                )
            )
            return PropagationResult(tenant_id=tenant_id)

        if written:
            logger.info(
                "Recorded attribution for tenant %s (source=%s campaign=%s)",
                tenant_id,
                bound.utm_source,
                bound.utm_campaign,
            )
        else:
            logger.debug("Attribution for tenant %s already recorded; left unchanged", tenant_id)
        return PropagationResult(tenant_id=tenant_id, attribution_recorded=True)

    async def _persist(self, attribution: TenantAttribution) -> bool:
        assert attribution.tenant_id is not None  # noqa: S101
        async with self._session_factory() as session, session.begin():
            await set_tenant_context(session, attribution.tenant_id)
            return await TenantAttributionRepository(session).insert_if_absent(attribution.to_row())
