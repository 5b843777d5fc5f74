"""Public registration endpoint.

Captures first-touch attribution from the request (``Referer`` header,
query string and explicit body fields), provisions the tenant and
records the attribution bound to it.  Attribution storage failures do
not fail the registration; they are reported to the operator channel.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, Field

from ledger_api.dependencies import PropagatorDep
from ledger_api.middleware.prometheus import REGISTRATIONS_TOTAL
from ledger_core.attribution.capture import RegistrationContext, capture
from ledger_core.attribution.propagator import RegistrationRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/registrations", tags=["registrations"])

_CHANNEL_HEADER = "x-signup-channel"
_DEFAULT_CHANNEL = "api"


class RegistrationBody(BaseModel):
    """Registration payload.

    Attribution fields are optional and untrusted; they are sanitized
    before anything is stored.
    """

    registration_id: str = Field(..., min_length=1, max_length=128)
    account_name: str = Field(..., min_length=1, max_length=255)
    email: str | None = Field(None, max_length=320)
    signup_method: str | None = Field(None, max_length=100)
    metadata: dict[str, Any] = Field(default_factory=dict)

    landing_page: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_content: str | None = None
    utm_term: str | None = None
    referral_code: str | None = None


_ATTRIBUTION_FIELDS: tuple[str, ...] = (
    "landing_page",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "referral_code",
)


@router.post("", status_code=status.HTTP_201_CREATED)
async def register(body: RegistrationBody, request: Request, propagator: PropagatorDep) -> dict[str, Any]:
    """Provision a tenant and record its first-touch attribution."""
    context = RegistrationContext(
        referrer=request.headers.get("referer"),
        landing_page=body.landing_page,
        query_params=dict(request.query_params),
        body={name: getattr(body, name) for name in _ATTRIBUTION_FIELDS if getattr(body, name) is not None},
        signup_channel=request.headers.get(_CHANNEL_HEADER) or _DEFAULT_CHANNEL,
        signup_method=body.signup_method,
    )
    attribution = capture(context)

    registration = RegistrationRequest(
        registration_id=body.registration_id,
        account_name=body.account_name,
        email=body.email,
        signup_method=body.signup_method,
        metadata=body.metadata,
    )
    try:
        result = await propagator.propagate(registration, attribution)
    except Exception:
        REGISTRATIONS_TOTAL.labels(outcome="failed").inc()
        raise

    if result.attribution_recorded:
        outcome = "attributed"
    elif attribution is None:
        outcome = "organic"
    else:
        outcome = "attribution_lost"
    REGISTRATIONS_TOTAL.labels(outcome=outcome).inc()
    return {
        "tenant_id": result.tenant_id,
        "registration_id": body.registration_id,
        "attributed": result.attribution_recorded,
    }
