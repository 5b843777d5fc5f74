"""Registration attribution capture and propagation."""

from ledger_core.attribution.capture import RegistrationContext, TenantAttribution, capture, sanitize_url
from ledger_core.attribution.propagator import (
    AttributionPropagator,
    HttpTenantProvisioner,
    PropagationResult,
    RegistrationRequest,
    TenantProvisioner,
)

__all__ = [
    "AttributionPropagator",
    "HttpTenantProvisioner",
    "PropagationResult",
    "RegistrationContext",
    "RegistrationRequest",
    "TenantAttribution",
    "TenantProvisioner",
    "capture",
    "sanitize_url",
]
