"""Usage event definitions at the ingestion boundary and inside the ledger.

:class:`RawUsageEvent` is what the ingestion pipeline hands over; it is
tagged by ``usage_type_raw`` and has not been classified.
:class:`UsageEvent` is the classified, validated form the reader yields and
the ledger sums.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ledger_core.usage.registry import UsageType


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class TimeWindow(BaseModel):
    """Half-open interval ``[start, end)`` over ``occurred_at``."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def is_empty(self) -> bool:
        return self.end <= self.start


class RawUsageEvent(BaseModel):
    """An unclassified event as emitted by the ingestion pipeline.

    Attributes
    ----------
    event_id:
        Globally unique identifier; the ledger deduplicates on it.
    tenant_id:
        Tenant the usage belongs to.
    usage_type_raw:
        Raw event kind, resolved through the usage type registry.
    quantity:
        Amount consumed, in ``unit``.
    unit:
        Unit as reported by the producer.  Must match the canonical unit
        of the classified type.
    occurred_at:
        When the usage happened.  Decides the billing period.
    observed_at:
        When the event landed in the store.  Bounds deterministic replays.
    """

    event_id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:16]}", min_length=1, max_length=128)
    tenant_id: str = Field(min_length=1, max_length=64)
    usage_type_raw: str = Field(min_length=1, max_length=128)
    quantity: Decimal | int
    unit: str = Field(min_length=1, max_length=32)
    occurred_at: datetime
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("occurred_at", "observed_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class UsageEvent(BaseModel):
    """A classified usage event with its quantity in canonical form."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    tenant_id: str
    usage_type: UsageType
    quantity: int | Decimal
    unit: str
    occurred_at: datetime
    observed_at: datetime

    @field_validator("occurred_at", "observed_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)
