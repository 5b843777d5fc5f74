"""SQLAlchemy 2.0 ORM table definitions for the ledger state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    String,
    UniqueConstraint,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware UTC datetime on every dialect.

    PostgreSQL stores ``timestamptz`` natively.  SQLite has no timezone
    support, so values are normalised to UTC before binding and re-tagged
    as UTC on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# Fixed-point quantity column shared by events and summaries.
_Quantity = Numeric(28, 6, asdecimal=True)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all ledger tables."""


# ---------------------------------------------------------------------------
# Raw usage events (written by ingestion, read-only to the ledger)
# ---------------------------------------------------------------------------


class UsageEventTable(Base):
    """Classified usage events as landed by the ingestion pipeline.

    ``event_id`` is not the primary key: at-least-once delivery may land
    the same event twice, and the ledger deduplicates at summation time.
    """

    __tablename__ = "usage_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    usage_type: Mapped[str] = mapped_column(String(32), nullable=False)
    raw_kind: Mapped[str | None] = mapped_column(String(128), nullable=True)
    quantity: Mapped[Decimal] = mapped_column(_Quantity, nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    observed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_usage_events_scan", "tenant_id", "usage_type", "occurred_at", "event_id"),
        Index("ix_usage_events_observed", "observed_at"),
        Index("ix_usage_events_event_id", "event_id"),
    )


# ---------------------------------------------------------------------------
# Billing cursors
# ---------------------------------------------------------------------------


class BillingCursorTable(Base):
    """Per (tenant, usage type) reconciliation progress.

    ``watermark`` only ever moves forward.  ``event_seq`` is the highest
    ``usage_events.id`` a pass has taken into account.
    """

    __tablename__ = "billing_cursors"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    usage_type: Mapped[str] = mapped_column(String(32), nullable=False)
    watermark: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    origin: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    lookback_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    pass_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    event_seq: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_advanced_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "usage_type"),
        Index("ix_billing_cursors_last_advanced", "last_advanced_at"),
    )


# ---------------------------------------------------------------------------
# Usage summaries
# ---------------------------------------------------------------------------


class UsageSummaryTable(Base):
    """Immutable per-period usage totals, versioned by reconciliation pass.

    The only permitted mutation is setting ``superseded_by`` once when a
    later pass writes a corrected version.
    """

    __tablename__ = "usage_summaries"

    summary_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    usage_type: Mapped[str] = mapped_column(String(32), nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    total_quantity: Mapped[Decimal] = mapped_column(_Quantity, nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False)
    event_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    event_digest: Mapped[str] = mapped_column(String(64), nullable=False)
    pass_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    superseded_by: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("usage_summaries.summary_id", ondelete="SET NULL"),
        nullable=True,
    )
    reconciled_through: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "usage_type",
            "period_start",
            "pass_number",
            name="uq_usage_summaries_period_pass",
        ),
        Index("ix_usage_summaries_period", "tenant_id", "usage_type", "period_start"),
        Index("ix_usage_summaries_superseded", "superseded_by"),
    )


# ---------------------------------------------------------------------------
# Tenant attribution
# ---------------------------------------------------------------------------


class TenantAttributionTable(Base):
    """First-touch marketing attribution, at most one row per tenant."""

    __tablename__ = "tenant_attribution"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    signup_channel: Mapped[str | None] = mapped_column(String(100), nullable=True)
    signup_method: Mapped[str | None] = mapped_column(String(100), nullable=True)
    utm_source: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_medium: Mapped[str | None] = mapped_column(String(100), nullable=True)
    utm_campaign: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_content: Mapped[str | None] = mapped_column(String(255), nullable=True)
    utm_term: Mapped[str | None] = mapped_column(String(255), nullable=True)
    referral_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    landing_page: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    referrer: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    captured_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_tenant_attribution_source", "utm_source", "utm_campaign"),
        Index("ix_tenant_attribution_referral", "referral_code"),
    )


# ---------------------------------------------------------------------------
# Pass locks
# ---------------------------------------------------------------------------


class LedgerPassLockTable(Base):
    """Cross-process exclusive lock per (tenant, usage type) with a TTL."""

    __tablename__ = "ledger_pass_locks"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    usage_type: Mapped[str] = mapped_column(String(32), nullable=False)
    locked_by: Mapped[str] = mapped_column(String(256), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (PrimaryKeyConstraint("tenant_id", "usage_type"),)
