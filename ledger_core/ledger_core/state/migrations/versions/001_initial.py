"""Initial ledger schema with row-level security.

Creates usage_events, billing_cursors, usage_summaries,
tenant_attribution and ledger_pass_locks.  Tenant-scoped tables get an
isolation policy on ``app.tenant_id`` plus a bypass policy for
reconciliation passes that set ``app.ledger_service``.

Revision ID: 001
Revises: None
Create Date: 2026-03-02 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_TENANT_TABLES: list[str] = [
    "usage_events",
    "billing_cursors",
    "usage_summaries",
    "tenant_attribution",
    "ledger_pass_locks",
]


def _ts(name: str, *, nullable: bool = False, default_now: bool = False) -> sa.Column:
    kwargs = {"server_default": sa.text("now()")} if default_now else {}
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, **kwargs)


def upgrade() -> None:
    # ------------------------------------------------------------------
    # usage_events
    # ------------------------------------------------------------------
    op.create_table(
        "usage_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(128), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("usage_type", sa.String(32), nullable=False),
        sa.Column("raw_kind", sa.String(128), nullable=True),
        sa.Column("quantity", sa.Numeric(28, 6), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False),
        _ts("occurred_at"),
        _ts("observed_at", default_now=True),
    )
    op.create_index("ix_usage_events_scan", "usage_events", ["tenant_id", "usage_type", "occurred_at", "event_id"])
    op.create_index("ix_usage_events_observed", "usage_events", ["observed_at"])
    op.create_index("ix_usage_events_event_id", "usage_events", ["event_id"])

    # ------------------------------------------------------------------
    # billing_cursors
    # ------------------------------------------------------------------
    op.create_table(
        "billing_cursors",
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("usage_type", sa.String(32), nullable=False),
        _ts("watermark"),
        _ts("origin"),
        sa.Column("lookback_seconds", sa.Integer(), nullable=False),
        sa.Column("pass_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("event_seq", sa.Integer(), nullable=False, server_default="0"),
        _ts("last_advanced_at", default_now=True),
        _ts("created_at", default_now=True),
        sa.PrimaryKeyConstraint("tenant_id", "usage_type"),
    )
    op.create_index("ix_billing_cursors_last_advanced", "billing_cursors", ["last_advanced_at"])

    # ------------------------------------------------------------------
    # usage_summaries
    # ------------------------------------------------------------------
    op.create_table(
        "usage_summaries",
        sa.Column("summary_id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("usage_type", sa.String(32), nullable=False),
        _ts("period_start"),
        _ts("period_end"),
        sa.Column("total_quantity", sa.Numeric(28, 6), nullable=False),
        sa.Column("unit", sa.String(32), nullable=False),
        sa.Column("event_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("event_digest", sa.String(64), nullable=False),
        sa.Column("pass_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "superseded_by",
            sa.String(64),
            sa.ForeignKey("usage_summaries.summary_id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("reconciled_through"),
        _ts("created_at", default_now=True),
        sa.UniqueConstraint(
            "tenant_id",
            "usage_type",
            "period_start",
            "pass_number",
            name="uq_usage_summaries_period_pass",
        ),
    )
    op.create_index("ix_usage_summaries_period", "usage_summaries", ["tenant_id", "usage_type", "period_start"])
    op.create_index("ix_usage_summaries_superseded", "usage_summaries", ["superseded_by"])

    # ------------------------------------------------------------------
    # tenant_attribution
    # ------------------------------------------------------------------
    op.create_table(
        "tenant_attribution",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("signup_channel", sa.String(100), nullable=True),
        sa.Column("signup_method", sa.String(100), nullable=True),
        sa.Column("utm_source", sa.String(255), nullable=True),
        sa.Column("utm_medium", sa.String(100), nullable=True),
        sa.Column("utm_campaign", sa.String(255), nullable=True),
        sa.Column("utm_content", sa.String(255), nullable=True),
        sa.Column("utm_term", sa.String(255), nullable=True),
        sa.Column("referral_code", sa.String(100), nullable=True),
        sa.Column("landing_page", sa.String(2048), nullable=True),
        sa.Column("referrer", sa.String(2048), nullable=True),
        _ts("captured_at", default_now=True),
        _ts("created_at", default_now=True),
    )
    op.create_index("ix_tenant_attribution_source", "tenant_attribution", ["utm_source", "utm_campaign"])
    op.create_index("ix_tenant_attribution_referral", "tenant_attribution", ["referral_code"])

    # ------------------------------------------------------------------
    # ledger_pass_locks
    # ------------------------------------------------------------------
    op.create_table(
        "ledger_pass_locks",
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("usage_type", sa.String(32), nullable=False),
        sa.Column("locked_by", sa.String(256), nullable=False),
        _ts("locked_at", default_now=True),
        _ts("expires_at"),
        sa.PrimaryKeyConstraint("tenant_id", "usage_type"),
    )

    # ------------------------------------------------------------------
    # Row-level security
    # ------------------------------------------------------------------
    for table in _TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation_{table} ON {table} "
            f"USING (tenant_id = current_setting('app.tenant_id', true)) "
            f"WITH CHECK (tenant_id = current_setting('app.tenant_id', true))"
        )
        op.execute(
            f"CREATE POLICY ledger_service_{table} ON {table} "
            f"USING (current_setting('app.ledger_service', true) = 'on') "
            f"WITH CHECK (current_setting('app.ledger_service', true) = 'on')"
        )


def downgrade() -> None:
    for table in reversed(_TENANT_TABLES):
        op.execute(f"DROP POLICY IF EXISTS ledger_service_{table} ON {table}")
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}")
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")

    op.drop_table("ledger_pass_locks")
    op.drop_table("tenant_attribution")
    op.drop_table("usage_summaries")
    op.drop_table("billing_cursors")
    op.drop_table("usage_events")
