"""create crm deals, forecast snapshots and audit logs

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "crm_deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_user_id", sa.String(length=128), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("value", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=16), nullable=False, server_default="USD"),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="PROSPECTING"),
        sa.Column("outcome", sa.String(length=16), nullable=False, server_default="OPEN"),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("lost_reason", sa.Text(), nullable=True),
        sa.Column("assigned_to_user_id", sa.String(length=128), nullable=True),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stage_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("value >= 0", name="ck_crm_deal_value_non_negative"),
        sa.CheckConstraint("outcome IN ('OPEN', 'WON', 'LOST')", name="ck_crm_deal_outcome"),
        sa.CheckConstraint(
            "stage IN ('PROSPECTING', 'QUALIFICATION', 'PROPOSAL', 'NEGOTIATION')",
            name="ck_crm_deal_stage",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_crm_deal_owner_outcome", "crm_deal", ["owner_user_id", "outcome"], unique=False)

    op.create_table(
        "crm_deal_forecast_snapshot",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_user_id", sa.String(length=128), nullable=False),
        sa.Column("open_deal_count", sa.Integer(), nullable=False),
        sa.Column("unweighted_total", sa.Numeric(18, 2), nullable=False),
        sa.Column("weighted_total", sa.Numeric(18, 2), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_crm_deal_forecast_snapshot_owner_captured",
        "crm_deal_forecast_snapshot",
        ["owner_user_id", "captured_at"],
        unique=False,
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=128), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_crm_deal_forecast_snapshot_owner_captured", table_name="crm_deal_forecast_snapshot")
    op.drop_table("crm_deal_forecast_snapshot")
    op.drop_index("ix_crm_deal_owner_outcome", table_name="crm_deal")
    op.drop_table("crm_deal")
