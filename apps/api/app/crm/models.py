from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, DateTime, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMDeal(Base):
    __tablename__ = "crm_deal"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    lead_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"), server_default="0")
    currency: Mapped[str] = mapped_column(String(16), nullable=False, default="USD", server_default="USD")
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="PROSPECTING", server_default="PROSPECTING")
    outcome: Mapped[str] = mapped_column(String(16), nullable=False, default="OPEN", server_default="OPEN")
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=10, server_default="10")
    lost_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    assigned_to_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    expected_close_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    stage_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (
        CheckConstraint("value >= 0", name="ck_crm_deal_value_non_negative"),
        CheckConstraint("outcome IN ('OPEN', 'WON', 'LOST')", name="ck_crm_deal_outcome"),
        CheckConstraint(
            "stage IN ('PROSPECTING', 'QUALIFICATION', 'PROPOSAL', 'NEGOTIATION')",
            name="ck_crm_deal_stage",
        ),
        Index("ix_crm_deal_owner_outcome", "owner_user_id", "outcome"),
    )


class CRMDealForecastSnapshot(Base):
    __tablename__ = "crm_deal_forecast_snapshot"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    open_deal_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unweighted_total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    weighted_total: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_crm_deal_forecast_snapshot_owner_captured", "owner_user_id", "captured_at"),
    )
