from __future__ import annotations

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from app.crm.pipeline import STAGE_ORDER, DealOutcome, DealStage

# crm_deal.value is Numeric(18, 2)
MAX_DEAL_VALUE = 999_999_999_999_999


def _clean_currency(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if len(value) < 3:
        raise ValueError("currency must be at least 3 characters")
    return value


class DealCreate(BaseModel):
    title: str = Field(min_length=1)
    value: float = Field(default=0, ge=0, le=MAX_DEAL_VALUE, allow_inf_nan=False)
    currency: str | None = Field(default=None, min_length=3, max_length=16)
    lead_id: UUID | None = None
    stage: DealStage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    notes: str | None = None

    @field_validator("title")
    @classmethod
    def _title_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be blank")
        return value.strip()

    @field_validator("currency")
    @classmethod
    def _currency_not_blank(cls, value: str | None) -> str | None:
        return _clean_currency(value)


class DealUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    title: str | None = Field(default=None, min_length=1)
    value: float | None = Field(default=None, ge=0, le=MAX_DEAL_VALUE, allow_inf_nan=False)
    currency: str | None = Field(default=None, min_length=3, max_length=16)
    expected_close_date: date | None = None
    notes: str | None = None

    @field_validator("currency")
    @classmethod
    def _currency_not_blank(cls, value: str | None) -> str | None:
        return _clean_currency(value)


class DealAssignRequest(BaseModel):
    assigned_to_user_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("assigned_to_user_id", "assignedToId"),
    )


class DealStageActionRequest(BaseModel):
    action: str | None = None
    lost_reason: str | None = Field(default=None, validation_alias=AliasChoices("lost_reason", "lostReason"))


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    owner_user_id: str
    lead_id: UUID | None
    title: str
    value: float
    currency: str
    stage: DealStage
    outcome: DealOutcome
    probability: int
    lost_reason: str | None
    assigned_to_user_id: str | None
    expected_close_date: date | None
    notes: str | None
    created_at: datetime
    updated_at: datetime
    stage_changed_at: datetime
    closed_at: datetime | None
    row_version: int


class DealListFilters(BaseModel):
    stage: DealStage | None = None
    outcome: DealOutcome | None = None
    min_value: float | None = Field(default=None, ge=0, le=MAX_DEAL_VALUE, allow_inf_nan=False)
    max_value: float | None = Field(default=None, ge=0, le=MAX_DEAL_VALUE, allow_inf_nan=False)


class WinLossAnalysisRead(BaseModel):
    days: int | None
    total_closed: int
    won_count: int
    lost_count: int
    won_value: float
    lost_value: float
    win_rate: float
    lost_reasons: dict[str, int] = Field(default_factory=dict)


class ForecastStageRow(BaseModel):
    stage: DealStage
    weight: int
    deal_count: int
    value: float
    weighted_value: float


class RevenueForecastRead(BaseModel):
    months: int | None
    open_deal_count: int
    unweighted_total: float
    weighted_total: float
    best_case: float
    likely_case: float
    worst_case: float
    by_stage: list[ForecastStageRow]


class PipelineBucket(BaseModel):
    count: int
    value: float


class PipelineStatsRead(BaseModel):
    total: int
    total_value: float
    weighted_value: float
    by_stage: dict[str, PipelineBucket]


class DealHistoryRead(BaseModel):
    action: str
    actor_user_id: str
    before: dict | None
    after: dict | None
    correlation_id: str | None
    occurred_at: datetime


class ForecastSnapshotRunRead(BaseModel):
    users: int
    succeeded: int
    failed: int
    status: Literal["Succeeded", "PartiallySucceeded", "Failed"]


PIPELINE_BUCKETS: tuple[str, ...] = (*STAGE_ORDER, "WON", "LOST")
