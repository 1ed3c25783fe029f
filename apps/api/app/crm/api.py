from __future__ import annotations

import hmac
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.context import get_correlation_id, set_user_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.crm.errors import (
    DealAccessDeniedError,
    DealConflictError,
    DealError,
    DealNotFoundError,
    DealValidationError,
    InvalidDealActionError,
    InvalidDealStateError,
)
from app.crm.jobs import forecast_snapshot_job_runner
from app.crm.pipeline import DealOutcome, DealStage
from app.crm.repositories import DealRepository
from app.crm.schemas import (
    MAX_DEAL_VALUE,
    DealAssignRequest,
    DealCreate,
    DealHistoryRead,
    DealListFilters,
    DealRead,
    DealStageActionRequest,
    DealUpdate,
    ForecastSnapshotRunRead,
    PipelineStatsRead,
    RevenueForecastRead,
    WinLossAnalysisRead,
)
from app.crm.service import ActorUser, DealPipelineEngine

deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
cron_router = APIRouter(prefix="/api/cron", tags=["cron"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _status_for(exc: DealError) -> int:
    if isinstance(exc, DealNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, DealAccessDeniedError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, InvalidDealActionError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, (DealConflictError, InvalidDealStateError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, DealValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_400_BAD_REQUEST


def deal_error_response(request: Request, exc: DealError, deal_id: uuid.UUID | None = None) -> JSONResponse:
    details: dict[str, Any] | None = None
    if deal_id is not None:
        details = {"deal_id": str(deal_id)}
    if isinstance(exc, InvalidDealActionError):
        details = {**(details or {}), "action": exc.action}
    return error_response(
        request,
        status_code=_status_for(exc),
        code=exc.code,
        message=str(exc),
        details=details,
    )


async def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    set_user_id(auth_user.sub)
    return ActorUser(user_id=auth_user.sub, roles=set(auth_user.roles), correlation_id=correlation_id)


def get_deal_engine(db: Session = Depends(get_db)) -> DealPipelineEngine:
    return DealPipelineEngine(DealRepository(db))


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    request: Request,
    stage: DealStage | None = Query(default=None),
    outcome: DealOutcome | None = Query(default=None),
    min_value: float | None = Query(default=None, ge=0, le=MAX_DEAL_VALUE, allow_inf_nan=False),
    max_value: float | None = Query(default=None, ge=0, le=MAX_DEAL_VALUE, allow_inf_nan=False),
    engine: DealPipelineEngine = Depends(get_deal_engine),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        filters = DealListFilters(stage=stage, outcome=outcome, min_value=min_value, max_value=max_value)
        return engine.list_deals(user, filters)
    except DealError as exc:
        return deal_error_response(request, exc)


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    engine: DealPipelineEngine = Depends(get_deal_engine),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return engine.create_deal(user, dto)
    except DealError as exc:
        return deal_error_response(request, exc)


@deals_router.get("/deals/analysis", response_model=WinLossAnalysisRead)
def get_win_loss_analysis(
    request: Request,
    days: int | None = Query(default=None, ge=1),
    engine: DealPipelineEngine = Depends(get_deal_engine),
    user: ActorUser = Depends(get_current_user),
) -> WinLossAnalysisRead | JSONResponse:
    try:
        return engine.get_win_loss_analysis(user, days=days)
    except DealError as exc:
        return deal_error_response(request, exc)


@deals_router.get("/deals/forecast", response_model=RevenueForecastRead)
def get_revenue_forecast(
    request: Request,
    months: int | None = Query(default=None, ge=1, le=120),
    engine: DealPipelineEngine = Depends(get_deal_engine),
    user: ActorUser = Depends(get_current_user),
) -> RevenueForecastRead | JSONResponse:
    try:
        return engine.get_revenue_forecast(user, months=months)
    except DealError as exc:
        return deal_error_response(request, exc)


@deals_router.get("/deals/stats", response_model=PipelineStatsRead)
def get_pipeline_stats(
    request: Request,
    engine: DealPipelineEngine = Depends(get_deal_engine),
    user: ActorUser = Depends(get_current_user),
) -> PipelineStatsRead | JSONResponse:
    try:
        return engine.get_pipeline_stats(user)
    except DealError as exc:
        return deal_error_response(request, exc)


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    engine: DealPipelineEngine = Depends(get_deal_engine),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return engine.get_deal(user, deal_id)
    except DealError as exc:
        return deal_error_response(request, exc, deal_id)


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def update_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    engine: DealPipelineEngine = Depends(get_deal_engine),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return engine.update_deal(user, deal_id, dto)
    except DealError as exc:
        return deal_error_response(request, exc, deal_id)


@deals_router.patch("/deals/{deal_id}/assign", response_model=DealRead)
def assign_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealAssignRequest,
    engine: DealPipelineEngine = Depends(get_deal_engine),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return engine.assign_deal(user, deal_id, dto.assigned_to_user_id)
    except DealError as exc:
        return deal_error_response(request, exc, deal_id)


@deals_router.patch("/deals/{deal_id}/stage", response_model=DealRead)
def change_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealStageActionRequest,
    engine: DealPipelineEngine = Depends(get_deal_engine),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return engine.apply_stage_action(user, deal_id, dto.action, dto.lost_reason)
    except DealError as exc:
        return deal_error_response(request, exc, deal_id)


@deals_router.get("/deals/{deal_id}/history", response_model=list[DealHistoryRead])
def get_deal_history(
    request: Request,
    deal_id: uuid.UUID,
    engine: DealPipelineEngine = Depends(get_deal_engine),
    user: ActorUser = Depends(get_current_user),
) -> list[DealHistoryRead] | JSONResponse:
    try:
        return engine.get_deal_history(user, deal_id)
    except DealError as exc:
        return deal_error_response(request, exc, deal_id)


def _cron_authorized(request: Request) -> bool:
    secret = get_settings().cron_secret
    if not secret:
        return False
    header = request.headers.get("authorization", "")
    if not header.lower().startswith("bearer "):
        return False
    return hmac.compare_digest(header[7:].strip(), secret)


@cron_router.post("/forecast-snapshots", response_model=ForecastSnapshotRunRead)
def run_forecast_snapshots(request: Request, db: Session = Depends(get_db)) -> ForecastSnapshotRunRead | JSONResponse:
    if not _cron_authorized(request):
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            code="cron_unauthorized",
            message="Unauthorized",
        )
    return forecast_snapshot_job_runner.run(db, correlation_id=get_correlation_id())
