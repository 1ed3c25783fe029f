from __future__ import annotations

import calendar
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from app import audit, events
from app.core.config import Settings, get_settings
from app.crm.errors import (
    DealConflictError,
    DealValidationError,
    InvalidDealActionError,
    InvalidDealStateError,
)
from app.crm.models import CRMDeal
from app.crm.pipeline import (
    LOST_PROBABILITY,
    OUTCOME_LOST,
    OUTCOME_OPEN,
    OUTCOME_WON,
    STAGE_ORDER,
    WON_PROBABILITY,
    is_terminal,
    is_valid_stage,
    next_stage,
    stage_weight,
    weighted_value,
)
from app.crm.repositories import DealRepository
from app.crm.schemas import (
    PIPELINE_BUCKETS,
    DealCreate,
    DealHistoryRead,
    DealListFilters,
    DealRead,
    DealUpdate,
    ForecastStageRow,
    PipelineBucket,
    PipelineStatsRead,
    RevenueForecastRead,
    WinLossAnalysisRead,
)
from app.metrics import observe_deal_transition


logger = logging.getLogger("app.crm.deals")

_CENT = Decimal("0.01")
_WORST_CASE_MIN_WEIGHT = 75
_WORST_CASE_FACTOR = Decimal("0.5")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Decimal) -> float:
    return float(value.quantize(_CENT))


def to_money(value: float | int | Decimal) -> Decimal:
    return Decimal(str(value)).quantize(_CENT)


def add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass
class ActorUser:
    user_id: str
    roles: set[str] = field(default_factory=set)
    correlation_id: str | None = None


class DealPipelineEngine:
    """Stage transitions, won/lost marking and analytics for a user's deals.

    Every mutation is a guarded compare-and-update on the deal row plus an
    audit row in the same transaction. The domain event is published after
    commit.
    """

    entity_type = "crm.deal"

    def __init__(self, repository: DealRepository, settings: Settings | None = None) -> None:
        self.repository = repository
        self.settings = settings or get_settings()

    @property
    def session(self) -> Session:
        return self.repository.session

    def _to_read(self, deal: CRMDeal) -> DealRead:
        return DealRead.model_validate(deal)

    def _snapshot(self, deal: CRMDeal) -> dict[str, Any]:
        return self._to_read(deal).model_dump(mode="json")

    def _finish_mutation(
        self,
        actor_user: ActorUser,
        action: str,
        event_type: str,
        before: dict[str, Any] | None,
        updated: DealRead,
        payload: dict[str, Any],
    ) -> None:
        audit.record(
            self.session,
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(updated.id),
            action=action,
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        self.repository.commit()
        events.publish(
            events.build_envelope(
                event_type,
                actor_user.user_id,
                {"deal_id": str(updated.id), "owner_user_id": updated.owner_user_id, **payload},
            )
        )

    def get_deal(self, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        return self._to_read(self.repository.get_for_owner(deal_id, actor_user.user_id))

    def list_deals(self, actor_user: ActorUser, filters: DealListFilters | None = None) -> list[DealRead]:
        filters = filters or DealListFilters()
        if (
            filters.min_value is not None
            and filters.max_value is not None
            and filters.min_value > filters.max_value
        ):
            raise DealValidationError("min_value must not exceed max_value")
        rows = self.repository.list_for_owner(
            actor_user.user_id,
            stage=filters.stage,
            outcome=filters.outcome,
            min_value=to_money(filters.min_value) if filters.min_value is not None else None,
            max_value=to_money(filters.max_value) if filters.max_value is not None else None,
        )
        return [self._to_read(row) for row in rows]

    def get_deal_history(self, actor_user: ActorUser, deal_id: uuid.UUID) -> list[DealHistoryRead]:
        deal = self.repository.get_for_owner(deal_id, actor_user.user_id)
        rows = audit.list_for_entity(self.session, self.entity_type, str(deal.id))
        return [
            DealHistoryRead(
                action=row.action,
                actor_user_id=row.actor_id,
                before=row.before,
                after=row.after,
                correlation_id=row.correlation_id,
                occurred_at=row.created_at,
            )
            for row in rows
        ]

    def create_deal(self, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        stage = dto.stage or STAGE_ORDER[0]
        if not is_valid_stage(stage):
            raise DealValidationError(f"unknown stage {stage!r}")

        now = utcnow()
        deal = CRMDeal(
            owner_user_id=actor_user.user_id,
            lead_id=dto.lead_id,
            title=dto.title,
            value=to_money(dto.value),
            currency=(dto.currency or self.settings.default_currency).strip().upper(),
            stage=stage,
            outcome=OUTCOME_OPEN,
            probability=dto.probability if dto.probability is not None else stage_weight(stage),
            expected_close_date=dto.expected_close_date,
            notes=dto.notes,
            created_at=now,
            updated_at=now,
            stage_changed_at=now,
            row_version=1,
        )
        self.repository.add(deal)
        created = self._to_read(deal)
        self._finish_mutation(
            actor_user,
            action="create",
            event_type="crm.deal.created",
            before=None,
            updated=created,
            payload={"stage": created.stage, "value": created.value, "currency": created.currency},
        )
        observe_deal_transition(action="create", outcome=OUTCOME_OPEN)
        logger.info(
            "deal_created",
            extra={"deal_id": str(created.id), "to_stage": created.stage, "owner_user_id": actor_user.user_id},
        )
        return created

    def update_deal(self, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        deal = self.repository.get_for_owner(deal_id, actor_user.user_id)
        changes = dto.model_dump(exclude_unset=True, exclude={"row_version"})

        for required in ("title", "value", "currency"):
            if required in changes and changes[required] is None:
                raise DealValidationError(f"{required} must not be null")
        if "title" in changes:
            changes["title"] = changes["title"].strip()
            if not changes["title"]:
                raise DealValidationError("title must not be blank")
        if "value" in changes:
            changes["value"] = to_money(changes["value"])
        if "currency" in changes:
            changes["currency"] = changes["currency"].strip().upper()

        if is_terminal(deal.outcome):
            frozen = [
                name
                for name in ("value", "currency")
                if name in changes and changes[name] != getattr(deal, name)
            ]
            if frozen:
                raise InvalidDealStateError(f"cannot change {', '.join(frozen)} of a closed deal")

        if not changes:
            if dto.row_version is not None and dto.row_version != deal.row_version:
                raise DealConflictError("deal was modified concurrently")
            return self._to_read(deal)

        before = self._snapshot(deal)
        updated_deal = self.repository.compare_and_update(
            deal,
            {**changes, "updated_at": utcnow()},
            expected_row_version=dto.row_version,
            require_open=False,
        )
        updated = self._to_read(updated_deal)
        self._finish_mutation(
            actor_user,
            action="update",
            event_type="crm.deal.updated",
            before=before,
            updated=updated,
            payload={"fields": sorted(changes)},
        )
        logger.info("deal_updated", extra={"deal_id": str(updated.id), "owner_user_id": actor_user.user_id})
        return updated

    def assign_deal(self, actor_user: ActorUser, deal_id: uuid.UUID, assigned_to_user_id: str | None) -> DealRead:
        deal = self.repository.get_for_owner(deal_id, actor_user.user_id)
        assignee = (assigned_to_user_id or "").strip() or None

        before = self._snapshot(deal)
        updated_deal = self.repository.compare_and_update(
            deal,
            {"assigned_to_user_id": assignee, "updated_at": utcnow()},
            require_open=False,
        )
        updated = self._to_read(updated_deal)
        self._finish_mutation(
            actor_user,
            action="assign",
            event_type="crm.deal.assigned",
            before=before,
            updated=updated,
            payload={"assigned_to_user_id": assignee},
        )
        logger.info("deal_assigned", extra={"deal_id": str(updated.id), "owner_user_id": actor_user.user_id})
        return updated

    def move_to_next_stage(self, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        deal = self.repository.get_for_owner(deal_id, actor_user.user_id)
        if is_terminal(deal.outcome):
            raise InvalidDealStateError(f"deal is already {deal.outcome}")

        target = next_stage(deal.stage)
        if target is None:
            # final pre-close stage; closing is always explicit
            return self._to_read(deal)

        from_stage = deal.stage
        before = self._snapshot(deal)
        now = utcnow()
        updated_deal = self.repository.compare_and_update(
            deal,
            {"stage": target, "probability": stage_weight(target), "stage_changed_at": now, "updated_at": now},
            expected_stage=from_stage,
        )
        updated = self._to_read(updated_deal)
        self._finish_mutation(
            actor_user,
            action="stage_changed",
            event_type="crm.deal.stage_changed",
            before=before,
            updated=updated,
            payload={"from_stage": from_stage, "to_stage": target},
        )
        observe_deal_transition(action="next", outcome=OUTCOME_OPEN)
        logger.info(
            "deal_stage_changed",
            extra={"deal_id": str(updated.id), "from_stage": from_stage, "to_stage": target},
        )
        return updated

    def mark_as_won(self, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        deal = self.repository.get_for_owner(deal_id, actor_user.user_id)
        if is_terminal(deal.outcome):
            raise InvalidDealStateError(f"deal is already {deal.outcome}")

        before = self._snapshot(deal)
        now = utcnow()
        updated_deal = self.repository.compare_and_update(
            deal,
            {
                "outcome": OUTCOME_WON,
                "probability": WON_PROBABILITY,
                "lost_reason": None,
                "closed_at": now,
                "updated_at": now,
            },
        )
        updated = self._to_read(updated_deal)
        self._finish_mutation(
            actor_user,
            action="closed_won",
            event_type="crm.deal.closed_won",
            before=before,
            updated=updated,
            payload={"stage": updated.stage, "value": updated.value, "currency": updated.currency},
        )
        observe_deal_transition(action="won", outcome=OUTCOME_WON)
        logger.info("deal_closed", extra={"deal_id": str(updated.id), "outcome": OUTCOME_WON})
        return updated

    def mark_as_lost(self, actor_user: ActorUser, deal_id: uuid.UUID, reason: str | None = None) -> DealRead:
        deal = self.repository.get_for_owner(deal_id, actor_user.user_id)
        if is_terminal(deal.outcome):
            raise InvalidDealStateError(f"deal is already {deal.outcome}")

        lost_reason = (reason or "").strip() or self.settings.default_lost_reason
        before = self._snapshot(deal)
        now = utcnow()
        updated_deal = self.repository.compare_and_update(
            deal,
            {
                "outcome": OUTCOME_LOST,
                "probability": LOST_PROBABILITY,
                "lost_reason": lost_reason,
                "closed_at": now,
                "updated_at": now,
            },
        )
        updated = self._to_read(updated_deal)
        self._finish_mutation(
            actor_user,
            action="closed_lost",
            event_type="crm.deal.closed_lost",
            before=before,
            updated=updated,
            payload={"stage": updated.stage, "value": updated.value, "lost_reason": lost_reason},
        )
        observe_deal_transition(action="lost", outcome=OUTCOME_LOST)
        logger.info("deal_closed", extra={"deal_id": str(updated.id), "outcome": OUTCOME_LOST})
        return updated

    def apply_stage_action(
        self,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        action: str | None,
        lost_reason: str | None = None,
    ) -> DealRead:
        normalized = (action or "").strip().lower()
        if normalized == "next":
            return self.move_to_next_stage(actor_user, deal_id)
        if normalized == "won":
            return self.mark_as_won(actor_user, deal_id)
        if normalized == "lost":
            return self.mark_as_lost(actor_user, deal_id, lost_reason)
        logger.info("deal_invalid_action", extra={"deal_id": str(deal_id), "action": action})
        raise InvalidDealActionError(action)

    def get_win_loss_analysis(self, actor_user: ActorUser, days: int | None = None) -> WinLossAnalysisRead:
        if days is not None and days < 1:
            raise DealValidationError("days must be positive")
        closed_since = utcnow() - timedelta(days=days) if days is not None else None
        rows = self.repository.list_closed_for_owner(actor_user.user_id, closed_since=closed_since)

        won = [row for row in rows if row.outcome == OUTCOME_WON]
        lost = [row for row in rows if row.outcome == OUTCOME_LOST]
        total_closed = len(won) + len(lost)
        reasons = Counter(row.lost_reason or self.settings.default_lost_reason for row in lost)

        return WinLossAnalysisRead(
            days=days,
            total_closed=total_closed,
            won_count=len(won),
            lost_count=len(lost),
            won_value=_money(sum((Decimal(row.value) for row in won), Decimal("0"))),
            lost_value=_money(sum((Decimal(row.value) for row in lost), Decimal("0"))),
            win_rate=round(len(won) / total_closed, 4) if total_closed else 0.0,
            lost_reasons=dict(reasons.most_common()),
        )

    def get_revenue_forecast(self, actor_user: ActorUser, months: int | None = None) -> RevenueForecastRead:
        if months is not None and months < 1:
            raise DealValidationError("months must be positive")
        close_from: date | None = None
        close_to: date | None = None
        if months is not None:
            close_from = utcnow().date()
            close_to = add_months(close_from, months)
        rows = self.repository.list_open_for_owner(
            actor_user.user_id,
            expected_close_from=close_from,
            expected_close_to=close_to,
        )

        counts = {stage: 0 for stage in STAGE_ORDER}
        values = {stage: Decimal("0") for stage in STAGE_ORDER}
        for row in rows:
            counts[row.stage] += 1
            values[row.stage] += Decimal(row.value)

        by_stage = [
            ForecastStageRow(
                stage=stage,
                weight=stage_weight(stage),
                deal_count=counts[stage],
                value=_money(values[stage]),
                weighted_value=_money(weighted_value(values[stage], stage)),
            )
            for stage in STAGE_ORDER
        ]
        unweighted_total = sum(values.values(), Decimal("0"))
        weighted_total = sum((weighted_value(values[stage], stage) for stage in STAGE_ORDER), Decimal("0"))
        committed = sum(
            (values[stage] for stage in STAGE_ORDER if stage_weight(stage) >= _WORST_CASE_MIN_WEIGHT),
            Decimal("0"),
        )

        return RevenueForecastRead(
            months=months,
            open_deal_count=len(rows),
            unweighted_total=_money(unweighted_total),
            weighted_total=_money(weighted_total),
            best_case=_money(unweighted_total),
            likely_case=_money(weighted_total),
            worst_case=_money(committed * _WORST_CASE_FACTOR),
            by_stage=by_stage,
        )

    def get_pipeline_stats(self, actor_user: ActorUser) -> PipelineStatsRead:
        rows = self.repository.list_for_owner(actor_user.user_id)
        counts = {name: 0 for name in PIPELINE_BUCKETS}
        amounts = {name: Decimal("0") for name in PIPELINE_BUCKETS}
        weighted_open = Decimal("0")
        for row in rows:
            value = Decimal(row.value)
            # closed deals are bucketed by outcome, their frozen stage is ignored
            bucket = row.outcome if is_terminal(row.outcome) else row.stage
            counts[bucket] += 1
            amounts[bucket] += value
            if row.outcome == OUTCOME_OPEN:
                weighted_open += weighted_value(value, row.stage)

        return PipelineStatsRead(
            total=len(rows),
            total_value=_money(sum(amounts.values(), Decimal("0"))),
            weighted_value=_money(weighted_open),
            by_stage={name: PipelineBucket(count=counts[name], value=_money(amounts[name])) for name in PIPELINE_BUCKETS},
        )
