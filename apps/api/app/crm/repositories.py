from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, and_, case, select, update
from sqlalchemy.orm import Session

from app.crm.errors import DealAccessDeniedError, DealConflictError, DealNotFoundError
from app.crm.models import CRMDeal, CRMDealForecastSnapshot
from app.crm.pipeline import OUTCOME_LOST, OUTCOME_OPEN, OUTCOME_WON, STAGE_ORDER


class DealRepository:
    """Deal store keyed by id and scoped by owning user.

    Writes to existing deals go through :meth:`compare_and_update`, which only
    touches the row when its ``row_version`` (and optionally outcome and stage)
    still match what the caller read.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, deal_id: uuid.UUID) -> CRMDeal | None:
        return self.session.scalar(select(CRMDeal).where(CRMDeal.id == deal_id))

    def get_for_owner(self, deal_id: uuid.UUID, owner_user_id: str) -> CRMDeal:
        deal = self.get(deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        if deal.owner_user_id != owner_user_id:
            raise DealAccessDeniedError(deal_id)
        return deal

    def list_for_owner(
        self,
        owner_user_id: str,
        *,
        stage: str | None = None,
        outcome: str | None = None,
        min_value: Decimal | None = None,
        max_value: Decimal | None = None,
    ) -> list[CRMDeal]:
        stmt: Select[tuple[CRMDeal]] = select(CRMDeal).where(CRMDeal.owner_user_id == owner_user_id)
        if stage is not None:
            stmt = stmt.where(CRMDeal.stage == stage)
        if outcome is not None:
            stmt = stmt.where(CRMDeal.outcome == outcome)
        if min_value is not None:
            stmt = stmt.where(CRMDeal.value >= min_value)
        if max_value is not None:
            stmt = stmt.where(CRMDeal.value <= max_value)

        stage_rank = case({name: index for index, name in enumerate(STAGE_ORDER)}, value=CRMDeal.stage, else_=len(STAGE_ORDER))
        stmt = stmt.order_by(stage_rank.asc(), CRMDeal.expected_close_date.asc(), CRMDeal.created_at.asc())
        return list(self.session.scalars(stmt).all())

    def list_closed_for_owner(self, owner_user_id: str, *, closed_since: datetime | None = None) -> list[CRMDeal]:
        stmt = select(CRMDeal).where(
            and_(CRMDeal.owner_user_id == owner_user_id, CRMDeal.outcome.in_([OUTCOME_WON, OUTCOME_LOST]))
        )
        if closed_since is not None:
            stmt = stmt.where(CRMDeal.closed_at >= closed_since)
        return list(self.session.scalars(stmt).all())

    def list_open_for_owner(
        self,
        owner_user_id: str,
        *,
        expected_close_from: date | None = None,
        expected_close_to: date | None = None,
    ) -> list[CRMDeal]:
        stmt = select(CRMDeal).where(and_(CRMDeal.owner_user_id == owner_user_id, CRMDeal.outcome == OUTCOME_OPEN))
        if expected_close_from is not None:
            stmt = stmt.where(CRMDeal.expected_close_date >= expected_close_from)
        if expected_close_to is not None:
            stmt = stmt.where(CRMDeal.expected_close_date <= expected_close_to)
        return list(self.session.scalars(stmt).all())

    def list_owners_with_open_deals(self) -> list[str]:
        stmt = (
            select(CRMDeal.owner_user_id)
            .where(CRMDeal.outcome == OUTCOME_OPEN)
            .distinct()
            .order_by(CRMDeal.owner_user_id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def add(self, deal: CRMDeal) -> CRMDeal:
        self.session.add(deal)
        self.session.flush()
        return deal

    def add_snapshot(self, snapshot: CRMDealForecastSnapshot) -> CRMDealForecastSnapshot:
        self.session.add(snapshot)
        self.session.flush()
        return snapshot

    def compare_and_update(
        self,
        deal: CRMDeal,
        values: dict[str, Any],
        *,
        expected_row_version: int | None = None,
        require_open: bool = True,
        expected_stage: str | None = None,
    ) -> CRMDeal:
        conditions = [
            CRMDeal.id == deal.id,
            CRMDeal.row_version == (expected_row_version if expected_row_version is not None else deal.row_version),
        ]
        if require_open:
            conditions.append(CRMDeal.outcome == OUTCOME_OPEN)
        if expected_stage is not None:
            conditions.append(CRMDeal.stage == expected_stage)

        result = self.session.execute(
            update(CRMDeal)
            .where(and_(*conditions))
            .values(**values, row_version=CRMDeal.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise DealConflictError("deal was modified concurrently")

        refreshed = self.session.scalar(
            select(CRMDeal).where(CRMDeal.id == deal.id).execution_options(populate_existing=True)
        )
        if refreshed is None:
            self.session.rollback()
            raise DealNotFoundError(deal.id)
        return refreshed

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
