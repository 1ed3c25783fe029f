from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date, timedelta

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.database import Base
from app.crm.errors import (
    DealAccessDeniedError,
    DealConflictError,
    DealNotFoundError,
    DealValidationError,
    InvalidDealActionError,
    InvalidDealStateError,
)
from app.crm.models import CRMDeal
from app.crm.pipeline import STAGE_ORDER, STAGE_WEIGHTS
from app.crm.repositories import DealRepository
from app.crm.schemas import DealCreate, DealListFilters, DealUpdate
from app.crm.service import ActorUser, DealPipelineEngine, add_months
from app.models.audit import AuditLog


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def engine(db_session: Session) -> DealPipelineEngine:
    return DealPipelineEngine(DealRepository(db_session))


@pytest.fixture()
def owner() -> ActorUser:
    return ActorUser(user_id="user-1", correlation_id="corr-engine")


@pytest.fixture()
def other_user() -> ActorUser:
    return ActorUser(user_id="user-2", correlation_id="corr-engine")


@pytest.fixture(autouse=True)
def clear_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


def _create(engine: DealPipelineEngine, actor: ActorUser, **fields) -> uuid.UUID:
    payload = {"title": "Acme renewal", "value": 1000, **fields}
    return engine.create_deal(actor, DealCreate(**payload)).id


def test_create_deal_defaults(engine: DealPipelineEngine, owner: ActorUser) -> None:
    created = engine.create_deal(owner, DealCreate(title="  Acme renewal  ", value=2500.5))

    assert created.title == "Acme renewal"
    assert created.stage == "PROSPECTING"
    assert created.outcome == "OPEN"
    assert created.probability == 10
    assert created.currency == "USD"
    assert created.value == 2500.5
    assert created.row_version == 1
    assert created.closed_at is None
    assert events.published_events[-1]["event_type"] == "crm.deal.created"


def test_create_deal_with_stage_uses_stage_weight(engine: DealPipelineEngine, owner: ActorUser) -> None:
    created = engine.create_deal(owner, DealCreate(title="Big one", value=10, stage="PROPOSAL", currency="eur"))

    assert created.stage == "PROPOSAL"
    assert created.probability == 50
    assert created.currency == "EUR"


def test_move_to_next_stage_from_proposal(
    engine: DealPipelineEngine,
    owner: ActorUser,
    db_session: Session,
) -> None:
    deal_id = _create(engine, owner, value=10000, stage="PROPOSAL")
    stale_time = engine.get_deal(owner, deal_id).stage_changed_at - timedelta(days=3)
    db_session.execute(update(CRMDeal).where(CRMDeal.id == deal_id).values(stage_changed_at=stale_time))
    db_session.commit()

    moved = engine.move_to_next_stage(owner, deal_id)

    assert moved.stage == "NEGOTIATION"
    assert moved.outcome == "OPEN"
    assert moved.probability == 75
    assert moved.value == 10000
    assert moved.row_version == 2
    assert moved.stage_changed_at > stale_time
    envelope = events.published_events[-1]
    assert envelope["event_type"] == "crm.deal.stage_changed"
    assert envelope["payload"]["from_stage"] == "PROPOSAL"
    assert envelope["payload"]["to_stage"] == "NEGOTIATION"


def test_move_walks_every_stage_in_order(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner)

    stages = [engine.move_to_next_stage(owner, deal_id).stage for _ in range(3)]

    assert stages == ["QUALIFICATION", "PROPOSAL", "NEGOTIATION"]


def test_move_from_negotiation_is_noop(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner, stage="NEGOTIATION")
    before = engine.get_deal(owner, deal_id)
    events.published_events.clear()

    after = engine.move_to_next_stage(owner, deal_id)

    assert after.stage == "NEGOTIATION"
    assert after.outcome == "OPEN"
    assert after.row_version == before.row_version
    assert events.published_events == []


@pytest.mark.parametrize("close", ["won", "lost"])
def test_move_on_closed_deal_fails_without_mutation(
    engine: DealPipelineEngine,
    owner: ActorUser,
    close: str,
) -> None:
    deal_id = _create(engine, owner, stage="NEGOTIATION")
    if close == "won":
        engine.mark_as_won(owner, deal_id)
    else:
        engine.mark_as_lost(owner, deal_id, "Budget")
    closed = engine.get_deal(owner, deal_id)

    with pytest.raises(InvalidDealStateError):
        engine.move_to_next_stage(owner, deal_id)

    assert engine.get_deal(owner, deal_id) == closed


def test_mark_as_won(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner, stage="PROPOSAL")

    won = engine.mark_as_won(owner, deal_id)

    assert won.outcome == "WON"
    assert won.stage == "PROPOSAL"
    assert won.probability == 100
    assert won.closed_at is not None
    assert won.lost_reason is None
    assert events.published_events[-1]["event_type"] == "crm.deal.closed_won"


def test_mark_as_won_twice_fails(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner)
    engine.mark_as_won(owner, deal_id)

    with pytest.raises(InvalidDealStateError):
        engine.mark_as_won(owner, deal_id)


def test_mark_as_lost_stores_reason(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner)

    lost = engine.mark_as_lost(owner, deal_id, "  Went with competitor ")

    assert lost.outcome == "LOST"
    assert lost.probability == 0
    assert lost.lost_reason == "Went with competitor"
    assert lost.closed_at is not None
    assert events.published_events[-1]["payload"]["lost_reason"] == "Went with competitor"


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_mark_as_lost_without_reason_uses_default(
    engine: DealPipelineEngine,
    owner: ActorUser,
    reason: str | None,
) -> None:
    deal_id = _create(engine, owner)

    lost = engine.mark_as_lost(owner, deal_id, reason)

    assert lost.lost_reason == "No reason provided"


def test_mark_as_lost_after_won_fails(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner)
    engine.mark_as_won(owner, deal_id)

    with pytest.raises(InvalidDealStateError):
        engine.mark_as_lost(owner, deal_id, "Too late")


def test_unknown_deal_is_not_found(engine: DealPipelineEngine, owner: ActorUser) -> None:
    with pytest.raises(DealNotFoundError):
        engine.move_to_next_stage(owner, uuid.uuid4())
    with pytest.raises(DealNotFoundError):
        engine.mark_as_won(owner, uuid.uuid4())


def test_other_users_deal_is_denied(
    engine: DealPipelineEngine,
    owner: ActorUser,
    other_user: ActorUser,
) -> None:
    deal_id = _create(engine, owner)

    with pytest.raises(DealAccessDeniedError):
        engine.get_deal(other_user, deal_id)
    with pytest.raises(DealAccessDeniedError):
        engine.mark_as_lost(other_user, deal_id, "not mine")

    assert engine.get_deal(owner, deal_id).outcome == "OPEN"


def test_apply_stage_action_dispatch(engine: DealPipelineEngine, owner: ActorUser) -> None:
    first = _create(engine, owner)
    second = _create(engine, owner)

    assert engine.apply_stage_action(owner, first, "next").stage == "QUALIFICATION"
    assert engine.apply_stage_action(owner, first, "WON").outcome == "WON"
    assert engine.apply_stage_action(owner, second, "lost", "Timing").lost_reason == "Timing"


def test_apply_stage_action_rejects_unknown_action(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner)

    with pytest.raises(InvalidDealActionError) as exc_info:
        engine.apply_stage_action(owner, deal_id, "reopen")

    assert exc_info.value.action == "reopen"
    assert engine.get_deal(owner, deal_id).row_version == 1


def test_stale_row_version_is_a_conflict(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner)
    engine.update_deal(owner, deal_id, DealUpdate(row_version=1, title="First edit"))

    with pytest.raises(DealConflictError):
        engine.update_deal(owner, deal_id, DealUpdate(row_version=1, title="Second edit"))

    assert engine.get_deal(owner, deal_id).title == "First edit"


def test_guarded_update_loses_race_against_concurrent_close(
    engine: DealPipelineEngine,
    owner: ActorUser,
    db_session: Session,
) -> None:
    deal_id = _create(engine, owner)
    repository = engine.repository
    deal = repository.get_for_owner(deal_id, owner.user_id)
    db_session.execute(
        update(CRMDeal)
        .where(CRMDeal.id == deal_id)
        .values(outcome="WON", probability=100, row_version=CRMDeal.row_version + 1)
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(DealConflictError):
        repository.compare_and_update(deal, {"stage": "QUALIFICATION"}, expected_row_version=1)


def test_update_deal_fields(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner)

    updated = engine.update_deal(
        owner,
        deal_id,
        DealUpdate(title="Acme expansion", value=4200, currency="gbp", notes="call back in May"),
    )

    assert updated.title == "Acme expansion"
    assert updated.value == 4200
    assert updated.currency == "GBP"
    assert updated.notes == "call back in May"
    assert updated.stage == "PROSPECTING"
    assert events.published_events[-1]["event_type"] == "crm.deal.updated"


def test_closed_deal_value_is_frozen(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner, value=900)
    engine.mark_as_won(owner, deal_id)

    with pytest.raises(InvalidDealStateError):
        engine.update_deal(owner, deal_id, DealUpdate(value=1200))

    renamed = engine.update_deal(owner, deal_id, DealUpdate(title="Closed renamed", value=900))
    assert renamed.title == "Closed renamed"
    assert renamed.value == 900


def test_update_rejects_null_title(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner)

    with pytest.raises(DealValidationError):
        engine.update_deal(owner, deal_id, DealUpdate(title=None))


def test_assign_and_unassign(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner)

    assert engine.assign_deal(owner, deal_id, "rep-7").assigned_to_user_id == "rep-7"
    assert engine.assign_deal(owner, deal_id, None).assigned_to_user_id is None


def test_list_deals_is_owner_scoped_and_ordered(
    engine: DealPipelineEngine,
    owner: ActorUser,
    other_user: ActorUser,
) -> None:
    negotiation = _create(engine, owner, title="N", stage="NEGOTIATION")
    prospecting = _create(engine, owner, title="P")
    proposal = _create(engine, owner, title="R", stage="PROPOSAL", value=50)
    _create(engine, other_user, title="Other")

    listed = engine.list_deals(owner)
    assert [row.id for row in listed] == [prospecting, proposal, negotiation]

    filtered = engine.list_deals(owner, DealListFilters(max_value=100))
    assert [row.id for row in filtered] == [proposal]

    with pytest.raises(DealValidationError):
        engine.list_deals(owner, DealListFilters(min_value=10, max_value=5))


def test_history_records_every_mutation(
    engine: DealPipelineEngine,
    owner: ActorUser,
    db_session: Session,
) -> None:
    deal_id = _create(engine, owner)
    engine.move_to_next_stage(owner, deal_id)
    engine.mark_as_lost(owner, deal_id, None)

    history = engine.get_deal_history(owner, deal_id)

    assert [row.action for row in history] == ["create", "stage_changed", "closed_lost"]
    assert history[0].before is None
    assert history[1].before["stage"] == "PROSPECTING"
    assert history[1].after["stage"] == "QUALIFICATION"
    assert history[2].after["lost_reason"] == "No reason provided"
    assert all(row.correlation_id == "corr-engine" for row in history)
    assert len(db_session.scalars(select(AuditLog)).all()) == 3


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(date(2026, 1, 31), 1) == date(2026, 2, 28)
    assert add_months(date(2026, 11, 15), 3) == date(2027, 2, 15)


def test_stage_weights_follow_stage_order() -> None:
    assert set(STAGE_ORDER) == set(STAGE_WEIGHTS)
    weights = [STAGE_WEIGHTS[stage] for stage in STAGE_ORDER]
    assert weights == sorted(weights)
    assert len(set(weights)) == len(weights)


def test_version_only_update_with_stale_row_version_is_a_conflict(
    engine: DealPipelineEngine,
    owner: ActorUser,
) -> None:
    deal_id = _create(engine, owner)
    engine.update_deal(owner, deal_id, DealUpdate(title="Edited"))

    with pytest.raises(DealConflictError):
        engine.update_deal(owner, deal_id, DealUpdate(row_version=1))

    current = engine.update_deal(owner, deal_id, DealUpdate(row_version=2))
    assert current.row_version == 2


def test_apply_stage_action_without_action_is_invalid(engine: DealPipelineEngine, owner: ActorUser) -> None:
    deal_id = _create(engine, owner)

    with pytest.raises(InvalidDealActionError) as exc_info:
        engine.apply_stage_action(owner, deal_id, None)

    assert exc_info.value.action is None
    assert engine.get_deal(owner, deal_id).stage == "PROSPECTING"
