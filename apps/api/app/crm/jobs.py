from __future__ import annotations

import logging
import time
import uuid

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from app.context import reset_correlation_id, set_correlation_id
from app.crm.models import CRMDealForecastSnapshot
from app.crm.repositories import DealRepository
from app.crm.schemas import ForecastSnapshotRunRead
from app.crm.service import ActorUser, DealPipelineEngine, to_money, utcnow
from app.metrics import observe_job


logger = logging.getLogger("app.crm.jobs")
tracer = trace.get_tracer("app.crm.jobs")

JOB_TYPE = "FORECAST_SNAPSHOT"


class ForecastSnapshotJobRunner:
    """Stores one revenue forecast snapshot per user that owns open deals.

    Users are processed one at a time, each in its own transaction. A failing
    user is rolled back, logged and counted, and the run moves on.
    """

    def run(self, session: Session, correlation_id: str | None = None) -> ForecastSnapshotRunRead:
        correlation_id = correlation_id or str(uuid.uuid4())
        token = set_correlation_id(correlation_id)
        started = time.perf_counter()
        final_status = "Failed"
        succeeded = 0
        failed = 0
        owners: list[str] = []

        with tracer.start_as_current_span("crm.job.run") as job_span:
            job_span.set_attribute("job_type", JOB_TYPE)
            job_span.set_attribute("correlation_id", correlation_id)
            logger.info("job.started", extra={"job_type": JOB_TYPE, "status": "Running", "duration_ms": 0.0})

            try:
                repository = DealRepository(session)
                engine = DealPipelineEngine(repository)
                owners = repository.list_owners_with_open_deals()

                for owner_user_id in owners:
                    with tracer.start_as_current_span("crm.forecast_snapshot") as owner_span:
                        owner_span.set_attribute("owner_user_id", owner_user_id)
                        try:
                            self._snapshot_owner(engine, owner_user_id, correlation_id)
                            succeeded += 1
                        except Exception as exc:
                            session.rollback()
                            failed += 1
                            owner_span.record_exception(exc)
                            owner_span.set_status(Status(StatusCode.ERROR, str(exc)))
                            logger.exception(
                                "forecast_snapshot_failed",
                                extra={"job_type": JOB_TYPE, "owner_user_id": owner_user_id, "error": str(exc)[:500]},
                            )

                if failed and succeeded:
                    final_status = "PartiallySucceeded"
                elif failed:
                    final_status = "Failed"
                else:
                    final_status = "Succeeded"
                if final_status == "Failed":
                    job_span.set_status(Status(StatusCode.ERROR, "all snapshots failed"))
            finally:
                duration = time.perf_counter() - started
                observe_job(job_type=JOB_TYPE, status=final_status, duration=duration)
                logger.info(
                    "job.finished",
                    extra={
                        "job_type": JOB_TYPE,
                        "status": final_status,
                        "users": len(owners),
                        "succeeded": succeeded,
                        "failed": failed,
                        "duration_ms": round(duration * 1000, 2),
                    },
                )
                reset_correlation_id(token)

        return ForecastSnapshotRunRead(users=len(owners), succeeded=succeeded, failed=failed, status=final_status)

    def _snapshot_owner(self, engine: DealPipelineEngine, owner_user_id: str, correlation_id: str) -> None:
        forecast = engine.get_revenue_forecast(ActorUser(user_id=owner_user_id, correlation_id=correlation_id))
        engine.repository.add_snapshot(
            CRMDealForecastSnapshot(
                owner_user_id=owner_user_id,
                open_deal_count=forecast.open_deal_count,
                unweighted_total=to_money(forecast.unweighted_total),
                weighted_total=to_money(forecast.weighted_total),
                correlation_id=correlation_id,
                captured_at=utcnow(),
            )
        )
        engine.repository.commit()


forecast_snapshot_job_runner = ForecastSnapshotJobRunner()
