from celery import Celery

from app.core.config import get_settings
from app.core.database import SessionLocal

settings = get_settings()

celery_app = Celery("deal_pipeline_api", broker=settings.redis_url, backend=settings.redis_url)


@celery_app.task(name="app.tasks.forecast_snapshots")
def forecast_snapshots_task() -> dict[str, int | str]:
    from app.crm.jobs import forecast_snapshot_job_runner

    session = SessionLocal()
    try:
        return forecast_snapshot_job_runner.run(session).model_dump()
    finally:
        session.close()
