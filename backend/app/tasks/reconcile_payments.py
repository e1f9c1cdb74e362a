"""
Celery task that re-verifies payments stuck in processing.
Covers lost webhooks and payers who never came back from the checkout page.
"""
import asyncio
import logging
import time
from dataclasses import asdict
from datetime import timedelta

from app.config import settings
from app.database import build_engine, build_session_factory
from app.services.settlement_service import settlement_service
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="reconcile_stale_payments")
def reconcile_stale_payments_task(older_than_minutes: int = None, limit: int = None):
    """
    Verify processing payments untouched for ``older_than_minutes``.
    Runs on the beat schedule; safe to trigger manually.
    """
    start_time = time.time()
    report = asyncio.run(
        _reconcile_async(
            older_than_minutes or settings.reconcile_after_minutes,
            limit or settings.reconcile_batch_size,
        )
    )
    logger.info(
        "Reconciliation run finished",
        extra={
            "event": "reconcile_task_completed",
            "duration_ms": (time.time() - start_time) * 1000,
            **asdict(report),
        }
    )
    return asdict(report)


async def _reconcile_async(older_than_minutes: int, limit: int):
    # Engine is created inside this event loop; pooled connections cannot cross loops
    engine = build_engine(settings.database_url)
    WorkerSessionLocal = build_session_factory(engine)
    try:
        async with WorkerSessionLocal() as db:
            return await settlement_service.reconcile_stale_payments(
                db,
                older_than=timedelta(minutes=older_than_minutes),
                limit=limit,
            )
    finally:
        await engine.dispose()
