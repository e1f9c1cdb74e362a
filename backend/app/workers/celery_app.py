"""
Celery application configuration.
Redis is both broker and result backend; beat drives the reconciliation job.
"""
import logging
from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure
from app.config import settings
from app.utils.metrics import jobs_processing, jobs_completed_total, jobs_failed_total
from app.utils.logging import configure_logging

logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "eventpay",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.tasks.reconcile_payments",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,  # 8 minutes
    worker_prefetch_multiplier=1,
    beat_schedule={
        "reconcile-stale-payments": {
            "task": "reconcile_stale_payments",
            "schedule": float(settings.reconcile_interval_seconds),
        },
    },
)

# Configure structured JSON logging
configure_logging('eventpay-worker', settings.log_level)


# Celery signal handlers for metrics
@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **kwds):
    """Track task start."""
    job_type = task.name if task else "unknown"
    jobs_processing.labels(job_type=job_type).inc()


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, retval=None, state=None, **kwds):
    """Track task completion."""
    job_type = task.name if task else "unknown"
    jobs_processing.labels(job_type=job_type).dec()
    jobs_completed_total.labels(job_type=job_type, status=state or "unknown").inc()


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, traceback=None, einfo=None, **kwds):
    """Track task failures (postrun still fires and releases the gauge)."""
    job_type = sender.name if sender else "unknown"
    jobs_failed_total.labels(job_type=job_type).inc()
