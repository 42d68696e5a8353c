from celery import Celery, signals
from celery.schedules import crontab

from app.core.config import settings
from app.core.logging import setup_logging
from app.core.sentry import init_sentry

celery_app = Celery(
    "llm_visibility",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

# Celery Beat schedule: reconciliation heals gaps left by lost background work,
# chart precompute keeps dashboard snapshots warm.
celery_app.conf.beat_schedule = {
    "reconcile-source-metrics": {
        "task": "reconcile_source_metrics",
        "schedule": crontab(minute=f"*/{settings.reconcile_interval_minutes}"),
    },
    "precompute-charts": {
        "task": "precompute_charts",
        "schedule": crontab(hour=settings.chart_precompute_hour, minute=0),
    },
}

# Explicit include (needed for CLI worker startup)
celery_app.conf.include = [
    "app.tasks.metrics_tasks",
]


@signals.setup_logging.connect
def _configure_worker_logging(**kwargs):
    # Connecting this signal stops Celery from installing its own root handlers
    setup_logging(service="worker")


@signals.worker_init.connect
def _init_worker_sentry(**kwargs):
    init_sentry(service="worker")
