"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "marginsync",
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
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.ingest.*": {"queue": "ingest"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # Re-derive margins after rate or catalog changes land during the day
        "recompute-sales-nightly": {
            "task": "workers.ingest.recompute_sales",
            "schedule": crontab(hour=2, minute=0),
            "options": {"queue": "ingest"},
        },
    },
)

# Auto-discover tasks
celery_app.autodiscover_tasks(["workers"], related_name="ingest")
