"""
Celery app for queued sync runs (enabled with CELERY_ENABLED=true).

The cron route enqueues here instead of syncing inside the request.
Redis (REDIS_URL) is both broker and result backend.
"""
from celery import Celery

from socialsync.settings import get_settings

SYNC_QUEUE = "sync"
# a full tenant sync is bounded by the per-account HTTP timeouts times the pool
TASK_TIME_LIMIT_SEC = 2 * 3600

settings = get_settings()

celery_app = Celery("socialsync", broker=settings.redis_url, backend=settings.redis_url)

celery_app.conf.update(
    task_default_queue=SYNC_QUEUE,
    task_routes={"sync.*": {"queue": SYNC_QUEUE}, "tokens.*": {"queue": SYNC_QUEUE}},
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_time_limit=TASK_TIME_LIMIT_SEC,
    task_soft_time_limit=TASK_TIME_LIMIT_SEC - 600,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    result_expires=24 * 3600,
    timezone="UTC",
    enable_utc=True,
    # longer than the hard limit, otherwise Redis redelivers running syncs
    broker_transport_options={"visibility_timeout": TASK_TIME_LIMIT_SEC + 3600},
)

celery_app.autodiscover_tasks(["socialsync.worker"])
