"""
Celery application for the periodic orchestration passes.

Broker/backend: Redis (REDIS_URL env).
Default queue: orchestrator.
"""
from celery import Celery

from app.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "video_matrix",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # A pass is short; a stuck one must not overlap the next tick for long
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,
    task_default_queue="orchestrator",
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    result_expires=3600,
)

# Auto-discover tasks in app.worker.tasks
celery_app.autodiscover_tasks(["app.worker"])
