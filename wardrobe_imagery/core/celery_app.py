"""
Celery wiring for background pipeline runs.

Generation calls Replicate, so it goes to `api_queue` where concurrency can be
tuned to the account's rate limit independently of anything else.
"""

from celery import Celery
from kombu import Queue

from wardrobe_imagery.core.config import settings

TASK_MODULE = "wardrobe_imagery.pipeline.tasks"

celery_app = Celery(
    "wardrobe_imagery",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
    include=[TASK_MODULE],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    enable_utc=True,
    timezone="UTC",
    task_track_started=True,
    # Generation polls for up to two minutes; removal adds its own retries
    task_soft_time_limit=540,
    task_time_limit=600,
    result_expires=24 * 60 * 60,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
    task_queues=(
        Queue("default", routing_key="default"),
        Queue("api_queue", routing_key="api.#"),
    ),
    task_default_queue="default",
    task_routes={
        f"{TASK_MODULE}.generate_item_image": {"queue": "api_queue"},
    },
    # A worker dying mid-run requeues the message instead of dropping it
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)
