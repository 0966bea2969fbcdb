from datetime import timedelta

from celery import Celery

from app.config import settings
from app.logging import configure_logging

configure_logging()

celery_app = Celery(
    "wa_chatwoot",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.tasks.chatwoot"],
)

celery_app.conf.update(
    timezone="UTC",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)


def build_beat_schedule() -> dict:
    stale_interval = max(settings.chatwoot_sync_stale_after_seconds // 3, 60)
    return {
        "chatwoot_purge_echo_tags": {
            "task": "app.tasks.chatwoot.purge_echo_tags",
            "schedule": timedelta(seconds=max(settings.chatwoot_echo_tag_ttl_seconds // 4, 60)),
        },
        "chatwoot_reconcile_stale_sync_jobs": {
            "task": "app.tasks.chatwoot.reconcile_stale_sync_jobs",
            "schedule": timedelta(seconds=stale_interval),
        },
    }


celery_app.conf.beat_schedule = build_beat_schedule()
