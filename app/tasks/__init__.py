from app.tasks.chatwoot import (
    process_chatwoot_webhook,
    process_whatsapp_event,
    purge_echo_tags,
    reconcile_stale_sync_jobs,
    run_sync_job,
)

__all__ = [
    "process_chatwoot_webhook",
    "process_whatsapp_event",
    "purge_echo_tags",
    "reconcile_stale_sync_jobs",
    "run_sync_job",
]
