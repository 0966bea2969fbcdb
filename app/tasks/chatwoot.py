"""Celery tasks for the WhatsApp <-> Chatwoot sync engine."""

import time

from app.celery_app import celery_app
from app.config import settings
from app.container import container
from app.db import SessionLocal
from app.logging import get_logger
from app.metrics import observe_job
from app.models.chatwoot import SyncJob
from app.services.chatwoot import config as config_service
from app.services.chatwoot import echo
from app.services.chatwoot.errors import NotConfiguredError
from app.services.chatwoot.inbound_webhook import ChatwootWebhookHandler
from app.services.chatwoot.inbound_whatsapp import WhatsAppEventHandler
from app.services.chatwoot.resolver import IdentityResolver
from app.services.chatwoot.sync import BulkSyncOrchestrator, reconcile_stale
from app.services.common import coerce_uuid

logger = get_logger(__name__)


@celery_app.task(name="app.tasks.chatwoot.process_whatsapp_event")
def process_whatsapp_event(session_id: str, payload: dict):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    client = None
    try:
        try:
            config = config_service.require_config(session, session_id)
        except NotConfiguredError:
            status = "skipped"
            logger.info("chatwoot_whatsapp_event_unconfigured session_id=%s", session_id)
            return None
        client = container.chatwoot_client_factory()(config)
        resolver = IdentityResolver(session, client, config, container.resolver_locks())
        handler = WhatsAppEventHandler(session, client, config, resolver, container.session_gateway())
        result = handler.handle_event(payload)
        logger.info(
            "chatwoot_whatsapp_event_processed session_id=%s jid=%s state=%s reason=%s",
            session_id,
            result.jid,
            result.state,
            result.reason,
        )
        return result.model_dump()
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        if client is not None:
            client.close()
        session.close()
        observe_job("chatwoot_whatsapp_event", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.chatwoot.process_chatwoot_webhook")
def process_chatwoot_webhook(session_id: str, payload: dict):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    client = None
    try:
        try:
            config = config_service.require_config(session, session_id)
        except NotConfiguredError:
            status = "skipped"
            logger.info("chatwoot_webhook_unconfigured session_id=%s", session_id)
            return None
        client = container.chatwoot_client_factory()(config)
        handler = ChatwootWebhookHandler(session, client, config, container.session_gateway())
        result = handler.handle(payload)
        logger.info(
            "chatwoot_webhook_processed session_id=%s event=%s status=%s reason=%s",
            session_id,
            payload.get("event"),
            result.status,
            result.reason,
        )
        return result.model_dump()
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        if client is not None:
            client.close()
        session.close()
        observe_job("chatwoot_webhook", status, time.monotonic() - start)


@celery_app.task(
    name="app.tasks.chatwoot.run_sync_job",
    time_limit=6 * 3600,
    soft_time_limit=6 * 3600 - 60,
)
def run_sync_job(job_id: str):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    client = None
    logger.info("CHATWOOT_SYNC_JOB_START job_id=%s", job_id)
    try:
        job = session.get(SyncJob, coerce_uuid(job_id))
        if not job:
            status = "skipped"
            logger.warning("chatwoot_sync_job_missing job_id=%s", job_id)
            return None
        config = config_service.require_config(session, job.session_id)
        client = container.chatwoot_client_factory()(config)
        orchestrator = BulkSyncOrchestrator(
            session,
            client,
            config,
            container.resolver_locks(),
            container.session_gateway(),
        )
        job = orchestrator.run(job_id)
        return job.status.value if job else None
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        if client is not None:
            client.close()
        session.close()
        observe_job("chatwoot_sync_job", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.chatwoot.purge_echo_tags")
def purge_echo_tags():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return echo.purge_expired(session, settings.chatwoot_echo_tag_ttl_seconds)
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("chatwoot_purge_echo_tags", status, time.monotonic() - start)


@celery_app.task(name="app.tasks.chatwoot.reconcile_stale_sync_jobs")
def reconcile_stale_sync_jobs():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return reconcile_stale(session)
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("chatwoot_reconcile_stale_sync_jobs", status, time.monotonic() - start)
