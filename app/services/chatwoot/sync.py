"""Bulk backfill of WhatsApp contacts and history into Chatwoot."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.chatwoot import (
    ChatwootConfig,
    ContactMapping,
    ConversationMapping,
    ConversationStatus,
    FailureDirection,
    SyncJob,
    SyncJobStatus,
    SyncJobType,
)
from app.models.whatsapp import WhatsAppContact, WhatsAppMessage
from app.schemas.chatwoot import SyncJobRead, WAMessageEvent, WAMessageKey
from app.services.chatwoot import config as config_service
from app.services.chatwoot import echo
from app.services.chatwoot.client import ChatwootClient, ChatwootError
from app.services.chatwoot.dispatch import push_draft
from app.services.chatwoot.errors import ConfigValidationError, ConflictError, DeliveryError, ResolutionError, TranslationError
from app.services.chatwoot.inbound_whatsapp import is_ignored
from app.services.chatwoot.locks import KeyedLock
from app.services.chatwoot.observability import SYNC_ITEMS
from app.services.chatwoot.phone import InvalidJidError, is_group_jid, normalize_jid
from app.services.chatwoot.resolver import IdentityResolver
from app.services.chatwoot.session import SessionGateway
from app.services.chatwoot.translator import to_support_message
from app.services.common import coerce_uuid
from app.services.sync_failures import record_failure

logger = logging.getLogger(__name__)

ERROR_CANCELLED = "cancelled"
ERROR_STALE = "stale"


class SyncCancelled(Exception):
    pass


def _now() -> datetime:
    return datetime.now(UTC)


def reconcile_stale(db: Session, stale_after_seconds: int | None = None) -> int:
    """Fail running jobs whose heartbeat stopped, e.g. after a worker crash."""
    stale_after = stale_after_seconds or settings.chatwoot_sync_stale_after_seconds
    cutoff = _now() - timedelta(seconds=stale_after)
    stale = (
        db.query(SyncJob)
        .filter(SyncJob.status == SyncJobStatus.running)
        .filter(func.coalesce(SyncJob.heartbeat_at, SyncJob.started_at, SyncJob.created_at) < cutoff)
        .all()
    )
    for job in stale:
        job.status = SyncJobStatus.failed
        job.error = ERROR_STALE
        job.finished_at = _now()
        logger.warning(
            "chatwoot_sync_job_stale session_id=%s job_id=%s progress=%s total=%s",
            job.session_id,
            job.id,
            job.progress,
            job.total,
        )
    if stale:
        db.commit()
    return len(stale)


def running_job(db: Session, session_id: str) -> SyncJob | None:
    return (
        db.query(SyncJob)
        .filter(SyncJob.session_id == session_id)
        .filter(SyncJob.status == SyncJobStatus.running)
        .first()
    )


def latest_job(db: Session, session_id: str) -> SyncJob | None:
    return (
        db.query(SyncJob)
        .filter(SyncJob.session_id == session_id)
        .order_by(SyncJob.created_at.desc())
        .first()
    )


def request_cancel(db: Session, session_id: str) -> SyncJob | None:
    """Flag the running job; the runner stops at its next checkpoint."""
    job = running_job(db, session_id)
    if not job:
        return None
    job.cancel_requested = True
    db.commit()
    logger.info("chatwoot_sync_job_cancel_requested session_id=%s job_id=%s", session_id, job.id)
    return job


def reset_integration(db: Session, session_id: str) -> dict[str, int]:
    if running_job(db, session_id):
        raise ConflictError("already-running", "Cannot reset while a sync job is running")
    return config_service.reset_mappings(db, session_id)


def idle_status(session_id: str) -> SyncJobRead:
    return SyncJobRead(session_id=session_id, status=SyncJobStatus.idle)


def job_read(job: SyncJob) -> SyncJobRead:
    return SyncJobRead(
        id=job.id,
        session_id=job.session_id,
        type=job.job_type,
        status=job.status,
        progress=job.progress,
        total=job.total,
        window_days=job.window_days,
        stats=job.stats,
        error=job.error,
        started_at=job.started_at,
        finished_at=job.finished_at,
    )


class BulkSyncOrchestrator:
    def __init__(
        self,
        db: Session,
        client: ChatwootClient,
        config: ChatwootConfig,
        locks: KeyedLock,
        gateway: SessionGateway,
        page_size: int | None = None,
    ):
        self.db = db
        self.client = client
        self.config = config
        self.locks = locks
        self.gateway = gateway
        self.page_size = page_size or settings.chatwoot_sync_page_size
        self.resolver = IdentityResolver(db, client, config, locks)

    @property
    def session_id(self) -> str:
        return self.config.session_id

    # ==================== Job lifecycle ====================

    def _running_job(self) -> SyncJob | None:
        return running_job(self.db, self.session_id)

    def _halves(self, job_type: SyncJobType) -> list[SyncJobType]:
        enabled = {
            SyncJobType.contacts: self.config.sync_contacts_enabled,
            SyncJobType.messages: self.config.sync_messages_enabled,
        }
        if job_type == SyncJobType.all:
            halves = [half for half, on in enabled.items() if on]
            if not halves:
                raise ConfigValidationError("sync_disabled", "Neither contact nor message sync is enabled")
            return halves
        if not enabled[job_type]:
            raise ConfigValidationError("sync_disabled", f"{job_type.value} sync is not enabled")
        return [job_type]

    def start(
        self,
        session_id: str,
        job_type: SyncJobType,
        window_days: int | None = None,
        dispatch: bool = True,
    ) -> SyncJob:
        if session_id != self.session_id:
            raise ConfigValidationError("session_mismatch", f"Orchestrator bound to session {self.session_id}")
        if not self.config.enabled:
            raise ConfigValidationError("chatwoot_disabled", "Chatwoot integration is disabled")
        self._halves(job_type)
        reconcile_stale(self.db)

        running = self._running_job()
        if running:
            raise ConflictError("already-running", f"Sync job {running.id} is already running")

        now = _now()
        job = SyncJob(
            session_id=session_id,
            job_type=job_type,
            status=SyncJobStatus.running,
            progress=0,
            total=0,
            window_days=window_days or self.config.sync_window_days,
            stats={"imported": 0, "skipped": 0, "errors": 0},
            started_at=now,
            heartbeat_at=now,
        )
        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ConflictError("already-running", "A sync job is already running") from exc
        self.db.refresh(job)
        logger.info(
            "chatwoot_sync_job_started session_id=%s job_id=%s type=%s window_days=%s",
            session_id,
            job.id,
            job_type.value,
            job.window_days,
        )

        if dispatch:
            from app.tasks.chatwoot import run_sync_job

            run_sync_job.delay(str(job.id))
        else:
            self.run(job.id)
        return job

    def status(self, session_id: str) -> SyncJobRead:
        job = latest_job(self.db, session_id)
        return job_read(job) if job else idle_status(session_id)

    def cancel(self, session_id: str) -> SyncJob | None:
        return request_cancel(self.db, session_id)

    def run(self, job_id: uuid.UUID | str) -> SyncJob | None:
        job_id = coerce_uuid(job_id)
        job = self.db.get(SyncJob, job_id)
        if not job or job.status != SyncJobStatus.running:
            return job
        stats = dict(job.stats or {"imported": 0, "skipped": 0, "errors": 0})
        try:
            halves = self._halves(job.job_type)
            cutoff = _now() - timedelta(days=job.window_days) if job.window_days else None
            total = 0
            if SyncJobType.contacts in halves:
                total += self._contacts_query(cutoff).count()
            if SyncJobType.messages in halves:
                total += self._messages_query(cutoff).count()
            job.total = total
            self._checkpoint(job, stats, 0)

            if SyncJobType.contacts in halves:
                self._sync_contacts(job, stats, cutoff)
            if SyncJobType.messages in halves:
                self._sync_messages(job, stats, cutoff)
        except SyncCancelled:
            self._finish(job, stats, SyncJobStatus.failed, ERROR_CANCELLED)
            return job
        except Exception as exc:
            self.db.rollback()
            logger.exception("chatwoot_sync_job_failed session_id=%s job_id=%s", self.session_id, job_id)
            record_failure(
                self.db,
                direction=FailureDirection.bulk_sync,
                session_id=self.session_id,
                reason=getattr(exc, "code", None) or type(exc).__name__,
                error=exc,
                kind=job.job_type.value,
            )
            job = self.db.get(SyncJob, job_id)
            self._finish(job, stats, SyncJobStatus.failed, str(getattr(exc, "detail", None) or exc))
            return job

        self._finish(job, stats, SyncJobStatus.completed, None)
        return job

    def _finish(self, job: SyncJob, stats: dict, status: SyncJobStatus, error: str | None) -> None:
        job.status = status
        job.error = error
        job.stats = dict(stats)
        job.finished_at = _now()
        job.heartbeat_at = job.finished_at
        self.db.commit()
        logger.info(
            "chatwoot_sync_job_finished session_id=%s job_id=%s status=%s progress=%s total=%s error=%s",
            job.session_id,
            job.id,
            status.value,
            job.progress,
            job.total,
            error,
        )

    def _checkpoint(self, job: SyncJob, stats: dict, processed: int) -> None:
        """Persist progress, then honour a pending cancel request."""
        job.progress += processed
        job.stats = dict(stats)
        job.heartbeat_at = _now()
        self.db.commit()
        self.db.refresh(job)
        if job.cancel_requested:
            raise SyncCancelled()

    def _count(self, stats: dict, job: SyncJob, key: str, half: SyncJobType) -> None:
        stats[key] = stats.get(key, 0) + 1
        SYNC_ITEMS.labels(job_type=half.value, status=key).inc()

    # ==================== Contacts ====================

    def _contacts_query(self, cutoff: datetime | None):
        query = self.db.query(WhatsAppContact).filter(WhatsAppContact.session_id == self.session_id)
        if cutoff is not None:
            query = query.filter(WhatsAppContact.updated_at >= cutoff)
        return query

    def _sync_contacts(self, job: SyncJob, stats: dict, cutoff: datetime | None) -> None:
        last_jid = ""
        while True:
            page = (
                self._contacts_query(cutoff)
                .filter(WhatsAppContact.jid > last_jid)
                .order_by(WhatsAppContact.jid)
                .limit(self.page_size)
                .all()
            )
            if not page:
                return
            for contact in page:
                self._sync_contact(job, stats, contact)
            last_jid = page[-1].jid
            self._checkpoint(job, stats, len(page))

    def _sync_contact(self, job: SyncJob, stats: dict, contact: WhatsAppContact) -> None:
        half = SyncJobType.contacts
        try:
            identity = normalize_jid(contact.jid)
        except InvalidJidError:
            self._count(stats, job, "skipped", half)
            return
        if identity.is_group or is_ignored(self.config, contact.jid):
            self._count(stats, job, "skipped", half)
            return
        already = (
            self.db.query(ContactMapping.id)
            .filter(ContactMapping.session_id == self.session_id)
            .filter(ContactMapping.whatsapp_jid == identity.jid)
            .first()
        )
        if already:
            self._count(stats, job, "skipped", half)
            return
        try:
            self.resolver.resolve_contact(self.session_id, contact.jid, contact.display_name)
        except ResolutionError as exc:
            if exc.retryable:
                raise
            logger.warning(
                "chatwoot_sync_contact_failed session_id=%s jid=%s reason=%s",
                self.session_id,
                contact.jid,
                exc.code,
            )
            self._count(stats, job, "errors", half)
            return
        self._count(stats, job, "imported", half)

    # ==================== Messages ====================

    def _messages_query(self, cutoff: datetime | None):
        query = self.db.query(WhatsAppMessage).filter(WhatsAppMessage.session_id == self.session_id)
        if cutoff is not None:
            query = query.filter(WhatsAppMessage.message_timestamp >= cutoff)
        return query

    def _chats(self, cutoff: datetime | None) -> list[str]:
        query = self.db.query(
            WhatsAppMessage.remote_jid,
            func.min(WhatsAppMessage.message_timestamp).label("first_at"),
        ).filter(WhatsAppMessage.session_id == self.session_id)
        if cutoff is not None:
            query = query.filter(WhatsAppMessage.message_timestamp >= cutoff)
        rows = query.group_by(WhatsAppMessage.remote_jid).order_by("first_at", WhatsAppMessage.remote_jid).all()
        return [row[0] for row in rows]

    def _display_name(self, jid: str) -> str | None:
        contact = (
            self.db.query(WhatsAppContact)
            .filter(WhatsAppContact.session_id == self.session_id)
            .filter(WhatsAppContact.jid == jid)
            .first()
        )
        return contact.display_name if contact else None

    def _sync_messages(self, job: SyncJob, stats: dict, cutoff: datetime | None) -> None:
        for jid in self._chats(cutoff):
            self._sync_chat(job, stats, cutoff, jid)

    def _chat_messages(self, cutoff: datetime | None, jid: str):
        return self._messages_query(cutoff).filter(WhatsAppMessage.remote_jid == jid)

    def _settle_chat(
        self, job: SyncJob, stats: dict, jid: str, remaining: int, counted: int, key: str, reason: str
    ) -> None:
        """Account for a chat's unprocessed rows in one checkpoint.

        ``counted`` rows of the current page already went into ``stats``; only
        ``remaining`` rows are added, so progress never runs past the total.
        """
        stats[key] = stats.get(key, 0) + remaining
        SYNC_ITEMS.labels(job_type=SyncJobType.messages.value, status=key).inc(remaining)
        logger.info(
            "chatwoot_sync_chat_settled session_id=%s jid=%s messages=%s status=%s reason=%s",
            self.session_id,
            jid,
            remaining,
            key,
            reason,
        )
        self._checkpoint(job, stats, counted + remaining)

    def _sync_chat(self, job: SyncJob, stats: dict, cutoff: datetime | None, jid: str) -> None:
        if is_ignored(self.config, jid):
            self._settle_chat(job, stats, jid, self._chat_messages(cutoff, jid).count(), 0, "skipped", "ignored_chat")
            return
        try:
            identity = normalize_jid(jid)
        except InvalidJidError:
            remaining = self._chat_messages(cutoff, jid).count()
            self._settle_chat(job, stats, jid, remaining, 0, "skipped", "unsupported_chat")
            return

        conversation: ConversationMapping | None = None
        last: tuple[datetime, str] | None = None
        while True:
            query = self._chat_messages(cutoff, jid)
            if last is not None:
                query = query.filter(
                    or_(
                        WhatsAppMessage.message_timestamp > last[0],
                        and_(WhatsAppMessage.message_timestamp == last[0], WhatsAppMessage.message_id > last[1]),
                    )
                )
            page = query.order_by(WhatsAppMessage.message_timestamp, WhatsAppMessage.message_id).limit(self.page_size).all()
            if not page:
                return
            for index, row in enumerate(page):
                if conversation is None and not echo.find_by_whatsapp_id(self.db, self.session_id, row.message_id):
                    try:
                        conversation = self._resolve_chat(identity.jid, jid)
                    except ResolutionError as exc:
                        if exc.retryable:
                            raise
                        remaining = query.count() - index
                        record_failure(
                            self.db,
                            direction=FailureDirection.bulk_sync,
                            session_id=self.session_id,
                            reason=exc.code,
                            error=exc,
                            kind=SyncJobType.messages.value,
                            jid=jid,
                            whatsapp_message_id=row.message_id,
                        )
                        self._settle_chat(job, stats, jid, remaining, index, "errors", "unresolvable_chat")
                        return
                self._sync_message(job, stats, row, conversation)
            last = (page[-1].message_timestamp, page[-1].message_id)
            self._checkpoint(job, stats, len(page))

    def _resolve_chat(self, canonical_jid: str, jid: str) -> ConversationMapping:
        """Raises ResolutionError; retryable ones halt the job, the rest fail only this chat."""
        display_name = None if is_group_jid(canonical_jid) else self._display_name(jid)
        try:
            _, conversation = self.resolver.resolve(self.session_id, jid, display_name)
        except ResolutionError as exc:
            if exc.retryable:
                raise
            logger.warning("chatwoot_sync_chat_unresolvable session_id=%s jid=%s reason=%s", self.session_id, jid, exc.code)
            raise
        if conversation.status == ConversationStatus.resolved:
            logger.info("chatwoot_sync_into_resolved session_id=%s jid=%s", self.session_id, jid)
        return conversation

    def _sync_message(
        self, job: SyncJob, stats: dict, row: WhatsAppMessage, conversation: ConversationMapping | None
    ) -> None:
        half = SyncJobType.messages
        if echo.find_by_whatsapp_id(self.db, self.session_id, row.message_id):
            self._count(stats, job, "skipped", half)
            return
        event = WAMessageEvent(
            key=WAMessageKey(
                id=row.message_id,
                remote_jid=row.remote_jid,
                from_me=row.from_me,
                participant=row.participant,
            ),
            push_name=row.push_name,
            message=row.content,
            message_timestamp=row.message_timestamp,
            media_url=row.media_url,
        )
        try:
            draft = to_support_message(
                event,
                sign_group_sender=self.config.sign_with_agent_name,
                separator=self.config.sign_separator or "\n",
            )
        except TranslationError as exc:
            logger.info(
                "chatwoot_sync_message_untranslatable session_id=%s jid=%s message_id=%s reason=%s",
                self.session_id,
                row.remote_jid,
                row.message_id,
                exc.code,
            )
            self._count(stats, job, "errors", half)
            return
        if draft is None:
            self._count(stats, job, "skipped", half)
            return
        try:
            push_draft(
                self.db,
                self.client,
                self.gateway,
                session_id=self.session_id,
                jid=normalize_jid(row.remote_jid).jid,
                conversation_id=conversation.support_conversation_id,
                whatsapp_message_id=row.message_id,
                draft=draft,
                from_me=row.from_me,
            )
        except ChatwootError as exc:
            if exc.retryable or exc.not_found:
                raise
            logger.warning(
                "chatwoot_sync_message_rejected session_id=%s jid=%s message_id=%s status=%s",
                self.session_id,
                row.remote_jid,
                row.message_id,
                exc.status_code,
            )
            self._count(stats, job, "errors", half)
            return
        self._count(stats, job, "imported", half)

    # ==================== Maintenance actions ====================

    def resolve_all_conversations(self, session_id: str) -> int:
        """Mark every non-resolved mapped conversation resolved in Chatwoot."""
        mappings = (
            self.db.query(ConversationMapping)
            .filter(ConversationMapping.session_id == session_id)
            .filter(ConversationMapping.status != ConversationStatus.resolved)
            .all()
        )
        resolved = 0
        for mapping in mappings:
            try:
                self.client.toggle_status(mapping.support_conversation_id, ConversationStatus.resolved.value)
            except ChatwootError as exc:
                if not exc.not_found:
                    self.db.commit()
                    raise DeliveryError(
                        "resolve_all_failed",
                        f"Resolved {resolved} conversations before Chatwoot error: {exc.message}",
                        retryable=exc.retryable,
                    ) from exc
                logger.info(
                    "chatwoot_conversation_missing session_id=%s conversation_id=%s",
                    session_id,
                    mapping.support_conversation_id,
                )
                mapping.status = ConversationStatus.resolved
                continue
            mapping.status = ConversationStatus.resolved
            resolved += 1
        self.db.commit()
        logger.info("chatwoot_conversations_resolved session_id=%s count=%s", session_id, resolved)
        return resolved

    def reset_integration(self, session_id: str) -> dict[str, int]:
        return reset_integration(self.db, session_id)
