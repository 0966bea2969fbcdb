"""Persist Chatwoot sync failures for operator diagnostics."""

import logging
import traceback

from sqlalchemy.orm import Session

from app.models.chatwoot import FailureDirection, SyncFailure
from app.services.chatwoot.observability import SYNC_FAILURES

logger = logging.getLogger(__name__)


def record_failure(
    db: Session,
    *,
    direction: FailureDirection,
    session_id: str,
    reason: str,
    error: str | Exception | None = None,
    kind: str | None = None,
    jid: str | None = None,
    whatsapp_message_id: str | None = None,
    support_conversation_id: int | None = None,
    support_message_id: int | None = None,
    raw_payload: dict | None = None,
) -> SyncFailure | None:
    """Write a failure row and count it.

    Rolls back whatever the caller left pending first, so it can be called from
    an ``except`` block with a dirty session. A failure to write is logged, not
    raised, so the original error stays the one reported.
    """
    if isinstance(error, Exception):
        error_str = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    else:
        error_str = error

    SYNC_FAILURES.labels(direction=direction.value, reason=reason).inc()
    db.rollback()
    failure = SyncFailure(
        session_id=session_id,
        direction=direction,
        kind=kind,
        reason=reason,
        whatsapp_jid=jid,
        whatsapp_message_id=whatsapp_message_id,
        support_conversation_id=support_conversation_id,
        support_message_id=support_message_id,
        raw_payload=raw_payload,
        error=error_str[:4000] if error_str else None,
    )
    try:
        db.add(failure)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "chatwoot_sync_failure_write_failed session_id=%s direction=%s reason=%s",
            session_id,
            direction.value,
            reason,
        )
        return None
    logger.info(
        "chatwoot_sync_failure_recorded session_id=%s direction=%s reason=%s jid=%s conversation_id=%s",
        session_id,
        direction.value,
        reason,
        jid,
        support_conversation_id,
    )
    return failure


def list_failures(db: Session, session_id: str, limit: int = 50, offset: int = 0) -> list[SyncFailure]:
    return (
        db.query(SyncFailure)
        .filter(SyncFailure.session_id == session_id)
        .order_by(SyncFailure.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
