"""Echo tags and message mappings used for loop prevention and reply threading."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.chatwoot import MessageEchoTag, MessageMapping
from app.services.chatwoot.translator import whatsapp_id_from_source_id

logger = logging.getLogger(__name__)


def reserve_tag(db: Session, session_id: str, whatsapp_message_id: str) -> MessageEchoTag:
    """Write a pending tag before the message is pushed to Chatwoot."""
    tag = MessageEchoTag(session_id=session_id, source_whatsapp_message_id=whatsapp_message_id)
    db.add(tag)
    db.commit()
    db.refresh(tag)
    return tag


def complete_tag(db: Session, tag: MessageEchoTag, support_message_id: int) -> MessageEchoTag:
    tag.support_message_id = support_message_id
    db.commit()
    return tag


def discard_tag(db: Session, tag: MessageEchoTag) -> None:
    db.rollback()
    db.query(MessageEchoTag).filter(MessageEchoTag.id == tag.id).delete(synchronize_session=False)
    db.commit()


def consume_echo(
    db: Session,
    session_id: str,
    support_message_id: int | None,
    source_id: str | None,
) -> bool:
    """Return True when the webhook reports a message this engine pushed.

    Matching tags are deleted. A message mapping for the same Chatwoot id also
    counts as an echo and is kept.
    """
    whatsapp_id = whatsapp_id_from_source_id(source_id)
    clauses = []
    if support_message_id is not None:
        clauses.append(MessageEchoTag.support_message_id == support_message_id)
    if whatsapp_id:
        clauses.append(MessageEchoTag.source_whatsapp_message_id == whatsapp_id)
    if clauses:
        tags = (
            db.query(MessageEchoTag)
            .filter(MessageEchoTag.session_id == session_id)
            .filter(or_(*clauses))
            .all()
        )
        if tags:
            for tag in tags:
                db.delete(tag)
            db.commit()
            logger.debug(
                "chatwoot_echo_consumed session_id=%s message_id=%s source_id=%s",
                session_id,
                support_message_id,
                source_id,
            )
            return True

    mapping_clauses = []
    if support_message_id is not None:
        mapping_clauses.append(MessageMapping.support_message_id == support_message_id)
    if whatsapp_id:
        mapping_clauses.append(MessageMapping.whatsapp_message_id == whatsapp_id)
    if not mapping_clauses:
        return False
    return (
        db.query(MessageMapping.id)
        .filter(MessageMapping.session_id == session_id)
        .filter(or_(*mapping_clauses))
        .first()
        is not None
    )


def purge_expired(db: Session, ttl_seconds: int, now: datetime | None = None) -> int:
    cutoff = (now or datetime.now(UTC)) - timedelta(seconds=ttl_seconds)
    deleted = db.query(MessageEchoTag).filter(MessageEchoTag.created_at < cutoff).delete(synchronize_session=False)
    db.commit()
    if deleted:
        logger.info("chatwoot_echo_tags_purged count=%s", deleted)
    return deleted


def find_by_whatsapp_id(db: Session, session_id: str, whatsapp_message_id: str | None) -> MessageMapping | None:
    if not whatsapp_message_id:
        return None
    return (
        db.query(MessageMapping)
        .filter(MessageMapping.session_id == session_id)
        .filter(MessageMapping.whatsapp_message_id == whatsapp_message_id)
        .first()
    )


def find_by_support_id(db: Session, session_id: str, support_message_id: int | None) -> MessageMapping | None:
    if support_message_id is None:
        return None
    return (
        db.query(MessageMapping)
        .filter(MessageMapping.session_id == session_id)
        .filter(MessageMapping.support_message_id == support_message_id)
        .first()
    )


def find_all_by_support_id(
    db: Session, session_id: str, support_message_id: int | None, from_me: bool | None = None
) -> list[MessageMapping]:
    """Every WhatsApp message behind one Chatwoot message; a reply with several attachments maps to many."""
    if support_message_id is None:
        return []
    query = (
        db.query(MessageMapping)
        .filter(MessageMapping.session_id == session_id)
        .filter(MessageMapping.support_message_id == support_message_id)
    )
    if from_me is not None:
        query = query.filter(MessageMapping.from_me.is_(from_me))
    return query.order_by(MessageMapping.created_at, MessageMapping.whatsapp_message_id).all()


def forget_mappings(db: Session, mappings: list[MessageMapping]) -> None:
    """Drop mappings of deleted messages so the other side's delete event finds nothing to repeat."""
    for mapping in mappings:
        db.delete(mapping)
    db.commit()


def record_mapping(
    db: Session,
    *,
    session_id: str,
    whatsapp_message_id: str,
    whatsapp_jid: str,
    support_message_id: int,
    support_conversation_id: int,
    from_me: bool,
) -> MessageMapping:
    existing = find_by_whatsapp_id(db, session_id, whatsapp_message_id)
    if existing:
        return existing
    mapping = MessageMapping(
        session_id=session_id,
        whatsapp_message_id=whatsapp_message_id,
        whatsapp_jid=whatsapp_jid,
        support_message_id=support_message_id,
        support_conversation_id=support_conversation_id,
        from_me=from_me,
    )
    db.add(mapping)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = find_by_whatsapp_id(db, session_id, whatsapp_message_id)
        if existing:
            return existing
        raise
    return mapping
