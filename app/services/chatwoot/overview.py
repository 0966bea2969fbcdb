"""Side-by-side counts of the WhatsApp store and the Chatwoot account."""

from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.whatsapp import WhatsAppContact
from app.schemas.chatwoot import OverviewRead
from app.services.chatwoot.client import ChatwootClient, ChatwootError
from app.services.chatwoot.errors import DeliveryError

logger = logging.getLogger(__name__)


def whatsapp_contact_count(db: Session, session_id: str) -> int:
    return (
        db.query(func.count(WhatsAppContact.id))
        .filter(WhatsAppContact.session_id == session_id)
        .scalar()
        or 0
    )


def get_overview(db: Session, client: ChatwootClient, session_id: str, inbox_id: int | None = None) -> OverviewRead:
    """Counts are live; conversation counts are limited to the synced inbox."""
    local_contacts = whatsapp_contact_count(db, session_id)
    try:
        support_contacts = client.count_contacts()
        conversations = client.count_conversations("all", inbox_id=inbox_id)
        open_conversations = client.count_conversations("open", inbox_id=inbox_id)
    except ChatwootError as exc:
        logger.warning(
            "chatwoot_overview_failed session_id=%s status=%s error=%s",
            session_id,
            exc.status_code,
            exc.message,
        )
        raise DeliveryError("overview_unavailable", exc.message, retryable=exc.retryable) from exc
    return OverviewRead(
        whatsapp_contact_count=local_contacts,
        support_contact_count=support_contacts,
        support_conversation_count=conversations,
        support_open_conversation_count=open_conversations,
    )
