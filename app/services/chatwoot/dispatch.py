"""Push translated WhatsApp messages into Chatwoot."""

from __future__ import annotations

import logging
from dataclasses import replace

from sqlalchemy.orm import Session

from app.services.chatwoot import echo
from app.services.chatwoot.client import ChatwootClient, ChatwootError
from app.services.chatwoot.session import SessionGateway, SessionGatewayError
from app.services.chatwoot.translator import SupportMessageDraft

logger = logging.getLogger(__name__)

_PLACEHOLDERS = {"image": "[Image]", "video": "[Video]", "audio": "[Audio]", "file": "[Document]"}


def _download_attachments(
    gateway: SessionGateway, session_id: str, draft: SupportMessageDraft
) -> tuple[SupportMessageDraft, list[tuple[str, bytes, str]]]:
    files: list[tuple[str, bytes, str]] = []
    for attachment in draft.attachments:
        try:
            blob = gateway.fetch_media(attachment.url)
        except SessionGatewayError as exc:
            logger.warning(
                "chatwoot_media_download_failed session_id=%s source_id=%s error=%s",
                session_id,
                draft.source_id,
                exc,
            )
            placeholder = _PLACEHOLDERS.get(attachment.file_type, "[Attachment]")
            content = f"{placeholder}\n{draft.content}" if draft.content else placeholder
            return replace(draft, content=content, attachments=()), []
        files.append((attachment.file_name, blob, attachment.mime_type))
    return draft, files


def push_draft(
    db: Session,
    client: ChatwootClient,
    gateway: SessionGateway,
    *,
    session_id: str,
    jid: str,
    conversation_id: int,
    whatsapp_message_id: str,
    draft: SupportMessageDraft,
    from_me: bool,
) -> int:
    """Create the Chatwoot message for ``draft`` and return its id.

    The echo tag is reserved before the API call and completed with the new
    message id before this returns. Replies to messages with no mapping are
    sent without ``in_reply_to``.
    """
    content_attributes: dict[str, object] = {}
    if draft.in_reply_to_external_id:
        content_attributes["in_reply_to_external_id"] = draft.in_reply_to_external_id
        quoted = echo.find_by_whatsapp_id(db, session_id, draft.in_reply_to_external_id)
        if quoted:
            content_attributes["in_reply_to"] = quoted.support_message_id

    draft, files = _download_attachments(gateway, session_id, draft)

    tag = echo.reserve_tag(db, session_id, whatsapp_message_id)
    try:
        message = client.create_message(
            conversation_id,
            draft.content,
            message_type=draft.message_type,
            source_id=draft.source_id,
            content_attributes=content_attributes or None,
            attachments=files or None,
        )
    except Exception:
        echo.discard_tag(db, tag)
        raise

    if not message.get("id"):
        echo.discard_tag(db, tag)
        raise ChatwootError("Chatwoot returned no message id")
    support_message_id = int(message["id"])
    echo.complete_tag(db, tag, support_message_id)
    echo.record_mapping(
        db,
        session_id=session_id,
        whatsapp_message_id=whatsapp_message_id,
        whatsapp_jid=jid,
        support_message_id=support_message_id,
        support_conversation_id=conversation_id,
        from_me=from_me,
    )
    logger.info(
        "chatwoot_message_pushed session_id=%s jid=%s conversation_id=%s message_id=%s kind=%s",
        session_id,
        jid,
        conversation_id,
        support_message_id,
        draft.kind,
    )
    return support_message_id
