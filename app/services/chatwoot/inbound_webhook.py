"""Deliver Chatwoot agent replies to WhatsApp."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.chatwoot import (
    ChatwootConfig,
    ContactMapping,
    ConversationMapping,
    ConversationStatus,
    FailureDirection,
)
from app.schemas.chatwoot import ChatwootWebhookPayload, WebhookResult, coerce_conversation_status
from app.services.chatwoot import echo
from app.services.chatwoot.client import ChatwootClient, ChatwootError
from app.services.chatwoot.errors import TranslationError
from app.services.chatwoot.observability import PROCESSING_TIME, WEBHOOK_EVENTS
from app.services.chatwoot.phone import InvalidJidError, jid_from_phone, normalize_jid
from app.services.chatwoot.session import SessionGateway, SessionGatewayError
from app.services.chatwoot.translator import WhatsAppSendRequest, to_whatsapp_send
from app.services.sync_failures import record_failure

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "message_created"
MESSAGE_UPDATED = "message_updated"
STATUS_EVENTS = {"conversation_status_changed", "conversation_resolved", "conversation_opened"}

REASON_UNRESOLVED = "unresolved-destination"
REASON_DELIVERY = "delivery-failed"


class ChatwootWebhookHandler:
    def __init__(
        self,
        db: Session,
        client: ChatwootClient,
        config: ChatwootConfig,
        gateway: SessionGateway,
    ):
        self.db = db
        self.client = client
        self.config = config
        self.gateway = gateway

    @property
    def session_id(self) -> str:
        return self.config.session_id

    def handle(self, payload: ChatwootWebhookPayload | dict[str, Any]) -> WebhookResult:
        start = time.monotonic()
        event_name = payload.get("event", "unknown") if isinstance(payload, dict) else payload.event
        try:
            result = self._handle(payload)
        finally:
            PROCESSING_TIME.labels(direction="webhook").observe(time.monotonic() - start)
        WEBHOOK_EVENTS.labels(event=str(event_name), status=result.status).inc()
        return result

    def _failed(
        self,
        reason: str,
        payload: ChatwootWebhookPayload,
        error: str | Exception,
        jid: str | None = None,
        sent: list[str] | None = None,
    ) -> WebhookResult:
        logger.warning(
            "chatwoot_webhook_failed session_id=%s event=%s conversation_id=%s message_id=%s jid=%s reason=%s",
            self.session_id,
            payload.event,
            payload.conversation_id,
            payload.id,
            jid,
            reason,
        )
        record_failure(
            self.db,
            direction=FailureDirection.chatwoot_webhook,
            session_id=self.session_id,
            reason=reason,
            error=error,
            kind=payload.event,
            jid=jid,
            support_conversation_id=payload.conversation_id,
            support_message_id=payload.id,
            raw_payload=payload.model_dump(mode="json"),
        )
        return WebhookResult(status="failed", reason=reason, jid=jid, whatsapp_message_ids=sent or [])

    def _handle(self, raw: ChatwootWebhookPayload | dict[str, Any]) -> WebhookResult:
        if isinstance(raw, dict):
            try:
                payload = ChatwootWebhookPayload.model_validate(raw)
            except ValidationError as exc:
                record_failure(
                    self.db,
                    direction=FailureDirection.chatwoot_webhook,
                    session_id=self.session_id,
                    reason="invalid_payload",
                    error=str(exc),
                    raw_payload=raw,
                )
                return WebhookResult(status="failed", reason="invalid_payload")
        else:
            payload = raw

        if not self.config.enabled:
            return WebhookResult(status="ignored", reason="integration_disabled")
        if payload.event in STATUS_EVENTS:
            return self._status_changed(payload)
        if payload.event == MESSAGE_UPDATED:
            if payload.content_attributes and payload.content_attributes.deleted:
                return self._deleted(payload)
            return WebhookResult(status="ignored", reason="message_updated")
        if payload.event != MESSAGE_CREATED:
            return WebhookResult(status="ignored", reason=f"unhandled_event:{payload.event}")
        if payload.private:
            return WebhookResult(status="ignored", reason="private_note")
        if payload.normalized_message_type != "outgoing":
            return WebhookResult(status="ignored", reason="not_outgoing")

        if echo.consume_echo(self.db, self.session_id, payload.id, payload.source_id):
            logger.debug(
                "chatwoot_webhook_echo session_id=%s message_id=%s source_id=%s",
                self.session_id,
                payload.id,
                payload.source_id,
            )
            return WebhookResult(status="echo", reason="engine_created")

        jid = self._destination_jid(payload)
        if not jid:
            return self._failed(REASON_UNRESOLVED, payload, "No identifier or phone number on conversation sender")
        self._ensure_reverse_mapping(payload, jid)

        quoted_id = self._quoted_whatsapp_id(payload)
        try:
            requests = to_whatsapp_send(
                payload,
                sign_with_agent_name=self.config.sign_with_agent_name,
                separator=self.config.sign_separator or "\n",
                quoted_message_id=quoted_id,
            )
        except TranslationError as exc:
            return self._failed(exc.code, payload, exc, jid=jid)
        return self._deliver(payload, jid, requests)

    def _destination_jid(self, payload: ChatwootWebhookPayload) -> str | None:
        sender = payload.meta_sender
        candidates = []
        if sender and sender.identifier:
            candidates.append(sender.identifier)
        if sender and sender.phone_number:
            candidates.append(jid_from_phone(sender.phone_number))
        for candidate in candidates:
            if not candidate:
                continue
            try:
                return normalize_jid(candidate).jid
            except InvalidJidError:
                continue
        if payload.conversation_id is not None:
            mapping = (
                self.db.query(ConversationMapping)
                .filter(ConversationMapping.session_id == self.session_id)
                .filter(ConversationMapping.support_conversation_id == payload.conversation_id)
                .first()
            )
            if mapping:
                return mapping.whatsapp_jid
        return None

    def _ensure_reverse_mapping(self, payload: ChatwootWebhookPayload, jid: str) -> None:
        """A conversation can exist in Chatwoot before this engine has seen the chat."""
        conversation_id = payload.conversation_id
        if conversation_id is None:
            return
        mapping = (
            self.db.query(ConversationMapping)
            .filter(ConversationMapping.session_id == self.session_id)
            .filter(ConversationMapping.whatsapp_jid == jid)
            .first()
        )
        sender = payload.meta_sender
        if sender and sender.id is not None:
            known = (
                self.db.query(ContactMapping)
                .filter(ContactMapping.session_id == self.session_id)
                .filter((ContactMapping.whatsapp_jid == jid) | (ContactMapping.support_contact_id == sender.id))
                .first()
            )
            if not known:
                self.db.add(
                    ContactMapping(
                        session_id=self.session_id,
                        whatsapp_jid=jid,
                        support_contact_id=sender.id,
                        support_identifier=sender.identifier or jid,
                        support_name=sender.name,
                    )
                )
        if not mapping:
            self.db.add(
                ConversationMapping(
                    session_id=self.session_id,
                    whatsapp_jid=jid,
                    support_conversation_id=conversation_id,
                    status=coerce_conversation_status(payload.conversation_status) or ConversationStatus.open,
                )
            )
        try:
            self.db.commit()
        except IntegrityError:
            # Another worker mapped this chat first
            self.db.rollback()
        else:
            if not mapping:
                logger.info(
                    "chatwoot_reverse_mapping_created session_id=%s jid=%s conversation_id=%s",
                    self.session_id,
                    jid,
                    conversation_id,
                )

    def _quoted_whatsapp_id(self, payload: ChatwootWebhookPayload) -> str | None:
        attributes = payload.content_attributes
        if not attributes:
            return None
        if attributes.in_reply_to is not None:
            mapping = echo.find_by_support_id(self.db, self.session_id, attributes.in_reply_to)
            if mapping:
                return mapping.whatsapp_message_id
        return attributes.in_reply_to_external_id or None

    def _deliver(self, payload: ChatwootWebhookPayload, jid: str, requests: list[WhatsAppSendRequest]) -> WebhookResult:
        sent: list[str] = []
        for request in requests:
            if request.media and request.media.data is None:
                try:
                    data, content_type = self.client.download(request.media.url)
                except ChatwootError as exc:
                    return self._failed(REASON_DELIVERY, payload, exc, jid=jid, sent=sent)
                media = replace(request.media, data=data)
                if content_type and media.mime_type == "application/octet-stream":
                    media = replace(media, mime_type=content_type.split(";", 1)[0].strip())
                request = replace(request, media=media)
            try:
                # At most once toward WhatsApp: failures are reported, never retried here
                message_id = self.gateway.send_message(self.session_id, jid, request)
            except SessionGatewayError as exc:
                return self._failed(REASON_DELIVERY, payload, exc, jid=jid, sent=sent)
            if message_id:
                sent.append(message_id)
                if payload.id is not None and payload.conversation_id is not None:
                    echo.record_mapping(
                        self.db,
                        session_id=self.session_id,
                        whatsapp_message_id=message_id,
                        whatsapp_jid=jid,
                        support_message_id=payload.id,
                        support_conversation_id=payload.conversation_id,
                        from_me=True,
                    )
        logger.info(
            "chatwoot_webhook_delivered session_id=%s jid=%s conversation_id=%s message_id=%s sends=%s",
            self.session_id,
            jid,
            payload.conversation_id,
            payload.id,
            len(requests),
        )
        return WebhookResult(status="sent", jid=jid, whatsapp_message_ids=sent)

    def _deleted(self, payload: ChatwootWebhookPayload) -> WebhookResult:
        """Revoke on WhatsApp every message an agent reply was delivered as.

        Customer messages are never revoked; WhatsApp only lets the sender do that.
        """
        mappings = echo.find_all_by_support_id(self.db, self.session_id, payload.id, from_me=True)
        if not mappings:
            return WebhookResult(status="ignored", reason="unmapped_message")
        jid = mappings[0].whatsapp_jid
        revoked = []
        try:
            for mapping in mappings:
                for request in to_whatsapp_send(payload, target_message_id=mapping.whatsapp_message_id):
                    self.gateway.send_message(self.session_id, mapping.whatsapp_jid, request)
                revoked.append(mapping)
        except SessionGatewayError as exc:
            echo.forget_mappings(self.db, revoked)
            return self._failed(REASON_DELIVERY, payload, exc, jid=jid)
        ids = [mapping.whatsapp_message_id for mapping in revoked]
        echo.forget_mappings(self.db, revoked)
        logger.info(
            "chatwoot_webhook_message_deleted session_id=%s jid=%s whatsapp_message_ids=%s",
            self.session_id,
            jid,
            ",".join(ids),
        )
        return WebhookResult(status="deleted", jid=jid, whatsapp_message_ids=ids)

    def _status_changed(self, payload: ChatwootWebhookPayload) -> WebhookResult:
        conversation_id = payload.conversation_id
        status = coerce_conversation_status(payload.conversation_status)
        if conversation_id is None or status is None:
            return WebhookResult(status="ignored", reason="missing_status")
        mappings = (
            self.db.query(ConversationMapping)
            .filter(ConversationMapping.session_id == self.session_id)
            .filter(ConversationMapping.support_conversation_id == conversation_id)
            .all()
        )
        if not mappings:
            return WebhookResult(status="ignored", reason="unmapped_conversation")
        for mapping in mappings:
            mapping.status = status
        self.db.commit()
        logger.info(
            "chatwoot_conversation_status_updated session_id=%s conversation_id=%s status=%s",
            self.session_id,
            conversation_id,
            status.value,
        )
        return WebhookResult(status="status_updated", jid=mappings[0].whatsapp_jid)
