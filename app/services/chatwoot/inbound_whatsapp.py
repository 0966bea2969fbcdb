"""Forward live WhatsApp message events into Chatwoot."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.models.chatwoot import ChatwootConfig, FailureDirection
from app.schemas.chatwoot import WAMessageEvent, WhatsAppEventResult
from app.services.chatwoot import echo
from app.services.chatwoot.client import ChatwootClient, ChatwootError
from app.services.chatwoot.dispatch import push_draft
from app.services.chatwoot.errors import ResolutionError, TranslationError
from app.services.chatwoot.observability import PROCESSING_TIME, WHATSAPP_EVENTS
from app.services.chatwoot.phone import InvalidJidError, is_group_jid, normalize_jid
from app.services.chatwoot.resolver import IdentityResolver
from app.services.chatwoot.session import SessionGateway
from app.services.chatwoot.translator import revoked_message_id, to_support_message
from app.services.sync_failures import record_failure

logger = logging.getLogger(__name__)

STATE_RECEIVED = "received"
STATE_RESOLVING = "resolving_identity"
STATE_TRANSLATING = "translating"
STATE_DISPATCHED = "dispatched"
STATE_ECHO_TAGGED = "echo_tagged"
STATE_RESOLUTION_FAILED = "resolution_failed"
STATE_DISPATCH_FAILED = "dispatch_failed"
STATE_DELETED = "deleted"
STATE_SKIPPED = "skipped"
STATE_DROPPED = "dropped"


def is_ignored(config: ChatwootConfig, jid: str) -> bool:
    ignored = config.ignored_chats
    if jid in ignored:
        return True
    try:
        return normalize_jid(jid).jid in ignored
    except InvalidJidError:
        return False


class WhatsAppEventHandler:
    """received -> resolving_identity -> translating -> dispatched -> echo_tagged."""

    def __init__(
        self,
        db: Session,
        client: ChatwootClient,
        config: ChatwootConfig,
        resolver: IdentityResolver,
        gateway: SessionGateway,
    ):
        self.db = db
        self.client = client
        self.config = config
        self.resolver = resolver
        self.gateway = gateway

    @property
    def session_id(self) -> str:
        return self.config.session_id

    def _finish(self, state: str, reason: str | None = None, jid: str | None = None, ids=None) -> WhatsAppEventResult:
        WHATSAPP_EVENTS.labels(state=state).inc()
        return WhatsAppEventResult(state=state, reason=reason, jid=jid, support_message_ids=ids or [])

    def _fail(
        self,
        state: str,
        reason: str,
        event: WAMessageEvent,
        error: Exception,
        conversation_id: int | None = None,
    ) -> WhatsAppEventResult:
        logger.warning(
            "chatwoot_whatsapp_event_failed session_id=%s jid=%s message_id=%s state=%s reason=%s error=%s",
            self.session_id,
            event.key.remote_jid,
            event.key.id,
            state,
            reason,
            error,
        )
        record_failure(
            self.db,
            direction=FailureDirection.whatsapp_inbound,
            session_id=self.session_id,
            reason=reason,
            error=error,
            kind="message",
            jid=event.key.remote_jid,
            whatsapp_message_id=event.key.id,
            support_conversation_id=conversation_id,
            raw_payload=event.model_dump(mode="json", by_alias=True),
        )
        return self._finish(state, reason=reason, jid=event.key.remote_jid)

    def handle_event(self, event: WAMessageEvent | dict[str, Any]) -> WhatsAppEventResult:
        start = time.monotonic()
        try:
            return self._handle(event)
        finally:
            PROCESSING_TIME.labels(direction="whatsapp").observe(time.monotonic() - start)

    def handle_events(self, events: Iterable[WAMessageEvent | dict[str, Any]]) -> list[WhatsAppEventResult]:
        results = []
        for event in events:
            try:
                results.append(self.handle_event(event))
            except Exception as exc:
                # One bad event never stops the batch
                logger.exception("chatwoot_whatsapp_event_crashed session_id=%s", self.session_id)
                raw = event if isinstance(event, dict) else event.model_dump(mode="json", by_alias=True)
                record_failure(
                    self.db,
                    direction=FailureDirection.whatsapp_inbound,
                    session_id=self.session_id,
                    reason="unexpected_error",
                    error=exc,
                    kind="message",
                    raw_payload=raw,
                )
                results.append(self._finish(STATE_DISPATCH_FAILED, reason="unexpected_error"))
        return results

    def _handle(self, raw: WAMessageEvent | dict[str, Any]) -> WhatsAppEventResult:
        state = STATE_RECEIVED
        if isinstance(raw, dict):
            try:
                event = WAMessageEvent.model_validate(raw)
            except ValidationError as exc:
                record_failure(
                    self.db,
                    direction=FailureDirection.whatsapp_inbound,
                    session_id=self.session_id,
                    reason="invalid_event",
                    error=str(exc),
                    kind="message",
                    raw_payload=raw,
                )
                return self._finish(STATE_DROPPED, reason="invalid_event")
        else:
            event = raw

        jid = event.key.remote_jid
        if not self.config.enabled:
            return self._finish(STATE_SKIPPED, reason="integration_disabled", jid=jid)
        if is_ignored(self.config, jid):
            logger.debug("chatwoot_whatsapp_event_ignored session_id=%s jid=%s", self.session_id, jid)
            return self._finish(STATE_SKIPPED, reason="ignored_chat", jid=jid)
        if jid == "status@broadcast" or jid.endswith(("@broadcast", "@newsletter")):
            return self._finish(STATE_SKIPPED, reason="unsupported_chat", jid=jid)
        revoked_id = revoked_message_id(event)
        if revoked_id:
            return self._revoke(event, revoked_id)
        if echo.find_by_whatsapp_id(self.db, self.session_id, event.key.id):
            # Agent replies delivered to WhatsApp come back as fromMe events
            return self._finish(STATE_SKIPPED, reason="already_synced", jid=jid)

        state = STATE_RESOLVING
        display_name = None if (is_group_jid(jid) or event.key.from_me) else event.push_name
        try:
            contact, conversation = self.resolver.resolve(self.session_id, jid, display_name)
        except ResolutionError as exc:
            return self._fail(STATE_RESOLUTION_FAILED, exc.code, event, exc)
        if display_name:
            self.resolver.refresh_contact_name(contact, display_name)
        logger.debug("chatwoot_whatsapp_event_state session_id=%s jid=%s state=%s", self.session_id, jid, state)

        state = STATE_TRANSLATING
        try:
            draft = to_support_message(
                event,
                sign_group_sender=self.config.sign_with_agent_name,
                separator=self.config.sign_separator or "\n",
            )
        except TranslationError as exc:
            return self._fail(STATE_DROPPED, exc.code, event, exc, conversation.support_conversation_id)
        if draft is None:
            return self._finish(STATE_SKIPPED, reason="nothing_to_forward", jid=jid)

        state = STATE_DISPATCHED
        conversation_id = conversation.support_conversation_id
        try:
            try:
                message_id = self._push(event, conversation_id, draft)
            except ChatwootError as exc:
                if not exc.not_found:
                    raise
                # The mapped conversation is gone on the Chatwoot side
                self.resolver.forget_conversation(self.session_id, jid)
                _, conversation = self.resolver.resolve(self.session_id, jid, display_name)
                conversation_id = conversation.support_conversation_id
                message_id = self._push(event, conversation_id, draft)
        except ResolutionError as exc:
            return self._fail(STATE_RESOLUTION_FAILED, exc.code, event, exc, conversation_id)
        except ChatwootError as exc:
            return self._fail(STATE_DISPATCH_FAILED, "delivery_failed", event, exc, conversation_id)

        logger.debug("chatwoot_whatsapp_event_state session_id=%s jid=%s state=%s", self.session_id, jid, state)
        return self._finish(STATE_ECHO_TAGGED, jid=jid, ids=[message_id])

    def _revoke(self, event: WAMessageEvent, revoked_id: str) -> WhatsAppEventResult:
        """Delete the Chatwoot copy of a message the sender revoked on WhatsApp."""
        jid = event.key.remote_jid
        mapping = echo.find_by_whatsapp_id(self.db, self.session_id, revoked_id)
        if mapping is None:
            return self._finish(STATE_SKIPPED, reason="unmapped_message", jid=jid)
        support_id = mapping.support_message_id
        try:
            self.client.delete_message(mapping.support_conversation_id, support_id)
        except ChatwootError as exc:
            if not exc.not_found:
                return self._fail(STATE_DISPATCH_FAILED, "delete_failed", event, exc, mapping.support_conversation_id)
        echo.forget_mappings(self.db, [mapping])
        logger.info(
            "chatwoot_whatsapp_message_revoked session_id=%s jid=%s message_id=%s support_message_id=%s",
            self.session_id,
            jid,
            revoked_id,
            support_id,
        )
        return self._finish(STATE_DELETED, jid=jid, ids=[support_id])

    def _push(self, event: WAMessageEvent, conversation_id: int, draft) -> int:
        return push_draft(
            self.db,
            self.client,
            self.gateway,
            session_id=self.session_id,
            jid=normalize_jid(event.key.remote_jid).jid,
            conversation_id=conversation_id,
            whatsapp_message_id=event.key.id,
            draft=draft,
            from_me=event.key.from_me,
        )
