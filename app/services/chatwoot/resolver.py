"""Find-or-create Chatwoot contacts and conversations for WhatsApp chats."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.chatwoot import ChatwootConfig, ContactMapping, ConversationMapping, ConversationStatus
from app.services.chatwoot import config as config_service
from app.services.chatwoot.client import ChatwootClient, ChatwootError
from app.services.chatwoot.errors import ConfigValidationError, ResolutionError
from app.services.chatwoot.locks import KeyedLock, LockTimeoutError, hold_chat_row
from app.services.chatwoot.phone import ChatIdentity, InvalidJidError, looks_like_phone, normalize_jid, phone_variants

logger = logging.getLogger(__name__)

MAX_CREATE_ATTEMPTS = 2


def _status_of(conversation: dict[str, Any]) -> ConversationStatus:
    try:
        return ConversationStatus(conversation.get("status") or "open")
    except ValueError:
        return ConversationStatus.open


class IdentityResolver:
    """Maps a WhatsApp chat to its Chatwoot contact and conversation.

    Mappings are consulted before any create call. Work for one
    (session, jid) runs under the in-process keyed lock and the chat's row lock,
    so concurrent workers never search-then-create the same chat twice.
    """

    def __init__(
        self,
        db: Session,
        client: ChatwootClient,
        config: ChatwootConfig,
        locks: KeyedLock,
        lock_timeout: float | None = None,
    ):
        self.db = db
        self.client = client
        self.config = config
        self.locks = locks
        self.lock_timeout = (
            lock_timeout if lock_timeout is not None else settings.chatwoot_resolver_lock_timeout_seconds
        )

    @property
    def session_id(self) -> str:
        return self.config.session_id

    # ==================== Public API ====================

    def resolve(
        self, session_id: str, jid: str, display_name: str | None = None
    ) -> tuple[ContactMapping, ConversationMapping]:
        identity = self._identity(session_id, jid)
        with self._guard(identity):
            contact = self._resolve_contact(identity, display_name)
            conversation = self._resolve_conversation(identity, contact, display_name)
            return contact, conversation

    def resolve_contact(self, session_id: str, jid: str, display_name: str | None = None) -> ContactMapping:
        identity = self._identity(session_id, jid)
        with self._guard(identity):
            return self._resolve_contact(identity, display_name)

    def forget_conversation(self, session_id: str, jid: str) -> None:
        """Drop a conversation mapping Chatwoot no longer knows about."""
        identity = self._identity(session_id, jid)
        with self._guard(identity):
            mapping = self._conversation_mapping(identity.jid)
            if mapping:
                self.db.delete(mapping)
                self.db.commit()
                logger.info(
                    "chatwoot_conversation_mapping_dropped session_id=%s jid=%s conversation_id=%s",
                    self.session_id,
                    identity.jid,
                    mapping.support_conversation_id,
                )

    def refresh_contact_name(self, contact: ContactMapping, push_name: str | None) -> bool:
        """Replace a number-only Chatwoot name with the WhatsApp push name.

        Names an agent already edited are left alone. Failures are logged and
        never block the message that triggered the refresh.
        """
        name = (push_name or "").strip()
        if not name or name == contact.support_name or not looks_like_phone(contact.support_name):
            return False
        try:
            self.client.update_contact(contact.support_contact_id, name=name)
        except ChatwootError as exc:
            logger.warning(
                "chatwoot_contact_rename_failed session_id=%s jid=%s contact_id=%s status=%s",
                self.session_id,
                contact.whatsapp_jid,
                contact.support_contact_id,
                exc.status_code,
            )
            return False
        contact.support_name = name
        self.db.commit()
        logger.info(
            "chatwoot_contact_renamed session_id=%s jid=%s contact_id=%s",
            self.session_id,
            contact.whatsapp_jid,
            contact.support_contact_id,
        )
        return True

    # ==================== Internals ====================

    def _identity(self, session_id: str, jid: str) -> ChatIdentity:
        if session_id != self.session_id:
            raise ConfigValidationError("session_mismatch", f"Resolver bound to session {self.session_id}")
        try:
            return normalize_jid(jid)
        except InvalidJidError as exc:
            raise ResolutionError("malformed_identifier", str(exc), retryable=False) from exc

    @contextmanager
    def _guard(self, identity: ChatIdentity) -> Iterator[None]:
        key = (self.session_id, identity.jid)
        try:
            with self.locks.hold(key, timeout=self.lock_timeout):
                with hold_chat_row(self.db, self.session_id, identity.jid, self.lock_timeout):
                    yield
        except LockTimeoutError as exc:
            logger.warning("chatwoot_resolver_lock_timeout session_id=%s jid=%s", self.session_id, identity.jid)
            raise ResolutionError("resolver_busy", str(exc), retryable=True) from exc
        except ChatwootError as exc:
            self.db.rollback()
            logger.warning(
                "chatwoot_resolution_failed session_id=%s jid=%s status=%s error=%s",
                self.session_id,
                identity.jid,
                exc.status_code,
                exc.message,
            )
            raise ResolutionError(
                "support_unreachable" if exc.retryable else "support_rejected",
                exc.message,
                retryable=exc.retryable,
            ) from exc

    def _contact_mapping(self, jid: str) -> ContactMapping | None:
        return (
            self.db.query(ContactMapping)
            .filter(ContactMapping.session_id == self.session_id)
            .filter(ContactMapping.whatsapp_jid == jid)
            .first()
        )

    def _conversation_mapping(self, jid: str) -> ConversationMapping | None:
        return (
            self.db.query(ConversationMapping)
            .filter(ConversationMapping.session_id == self.session_id)
            .filter(ConversationMapping.whatsapp_jid == jid)
            .first()
        )

    def _search_contact(self, identity: ChatIdentity) -> dict[str, Any] | None:
        if identity.is_group:
            results = self.client.search_contacts(identity.identifier)
            return next((c for c in results if c.get("identifier") == identity.identifier), None)

        variants = phone_variants(identity.phone or "", self.config.merge_local_phone_formats)
        results = self.client.filter_contacts_by_phone(variants)
        if not results:
            return None
        if len(results) == 1:
            return results[0]
        for contact in results:
            if contact.get("identifier") == identity.identifier:
                return contact
        if self.config.merge_local_phone_formats and len(results) == 2 and variants[0].startswith("+55"):
            # Prefer the ninth-digit spelling of a Brazilian mobile
            preferred = next((c for c in results if len(c.get("phone_number") or "") == 14), None)
            if preferred:
                return preferred
        for variant in variants:
            for contact in results:
                if contact.get("phone_number") == variant:
                    return contact
        return results[0]

    def _find_or_create_contact(self, identity: ChatIdentity, display_name: str | None) -> dict[str, Any]:
        name = display_name or identity.phone or identity.jid
        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            found = self._search_contact(identity)
            if found:
                return found
            try:
                inbox_id = config_service.ensure_inbox(self.db, self.config, self.client)
                contact = self.client.create_contact(
                    inbox_id=inbox_id,
                    name=name,
                    identifier=identity.identifier,
                    phone_number=identity.phone_e164,
                )
            except ChatwootError as exc:
                # A failed create may still have landed; search again before retrying
                if attempt >= MAX_CREATE_ATTEMPTS or not (exc.retryable or exc.status_code == 422):
                    raise
                logger.warning(
                    "chatwoot_contact_create_retry session_id=%s jid=%s status=%s",
                    self.session_id,
                    identity.jid,
                    exc.status_code,
                )
                continue
            logger.info(
                "chatwoot_contact_created session_id=%s jid=%s contact_id=%s",
                self.session_id,
                identity.jid,
                contact.get("id"),
            )
            return contact
        raise ResolutionError("contact_unavailable", f"Could not resolve contact for {identity.jid}")

    def _resolve_contact(self, identity: ChatIdentity, display_name: str | None) -> ContactMapping:
        mapping = self._contact_mapping(identity.jid)
        if mapping:
            return mapping

        contact = self._find_or_create_contact(identity, display_name)
        contact_id = int(contact["id"])
        aliased = (
            self.db.query(ContactMapping)
            .filter(ContactMapping.session_id == self.session_id)
            .filter(ContactMapping.support_contact_id == contact_id)
            .first()
        )
        if aliased:
            # Another spelling of the same number already owns this contact
            logger.info(
                "chatwoot_contact_alias session_id=%s jid=%s mapped_jid=%s contact_id=%s",
                self.session_id,
                identity.jid,
                aliased.whatsapp_jid,
                contact_id,
            )
            return aliased

        mapping = ContactMapping(
            session_id=self.session_id,
            whatsapp_jid=identity.jid,
            support_contact_id=contact_id,
            support_identifier=contact.get("identifier") or identity.identifier,
            support_name=contact.get("name"),
        )
        self.db.add(mapping)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._contact_mapping(identity.jid)
            if existing:
                return existing
            raise
        self.db.refresh(mapping)
        return mapping

    def _recreate_contact(self, identity: ChatIdentity, contact: ContactMapping, display_name: str | None) -> None:
        fresh = self._find_or_create_contact(identity, display_name)
        logger.info(
            "chatwoot_contact_recreated session_id=%s jid=%s old_contact_id=%s contact_id=%s",
            self.session_id,
            identity.jid,
            contact.support_contact_id,
            fresh.get("id"),
        )
        contact.support_contact_id = int(fresh["id"])
        contact.support_identifier = fresh.get("identifier") or identity.identifier
        contact.support_name = fresh.get("name")
        self.db.commit()

    def _find_or_create_conversation(
        self,
        identity: ChatIdentity,
        contact: ContactMapping,
        display_name: str | None,
        skip_conversation_id: int | None,
    ) -> dict[str, Any]:
        inbox_id = config_service.ensure_inbox(self.db, self.config, self.client)
        status = ConversationStatus.pending.value if self.config.start_conversations_pending else None

        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            try:
                existing = self.client.get_contact_conversations(contact.support_contact_id)
            except ChatwootError as exc:
                if not exc.not_found or attempt >= MAX_CREATE_ATTEMPTS:
                    raise
                self._recreate_contact(identity, contact, display_name)
                continue
            for conversation in existing:
                if conversation.get("inbox_id") != inbox_id or conversation.get("id") == skip_conversation_id:
                    continue
                if _status_of(conversation) != ConversationStatus.resolved:
                    return conversation
            try:
                created = self.client.create_conversation(contact.support_contact_id, inbox_id, status=status)
            except ChatwootError as exc:
                if attempt >= MAX_CREATE_ATTEMPTS:
                    raise
                if exc.not_found:
                    self._recreate_contact(identity, contact, display_name)
                elif not (exc.retryable or exc.status_code == 422):
                    raise
                continue
            logger.info(
                "chatwoot_conversation_created session_id=%s jid=%s conversation_id=%s status=%s",
                self.session_id,
                identity.jid,
                created.get("id"),
                created.get("status"),
            )
            return created
        raise ResolutionError("conversation_unavailable", f"Could not resolve conversation for {identity.jid}")

    def _resolve_conversation(
        self, identity: ChatIdentity, contact: ContactMapping, display_name: str | None
    ) -> ConversationMapping:
        mapping = self._conversation_mapping(identity.jid)
        if mapping and mapping.status != ConversationStatus.resolved:
            return mapping

        if mapping and self.config.auto_reopen:
            try:
                self.client.toggle_status(mapping.support_conversation_id, ConversationStatus.open.value)
            except ChatwootError as exc:
                if not exc.not_found:
                    raise
                logger.info(
                    "chatwoot_conversation_missing session_id=%s jid=%s conversation_id=%s",
                    self.session_id,
                    identity.jid,
                    mapping.support_conversation_id,
                )
            else:
                mapping.status = ConversationStatus.open
                self.db.commit()
                logger.info(
                    "chatwoot_conversation_reopened session_id=%s jid=%s conversation_id=%s",
                    self.session_id,
                    identity.jid,
                    mapping.support_conversation_id,
                )
                return mapping

        conversation = self._find_or_create_conversation(
            identity,
            contact,
            display_name,
            skip_conversation_id=mapping.support_conversation_id if mapping else None,
        )
        conversation_id = int(conversation["id"])
        status = _status_of(conversation)
        if mapping:
            mapping.support_conversation_id = conversation_id
            mapping.status = status
            self.db.commit()
            return mapping

        mapping = ConversationMapping(
            session_id=self.session_id,
            whatsapp_jid=identity.jid,
            support_conversation_id=conversation_id,
            status=status,
        )
        self.db.add(mapping)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self._conversation_mapping(identity.jid)
            if existing:
                return existing
            raise
        self.db.refresh(mapping)
        return mapping
