import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.chatwoot.enums import ConversationStatus


class ContactMapping(Base):
    __tablename__ = "chatwoot_contact_mappings"
    __table_args__ = (
        UniqueConstraint("session_id", "whatsapp_jid", name="uq_chatwoot_contact_mappings_jid"),
        UniqueConstraint("session_id", "support_contact_id", name="uq_chatwoot_contact_mappings_contact"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    whatsapp_jid: Mapped[str] = mapped_column(String(255), nullable=False)
    support_contact_id: Mapped[int] = mapped_column(Integer, nullable=False)
    support_identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    support_name: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class ConversationMapping(Base):
    __tablename__ = "chatwoot_conversation_mappings"
    __table_args__ = (
        UniqueConstraint("session_id", "whatsapp_jid", name="uq_chatwoot_conversation_mappings_jid"),
        Index("ix_chatwoot_conversation_mappings_conversation", "session_id", "support_conversation_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    whatsapp_jid: Mapped[str] = mapped_column(String(255), nullable=False)
    support_conversation_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ConversationStatus] = mapped_column(
        Enum(ConversationStatus), default=ConversationStatus.open, nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class MessageEchoTag(Base):
    """Marks a message the engine pushed into Chatwoot.

    The tag is reserved before the push (``support_message_id`` still empty) and
    completed with the Chatwoot message id once the API call returns. The matching
    ``message_created`` webhook consumes it; leftovers are purged after a TTL.
    """

    __tablename__ = "chatwoot_message_echo_tags"
    __table_args__ = (
        Index("ix_chatwoot_echo_tags_support_message", "session_id", "support_message_id"),
        Index("ix_chatwoot_echo_tags_source", "session_id", "source_whatsapp_message_id"),
        Index("ix_chatwoot_echo_tags_created", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    support_message_id: Mapped[int | None] = mapped_column(Integer)
    source_whatsapp_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))


class MessageMapping(Base):
    """WhatsApp message id <-> Chatwoot message id, kept for reply threading."""

    __tablename__ = "chatwoot_message_mappings"
    __table_args__ = (
        UniqueConstraint("session_id", "whatsapp_message_id", name="uq_chatwoot_message_mappings_wa"),
        Index("ix_chatwoot_message_mappings_support", "session_id", "support_message_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    whatsapp_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    whatsapp_jid: Mapped[str] = mapped_column(String(255), nullable=False)
    support_message_id: Mapped[int] = mapped_column(Integer, nullable=False)
    support_conversation_id: Mapped[int] = mapped_column(Integer, nullable=False)
    from_me: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))


class ChatLock(Base):
    """One row per chat; resolution holds it ``FOR UPDATE`` across worker processes."""

    __tablename__ = "chatwoot_chat_locks"
    __table_args__ = (UniqueConstraint("session_id", "whatsapp_jid", name="uq_chatwoot_chat_locks_jid"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    whatsapp_jid: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
