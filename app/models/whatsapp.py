"""Host chat store tables read by the Chatwoot sync engine.

Only the columns needed for identity mapping and message translation are
modelled here; the session layer owns writes to these tables.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class WhatsAppContact(Base):
    __tablename__ = "whatsapp_contacts"
    __table_args__ = (
        UniqueConstraint("session_id", "jid", name="uq_whatsapp_contacts_session_jid"),
        Index("ix_whatsapp_contacts_session_updated", "session_id", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    jid: Mapped[str] = mapped_column(String(255), nullable=False)
    push_name: Mapped[str | None] = mapped_column(String(255))
    full_name: Mapped[str | None] = mapped_column(String(255))
    business_name: Mapped[str | None] = mapped_column(String(255))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def display_name(self) -> str | None:
        return self.full_name or self.business_name or self.push_name


class WhatsAppMessage(Base):
    __tablename__ = "whatsapp_messages"
    __table_args__ = (
        UniqueConstraint("session_id", "message_id", name="uq_whatsapp_messages_session_message"),
        Index("ix_whatsapp_messages_session_chat_ts", "session_id", "remote_jid", "message_timestamp"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    remote_jid: Mapped[str] = mapped_column(String(255), nullable=False)
    from_me: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    participant: Mapped[str | None] = mapped_column(String(255))
    push_name: Mapped[str | None] = mapped_column(String(255))
    message_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    content: Mapped[dict | None] = mapped_column(JSON)
    media_url: Mapped[str | None] = mapped_column(Text)
