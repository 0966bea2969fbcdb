import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base
from app.models.chatwoot.enums import FailureDirection


class SyncFailure(Base):
    """Stores events that could not be synchronized.

    Populated when:
    - A WhatsApp event fails identity resolution, translation or dispatch.
    - A Chatwoot webhook cannot be delivered to WhatsApp.
    - A bulk sync job halts on an unrecoverable error.
    """

    __tablename__ = "chatwoot_sync_failures"
    __table_args__ = (Index("ix_chatwoot_sync_failures_session_created", "session_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False)
    direction: Mapped[FailureDirection] = mapped_column(Enum(FailureDirection), nullable=False)
    kind: Mapped[str | None] = mapped_column(String(60))
    reason: Mapped[str] = mapped_column(String(60), nullable=False)
    whatsapp_jid: Mapped[str | None] = mapped_column(String(255))
    whatsapp_message_id: Mapped[str | None] = mapped_column(String(255))
    support_conversation_id: Mapped[int | None] = mapped_column(Integer)
    support_message_id: Mapped[int | None] = mapped_column(Integer)
    raw_payload: Mapped[dict | None] = mapped_column(JSON)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
