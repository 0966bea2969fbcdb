import uuid
from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class ChatwootConfig(Base):
    """Per-session Chatwoot integration settings.

    Exactly one row per WhatsApp session. Mapping, echo-tag and sync-job rows of the
    session are removed together with this row (see ``config.delete_config``).
    """

    __tablename__ = "chatwoot_configs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    base_url: Mapped[str | None] = mapped_column(String(500))
    api_token: Mapped[str | None] = mapped_column(Text)
    account_id: Mapped[int | None] = mapped_column(Integer)
    inbox_id: Mapped[int | None] = mapped_column(Integer)
    inbox_name: Mapped[str | None] = mapped_column(String(160))
    auto_create_inbox: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    sign_with_agent_name: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sign_separator: Mapped[str] = mapped_column(String(20), default="\n", nullable=False)
    auto_reopen: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    start_conversations_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    merge_local_phone_formats: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    sync_contacts_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sync_messages_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sync_window_days: Mapped[int | None] = mapped_column(Integer)
    ignored_chat_ids: Mapped[list | None] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    @property
    def ignored_chats(self) -> set[str]:
        return {str(jid) for jid in (self.ignored_chat_ids or []) if jid}

    @property
    def has_api_token(self) -> bool:
        return bool(self.api_token)
