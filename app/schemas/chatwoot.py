from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.chatwoot.enums import ConversationStatus, FailureDirection, SyncJobStatus, SyncJobType

# Chatwoot serializes message_type as a string in webhooks and as an int in some API responses
_MESSAGE_TYPES = {0: "incoming", 1: "outgoing", 2: "activity", 3: "template"}


class ChatwootConfigUpdate(BaseModel):
    base_url: str | None = Field(default=None, max_length=500)
    api_token: str | None = None
    account_id: int | None = Field(default=None, ge=1)
    inbox_id: int | None = Field(default=None, ge=1)
    inbox_name: str | None = Field(default=None, max_length=160)
    auto_create_inbox: bool | None = None
    enabled: bool | None = None
    sign_with_agent_name: bool | None = None
    sign_separator: str | None = Field(default=None, max_length=20)
    auto_reopen: bool | None = None
    start_conversations_pending: bool | None = None
    merge_local_phone_formats: bool | None = None
    sync_contacts_enabled: bool | None = None
    sync_messages_enabled: bool | None = None
    sync_window_days: int | None = Field(default=None, ge=1)
    ignored_chat_ids: list[str] | None = None


class ChatwootConfigRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: str
    base_url: str | None = None
    account_id: int | None = None
    inbox_id: int | None = None
    inbox_name: str | None = None
    auto_create_inbox: bool
    enabled: bool
    has_api_token: bool = False
    sign_with_agent_name: bool
    sign_separator: str
    auto_reopen: bool
    start_conversations_pending: bool
    merge_local_phone_formats: bool
    sync_contacts_enabled: bool
    sync_messages_enabled: bool
    sync_window_days: int | None = None
    ignored_chat_ids: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CredentialsValidateRequest(BaseModel):
    base_url: str = Field(min_length=1, max_length=500)
    api_token: str = Field(min_length=1)
    account_id: int | None = Field(default=None, ge=1)


class CredentialsValidateResponse(BaseModel):
    valid: bool
    account: dict | None = None
    error: str | None = None


class SyncStartRequest(BaseModel):
    type: SyncJobType = SyncJobType.all
    window_days: int | None = Field(default=None, ge=1)


class SyncJobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID | None = None
    session_id: str
    type: SyncJobType | None = None
    status: SyncJobStatus
    progress: int = 0
    total: int = 0
    window_days: int | None = None
    stats: dict | None = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class OverviewRead(BaseModel):
    whatsapp_contact_count: int
    support_contact_count: int
    support_conversation_count: int
    support_open_conversation_count: int


class ResolveAllResponse(BaseModel):
    resolved_count: int


class ResetResponse(BaseModel):
    contact_mappings: int
    conversation_mappings: int
    message_mappings: int
    echo_tags: int


class SyncFailureRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    direction: FailureDirection
    kind: str | None = None
    reason: str
    whatsapp_jid: str | None = None
    whatsapp_message_id: str | None = None
    support_conversation_id: int | None = None
    support_message_id: int | None = None
    error: str | None = None
    created_at: datetime


# ==================== WhatsApp events ====================


class WAMessageKey(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    remote_jid: str = Field(alias="remoteJid")
    from_me: bool = Field(default=False, alias="fromMe")
    participant: str | None = None


class WAMessageEvent(BaseModel):
    """A message as reported by the WhatsApp session layer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    key: WAMessageKey
    push_name: str | None = Field(default=None, alias="pushName")
    message: dict | None = None
    message_timestamp: datetime | None = Field(default=None, alias="messageTimestamp")
    media_url: str | None = Field(default=None, alias="mediaUrl")

    @field_validator("message_timestamp", mode="before")
    @classmethod
    def _coerce_epoch(cls, value):
        if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
            return datetime.fromtimestamp(int(value), tz=UTC)
        return value


# ==================== Chatwoot webhooks ====================


class WebhookContentAttributes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    in_reply_to: int | None = None
    in_reply_to_external_id: str | None = None
    deleted: bool = False


class WebhookMetaSender(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    identifier: str | None = None
    phone_number: str | None = None
    name: str | None = None


class WebhookConversationMeta(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sender: WebhookMetaSender | None = None


class WebhookConversation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    status: str | None = None
    inbox_id: int | None = None
    meta: WebhookConversationMeta | None = None


class WebhookSender(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | None = None
    name: str | None = None
    available_name: str | None = None
    type: str | None = None


class WebhookAttachment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_type: str | None = None
    data_url: str | None = None
    thumb_url: str | None = None
    file_name: str | None = None


class ChatwootWebhookPayload(BaseModel):
    """Chatwoot webhook body; unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    event: str
    id: int | None = None
    message_type: str | int | None = None
    content: str | None = None
    private: bool = False
    source_id: str | None = None
    content_attributes: WebhookContentAttributes | None = None
    conversation: WebhookConversation | None = None
    sender: WebhookSender | None = None
    attachments: list[WebhookAttachment] = Field(default_factory=list)
    # Conversation events carry the conversation itself at the top level
    status: str | None = None
    meta: WebhookConversationMeta | None = None

    @field_validator("content_attributes", mode="before")
    @classmethod
    def _empty_attributes(cls, value):
        # Chatwoot sends {} or null interchangeably
        return value or None

    @property
    def normalized_message_type(self) -> str | None:
        if isinstance(self.message_type, int):
            return _MESSAGE_TYPES.get(self.message_type)
        return self.message_type

    @property
    def conversation_id(self) -> int | None:
        if self.conversation and self.conversation.id is not None:
            return self.conversation.id
        if self.event.startswith("conversation_"):
            return self.id
        return None

    @property
    def conversation_status(self) -> str | None:
        if self.event.startswith("conversation_") and self.status:
            return self.status
        return self.conversation.status if self.conversation else None

    @property
    def meta_sender(self) -> WebhookMetaSender | None:
        meta = self.conversation.meta if self.conversation and self.conversation.meta else self.meta
        return meta.sender if meta else None


class WebhookResult(BaseModel):
    status: Literal["ignored", "echo", "sent", "deleted", "status_updated", "failed"]
    reason: str | None = None
    jid: str | None = None
    whatsapp_message_ids: list[str] = Field(default_factory=list)


class WhatsAppEventResult(BaseModel):
    state: str
    reason: str | None = None
    jid: str | None = None
    support_message_ids: list[int] = Field(default_factory=list)


def coerce_conversation_status(value: str | None) -> ConversationStatus | None:
    if not value:
        return None
    try:
        return ConversationStatus(value)
    except ValueError:
        # snoozed and other transient states count as open for routing
        return ConversationStatus.open
