from app.models.chatwoot.config import ChatwootConfig
from app.models.chatwoot.enums import ConversationStatus, FailureDirection, SyncJobStatus, SyncJobType
from app.models.chatwoot.failure import SyncFailure
from app.models.chatwoot.mapping import ChatLock, ContactMapping, ConversationMapping, MessageEchoTag, MessageMapping
from app.models.chatwoot.sync import SyncJob

__all__ = [
    "ChatLock",
    "ChatwootConfig",
    "ContactMapping",
    "ConversationMapping",
    "ConversationStatus",
    "FailureDirection",
    "MessageEchoTag",
    "MessageMapping",
    "SyncFailure",
    "SyncJob",
    "SyncJobStatus",
    "SyncJobType",
]
