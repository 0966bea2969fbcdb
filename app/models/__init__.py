from app.models.chatwoot import (  # noqa: F401
    ChatwootConfig,
    ContactMapping,
    ConversationMapping,
    MessageEchoTag,
    MessageMapping,
    SyncFailure,
    SyncJob,
)
from app.models.whatsapp import WhatsAppContact, WhatsAppMessage  # noqa: F401
