import enum


class ConversationStatus(enum.Enum):
    open = "open"
    pending = "pending"
    resolved = "resolved"


class SyncJobType(enum.Enum):
    contacts = "contacts"
    messages = "messages"
    all = "all"


class SyncJobStatus(enum.Enum):
    idle = "idle"
    running = "running"
    completed = "completed"
    failed = "failed"


class FailureDirection(enum.Enum):
    whatsapp_inbound = "whatsapp_inbound"
    chatwoot_webhook = "chatwoot_webhook"
    bulk_sync = "bulk_sync"
