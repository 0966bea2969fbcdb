"""WhatsApp <-> Chatwoot synchronization."""

from app.services.chatwoot.client import ChatwootClient, ChatwootError

__all__ = [
    "ChatwootClient",
    "ChatwootError",
]
