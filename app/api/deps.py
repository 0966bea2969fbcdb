from app.db import get_db

# -------------------------------------------------------------------------
# Container-based Dependencies
# -------------------------------------------------------------------------
# These provide collaborators from the DI container for use in route handlers.
# They can be easily mocked in tests by overriding the container providers.


def get_resolver_locks():
    """Get the resolver lock registry from container."""
    from app.container import container
    return container.resolver_locks()


def get_session_gateway():
    """Get the WhatsApp session gateway from container."""
    from app.container import container
    return container.session_gateway()


def get_client_factory():
    """Get the Chatwoot client factory from container."""
    from app.container import container
    return container.chatwoot_client_factory()


__all__ = ["get_client_factory", "get_db", "get_resolver_locks", "get_session_gateway"]
