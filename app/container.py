"""Dependency injection container.

Holds the process-wide collaborators of the sync engine so that API routes
and Celery tasks share them, and tests can swap them out.

Usage:
    from app.container import container

    # In route handlers / tasks
    locks = container.resolver_locks()
    gateway = container.session_gateway()

    # In tests
    with container.session_gateway.override(FakeSessionGateway()):
        response = client.post("/chatwoot/webhook/s1", ...)
"""

from __future__ import annotations

from dependency_injector import containers, providers  # type: ignore[import-not-found]

from app.config import settings
from app.services.chatwoot.config import build_client
from app.services.chatwoot.locks import KeyedLock
from app.services.chatwoot.session import HttpSessionGateway


class Container(containers.DeclarativeContainer):
    """Application dependency injection container.

    Provides:
    - Configuration management
    - Database session factory
    - The keyed lock guarding identity resolution
    - The WhatsApp session gateway
    - The Chatwoot client factory
    """

    config = providers.Configuration()

    # Overridden at runtime with the actual SessionLocal
    db_session_factory = providers.Callable(lambda: None)

    # One registry per process; resolution for a chat is serialized on it
    resolver_locks = providers.Singleton(
        KeyedLock,
        timeout=settings.chatwoot_resolver_lock_timeout_seconds,
    )

    session_gateway = providers.Singleton(
        HttpSessionGateway,
        base_url=settings.session_api_url,
        token=settings.session_api_token,
        timeout=settings.session_api_timeout_seconds,
    )

    chatwoot_client_factory = providers.Object(build_client)


# Global container instance
container = Container()


def get_container() -> Container:
    """Get the global container instance."""
    return container


def configure_container(db_session_factory) -> Container:
    """Configure the container with runtime dependencies."""
    container.db_session_factory.override(providers.Callable(db_session_factory))
    return container
