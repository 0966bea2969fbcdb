"""Per-session Chatwoot integration settings."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import urlparse

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.chatwoot import (
    ChatLock,
    ChatwootConfig,
    ContactMapping,
    ConversationMapping,
    MessageEchoTag,
    MessageMapping,
    SyncFailure,
    SyncJob,
)
from app.schemas.chatwoot import ChatwootConfigUpdate
from app.services.chatwoot.client import ChatwootClient, ChatwootError
from app.services.chatwoot.errors import ConfigValidationError, NotConfiguredError
from app.services.chatwoot.phone import InvalidJidError, normalize_jid

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ChatwootConfig], ChatwootClient]


def get_config(db: Session, session_id: str) -> ChatwootConfig | None:
    return db.query(ChatwootConfig).filter(ChatwootConfig.session_id == session_id).first()


def require_config(db: Session, session_id: str, enabled: bool = True) -> ChatwootConfig:
    config = get_config(db, session_id)
    if not config:
        raise NotConfiguredError("chatwoot_not_configured", f"Chatwoot is not configured for session {session_id}")
    if enabled and not config.enabled:
        raise NotConfiguredError("chatwoot_disabled", f"Chatwoot is disabled for session {session_id}")
    return config


def webhook_url_for(session_id: str) -> str | None:
    if not settings.chatwoot_webhook_base_url:
        return None
    return f"{settings.chatwoot_webhook_base_url.rstrip('/')}/chatwoot/webhook/{session_id}"


def _valid_base_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def _normalize_ignored(values: list[str]) -> list[str]:
    normalized: list[str] = []
    for value in values:
        value = (value or "").strip()
        if not value:
            continue
        try:
            value = normalize_jid(value).jid
        except InvalidJidError:
            pass
        if value not in normalized:
            normalized.append(value)
    return normalized


def _validate(config: ChatwootConfig) -> None:
    if config.base_url and not _valid_base_url(config.base_url):
        raise ConfigValidationError("invalid_base_url", "base_url must be an http(s) URL")
    if config.sign_separator is not None and len(config.sign_separator) == 0:
        config.sign_separator = "\n"
    if not config.enabled:
        return
    missing = [
        name
        for name, value in (
            ("base_url", config.base_url),
            ("api_token", config.api_token),
            ("account_id", config.account_id),
        )
        if not value
    ]
    if missing:
        raise ConfigValidationError(
            "missing_credentials",
            f"{', '.join(missing)} required when the integration is enabled",
        )
    if not config.inbox_id and not (config.auto_create_inbox and config.inbox_name):
        raise ConfigValidationError(
            "missing_inbox",
            "inbox_id, or auto_create_inbox with inbox_name, is required when the integration is enabled",
        )


def build_client(config: ChatwootConfig, transport: httpx.BaseTransport | None = None) -> ChatwootClient:
    if not (config.base_url and config.api_token and config.account_id):
        raise ConfigValidationError("missing_credentials", "Chatwoot credentials are incomplete")
    return ChatwootClient(
        base_url=config.base_url,
        access_token=config.api_token,
        account_id=config.account_id,
        timeout=settings.chatwoot_timeout_seconds,
        transport=transport,
    )


def ensure_inbox(db: Session, config: ChatwootConfig, client: ChatwootClient) -> int:
    """Return the configured inbox id, finding or creating an API inbox by name when allowed."""
    if config.inbox_id:
        return config.inbox_id
    if not (config.auto_create_inbox and config.inbox_name):
        raise ConfigValidationError("missing_inbox", "No Chatwoot inbox configured")

    webhook_url = webhook_url_for(config.session_id)
    inbox = next((item for item in client.list_inboxes() if item.get("name") == config.inbox_name), None)
    if inbox is None:
        inbox = client.create_api_inbox(config.inbox_name, webhook_url=webhook_url)
        logger.info(
            "chatwoot_inbox_created session_id=%s inbox_id=%s name=%s",
            config.session_id,
            inbox.get("id"),
            config.inbox_name,
        )
    if not inbox.get("id"):
        raise ConfigValidationError("inbox_unavailable", "Chatwoot did not return an inbox id")
    config.inbox_id = int(inbox["id"])
    db.commit()
    return config.inbox_id


def set_config(
    db: Session,
    session_id: str,
    payload: ChatwootConfigUpdate,
    client_factory: ClientFactory = build_client,
) -> ChatwootConfig:
    config = get_config(db, session_id)
    created = config is None
    if created:
        config = ChatwootConfig(session_id=session_id, ignored_chat_ids=[])
        db.add(config)

    data = payload.model_dump(exclude_unset=True)
    if "base_url" in data and data["base_url"]:
        data["base_url"] = data["base_url"].rstrip("/")
    if "ignored_chat_ids" in data:
        data["ignored_chat_ids"] = _normalize_ignored(data["ignored_chat_ids"] or [])
    for key, value in data.items():
        setattr(config, key, value)
    if config.sign_separator is None:
        config.sign_separator = "\n"

    try:
        _validate(config)
    except ConfigValidationError:
        db.rollback()
        raise

    try:
        db.commit()
    except IntegrityError:
        # Concurrent first save for the same session
        db.rollback()
        existing = get_config(db, session_id)
        if not existing:
            raise
        for key, value in data.items():
            setattr(existing, key, value)
        _validate(existing)
        db.commit()
        config = existing
    db.refresh(config)
    logger.info("chatwoot_config_saved session_id=%s created=%s enabled=%s", session_id, created, config.enabled)

    if config.enabled and not config.inbox_id:
        client = client_factory(config)
        try:
            ensure_inbox(db, config, client)
        except ChatwootError as exc:
            # The inbox is resolved again on first use
            logger.warning("chatwoot_inbox_setup_failed session_id=%s error=%s", session_id, exc)
        finally:
            client.close()
    return config


def _purge_session_rows(db: Session, session_id: str, include_jobs: bool) -> dict[str, int]:
    counts = {
        "message_mappings": db.query(MessageMapping).filter(MessageMapping.session_id == session_id).delete(
            synchronize_session=False
        ),
        "echo_tags": db.query(MessageEchoTag).filter(MessageEchoTag.session_id == session_id).delete(
            synchronize_session=False
        ),
        "conversation_mappings": db.query(ConversationMapping)
        .filter(ConversationMapping.session_id == session_id)
        .delete(synchronize_session=False),
        "contact_mappings": db.query(ContactMapping).filter(ContactMapping.session_id == session_id).delete(
            synchronize_session=False
        ),
    }
    if include_jobs:
        counts["sync_jobs"] = db.query(SyncJob).filter(SyncJob.session_id == session_id).delete(
            synchronize_session=False
        )
        counts["sync_failures"] = db.query(SyncFailure).filter(SyncFailure.session_id == session_id).delete(
            synchronize_session=False
        )
        counts["chat_locks"] = db.query(ChatLock).filter(ChatLock.session_id == session_id).delete(
            synchronize_session=False
        )
    return counts


def reset_mappings(db: Session, session_id: str) -> dict[str, int]:
    """Clear every mapping and echo tag of the session, keeping its config."""
    counts = _purge_session_rows(db, session_id, include_jobs=False)
    db.commit()
    logger.info("chatwoot_integration_reset session_id=%s counts=%s", session_id, counts)
    return counts


def delete_config(db: Session, session_id: str) -> bool:
    config = get_config(db, session_id)
    if not config:
        return False
    counts = _purge_session_rows(db, session_id, include_jobs=True)
    db.delete(config)
    db.commit()
    logger.info("chatwoot_config_deleted session_id=%s counts=%s", session_id, counts)
    return True


def validate_credentials(
    base_url: str,
    api_token: str,
    account_id: int | None = None,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, Any]:
    if not _valid_base_url(base_url):
        raise ConfigValidationError("invalid_base_url", "base_url must be an http(s) URL")
    client = ChatwootClient(
        base_url=base_url,
        access_token=api_token,
        account_id=account_id or 1,
        timeout=settings.chatwoot_timeout_seconds,
        transport=transport,
    )
    try:
        profile = client.get_profile()
    except ChatwootError as exc:
        if exc.status_code in (401, 403):
            return {"valid": False, "account": None, "error": "invalid_token"}
        return {"valid": False, "account": None, "error": exc.message}
    finally:
        client.close()

    accounts = profile.get("accounts") or []
    if account_id is not None:
        account = next((item for item in accounts if item.get("id") == account_id), None)
        if account is None:
            return {"valid": False, "account": None, "error": "account_not_accessible"}
    else:
        account = accounts[0] if accounts else None
    return {
        "valid": True,
        "account": {
            "id": account.get("id") if account else None,
            "name": account.get("name") if account else None,
            "role": account.get("role") if account else None,
            "user_id": profile.get("id"),
            "user_name": profile.get("name"),
        },
        "error": None,
    }
