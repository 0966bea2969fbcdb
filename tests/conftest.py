import os
import sqlite3
import uuid
from itertools import count

import pytest
from dotenv import load_dotenv
from sqlalchemy import String, TypeDecorator, create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base

load_dotenv(os.path.join(os.getcwd(), ".env"))

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))


class SQLiteUUID(TypeDecorator):
    """UUID type that works with SQLite by storing as string."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if isinstance(value, uuid.UUID):
                return str(value)
            return value
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            if not isinstance(value, uuid.UUID):
                return uuid.UUID(value)
            return value
        return None


# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes  # noqa: E402

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


sqltypes.Uuid.bind_processor = _sqlite_uuid_bind_processor
sqltypes.Uuid.result_processor = _sqlite_uuid_result_processor

from app import models  # noqa: F401,E402
from app.models.chatwoot import ChatwootConfig  # noqa: E402
from app.services.chatwoot.client import ChatwootError  # noqa: E402
from app.services.chatwoot.locks import KeyedLock  # noqa: E402
from app.services.chatwoot.resolver import IdentityResolver  # noqa: E402
from app.services.chatwoot.session import SessionGatewayError  # noqa: E402

SESSION_ID = "sess-1"
INBOX_ID = 7


@pytest.fixture()
def engine():
    # Services commit and roll back on their own, so every test gets a fresh database
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def db_session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


# -------------------------------------------------------------------------
# Fakes
# -------------------------------------------------------------------------


class FakeChatwootClient:
    """In-memory stand-in for ChatwootClient.

    ``fail(method, error)`` queues an exception raised by the next call of
    ``method``; ``calls`` records every call as ``(method, args)``.
    """

    def __init__(self, inbox_id: int = INBOX_ID):
        self._ids = count(100)
        self.contacts: dict[int, dict] = {}
        self.conversations: dict[int, dict] = {}
        self.messages: dict[int, dict] = {}
        self.inboxes = [{"id": inbox_id, "name": "WhatsApp"}]
        self.downloads: dict[str, tuple[bytes, str | None]] = {}
        self.calls: list[tuple[str, dict]] = []
        self._failures: dict[str, list[Exception]] = {}
        self.closed = False

    def fail(self, method: str, error: Exception, times: int = 1):
        self._failures.setdefault(method, []).extend([error] * times)

    def _record(self, method: str, **kwargs):
        self.calls.append((method, kwargs))
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # contacts

    def add_contact(self, name: str, identifier: str | None = None, phone_number: str | None = None) -> dict:
        contact = {
            "id": next(self._ids),
            "name": name,
            "identifier": identifier,
            "phone_number": phone_number,
        }
        self.contacts[contact["id"]] = contact
        return contact

    def search_contacts(self, query: str) -> list[dict]:
        self._record("search_contacts", query=query)
        return [dict(c) for c in self.contacts.values() if query in (c.get("identifier") or "", c.get("name"))]

    def filter_contacts_by_phone(self, phone_numbers: list[str]) -> list[dict]:
        self._record("filter_contacts_by_phone", phone_numbers=list(phone_numbers))
        return [dict(c) for c in self.contacts.values() if c.get("phone_number") in phone_numbers]

    def create_contact(self, inbox_id: int, name: str, identifier: str, phone_number: str | None = None) -> dict:
        self._record("create_contact", inbox_id=inbox_id, name=name, identifier=identifier, phone_number=phone_number)
        return dict(self.add_contact(name, identifier=identifier, phone_number=phone_number))

    def update_contact(self, contact_id: int, **fields) -> dict:
        self._record("update_contact", contact_id=contact_id, **fields)
        contact = self.contacts.get(contact_id)
        if contact is None:
            raise ChatwootError("Chatwoot API error: 404", status_code=404)
        contact.update(fields)
        return dict(contact)

    def count_contacts(self) -> int:
        self._record("count_contacts")
        return len(self.contacts)

    def get_contact_conversations(self, contact_id: int) -> list[dict]:
        self._record("get_contact_conversations", contact_id=contact_id)
        if contact_id not in self.contacts:
            raise ChatwootError("Chatwoot API error: 404", status_code=404)
        return [dict(c) for c in self.conversations.values() if c["contact_id"] == contact_id]

    # conversations

    def add_conversation(self, contact_id: int, status: str = "open", inbox_id: int = INBOX_ID) -> dict:
        conversation = {
            "id": next(self._ids),
            "contact_id": contact_id,
            "inbox_id": inbox_id,
            "status": status,
        }
        self.conversations[conversation["id"]] = conversation
        return conversation

    def create_conversation(self, contact_id: int, inbox_id: int, status: str | None = None) -> dict:
        self._record("create_conversation", contact_id=contact_id, inbox_id=inbox_id, status=status)
        if contact_id not in self.contacts:
            raise ChatwootError("Chatwoot API error: 404", status_code=404)
        return dict(self.add_conversation(contact_id, status=status or "open", inbox_id=inbox_id))

    def toggle_status(self, conversation_id: int, status: str) -> dict:
        self._record("toggle_status", conversation_id=conversation_id, status=status)
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise ChatwootError("Chatwoot API error: 404", status_code=404)
        conversation["status"] = status
        return {"payload": {"success": True, "current_status": status, "conversation_id": conversation_id}}

    def count_conversations(self, status: str = "all", inbox_id: int | None = None) -> int:
        self._record("count_conversations", status=status, inbox_id=inbox_id)
        rows = [c for c in self.conversations.values() if inbox_id is None or c["inbox_id"] == inbox_id]
        if status == "all":
            return len(rows)
        return sum(1 for c in rows if c["status"] == status)

    # messages

    def create_message(
        self,
        conversation_id: int,
        content: str | None,
        message_type: str = "incoming",
        source_id: str | None = None,
        content_attributes: dict | None = None,
        attachments: list | None = None,
        private: bool = False,
    ) -> dict:
        self._record(
            "create_message",
            conversation_id=conversation_id,
            content=content,
            message_type=message_type,
            source_id=source_id,
            content_attributes=content_attributes,
            attachments=attachments,
        )
        if conversation_id not in self.conversations:
            raise ChatwootError("Chatwoot API error: 404", status_code=404)
        message = {
            "id": next(self._ids),
            "conversation_id": conversation_id,
            "content": content,
            "message_type": message_type,
            "source_id": source_id,
            "content_attributes": content_attributes or {},
            "attachments": attachments or [],
        }
        self.messages[message["id"]] = message
        return dict(message)

    def delete_message(self, conversation_id: int, message_id: int) -> None:
        self._record("delete_message", conversation_id=conversation_id, message_id=message_id)
        if self.messages.pop(message_id, None) is None:
            raise ChatwootError("Chatwoot API error: 404", status_code=404)

    def download(self, url: str) -> tuple[bytes, str | None]:
        self._record("download", url=url)
        return self.downloads.get(url, (b"attachment-bytes", None))

    # inboxes

    def list_inboxes(self) -> list[dict]:
        self._record("list_inboxes")
        return [dict(i) for i in self.inboxes]

    def create_api_inbox(self, name: str, webhook_url: str | None = None) -> dict:
        self._record("create_api_inbox", name=name, webhook_url=webhook_url)
        inbox = {"id": next(self._ids), "name": name}
        self.inboxes.append(inbox)
        return dict(inbox)


class FakeSessionGateway:
    """Records what would be sent to WhatsApp and hands out message ids."""

    def __init__(self):
        self._ids = count(1)
        self.sent: list[tuple[str, str, object]] = []
        self.media: dict[str, bytes] = {}
        self.send_error: Exception | None = None
        self.media_error: Exception | None = None

    def send_message(self, session_id, jid, request):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((session_id, jid, request))
        if request.action == "delete":
            return None
        return f"WA-OUT-{next(self._ids)}"

    def fetch_media(self, url: str) -> bytes:
        if self.media_error is not None:
            raise self.media_error
        return self.media.get(url, b"media-bytes")


@pytest.fixture()
def chatwoot():
    return FakeChatwootClient()


@pytest.fixture()
def gateway():
    return FakeSessionGateway()


@pytest.fixture()
def locks():
    return KeyedLock(timeout=1.0)


@pytest.fixture()
def chatwoot_config(db_session):
    config = ChatwootConfig(
        session_id=SESSION_ID,
        base_url="https://chat.example.com",
        api_token="token-123",
        account_id=1,
        inbox_id=INBOX_ID,
        enabled=True,
        sign_separator="\n",
        sync_contacts_enabled=True,
        sync_messages_enabled=True,
        ignored_chat_ids=[],
    )
    db_session.add(config)
    db_session.commit()
    db_session.refresh(config)
    return config


@pytest.fixture()
def resolver(db_session, chatwoot, chatwoot_config, locks):
    return IdentityResolver(db_session, chatwoot, chatwoot_config, locks)


@pytest.fixture()
def gateway_error():
    return SessionGatewayError("Session API error: 503", status_code=503)
