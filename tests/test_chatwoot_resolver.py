import threading

import pytest
from sqlalchemy.orm import sessionmaker

from app.models.chatwoot import ChatLock, ChatwootConfig, ContactMapping, ConversationMapping, ConversationStatus
from app.services.chatwoot.client import ChatwootError
from app.services.chatwoot.errors import ResolutionError
from app.services.chatwoot.resolver import IdentityResolver

JID = "5511987654321@s.whatsapp.net"


def test_resolve_creates_contact_and_conversation_once(db_session, chatwoot, chatwoot_config, resolver):
    contact, conversation = resolver.resolve(chatwoot_config.session_id, JID, "Ana")

    assert chatwoot.count("create_contact") == 1
    assert chatwoot.count("create_conversation") == 1
    created = next(kw for name, kw in chatwoot.calls if name == "create_contact")
    assert created["identifier"] == JID
    assert created["phone_number"] == "+5511987654321"
    assert created["name"] == "Ana"
    assert contact.whatsapp_jid == JID
    assert conversation.status == ConversationStatus.open

    again_contact, again_conversation = resolver.resolve(chatwoot_config.session_id, JID, "Ana")
    assert again_contact.support_contact_id == contact.support_contact_id
    assert again_conversation.support_conversation_id == conversation.support_conversation_id
    assert chatwoot.count("create_contact") == 1
    assert chatwoot.count("create_conversation") == 1
    assert db_session.query(ContactMapping).count() == 1
    assert db_session.query(ConversationMapping).count() == 1


def test_device_suffix_resolves_to_same_mapping(chatwoot, chatwoot_config, resolver):
    first, _ = resolver.resolve(chatwoot_config.session_id, JID)
    second, _ = resolver.resolve(chatwoot_config.session_id, "5511987654321:7@s.whatsapp.net")
    assert first.id == second.id
    assert chatwoot.count("create_contact") == 1


def test_existing_contact_is_found_before_create(chatwoot, chatwoot_config, resolver):
    existing = chatwoot.add_contact("Ana", identifier=None, phone_number="+5511987654321")

    contact = resolver.resolve_contact(chatwoot_config.session_id, JID, "Ana")

    assert contact.support_contact_id == existing["id"]
    assert chatwoot.count("create_contact") == 0


def test_merge_local_formats_matches_other_spelling(db_session, chatwoot, chatwoot_config, resolver):
    chatwoot_config.merge_local_phone_formats = True
    db_session.commit()
    existing = chatwoot.add_contact("Ana", phone_number="+551187654321")

    contact = resolver.resolve_contact(chatwoot_config.session_id, JID)

    assert contact.support_contact_id == existing["id"]
    searched = [kw["phone_numbers"] for name, kw in chatwoot.calls if name == "filter_contacts_by_phone"]
    assert searched == [["+5511987654321", "+551187654321"]]


def test_group_is_searched_by_identifier(chatwoot, chatwoot_config, resolver):
    existing = chatwoot.add_contact("Team", identifier="group:120363041234567890@g.us")

    contact, _ = resolver.resolve(chatwoot_config.session_id, "120363041234567890@g.us", None)

    assert contact.support_contact_id == existing["id"]
    assert chatwoot.count("filter_contacts_by_phone") == 0
    assert chatwoot.count("create_contact") == 0


def test_open_conversation_in_inbox_is_reused(chatwoot, chatwoot_config, resolver):
    existing = chatwoot.add_contact("Ana", identifier=JID, phone_number="+5511987654321")
    chatwoot.add_conversation(existing["id"], status="resolved")
    conversation = chatwoot.add_conversation(existing["id"], status="pending")

    _, mapping = resolver.resolve(chatwoot_config.session_id, JID)

    assert mapping.support_conversation_id == conversation["id"]
    assert mapping.status == ConversationStatus.pending
    assert chatwoot.count("create_conversation") == 0


def test_malformed_jid_is_rejected(chatwoot, chatwoot_config, resolver):
    with pytest.raises(ResolutionError) as excinfo:
        resolver.resolve(chatwoot_config.session_id, "not-a-jid@s.whatsapp.net")
    assert excinfo.value.code == "malformed_identifier"
    assert excinfo.value.retryable is False
    assert chatwoot.calls == []


def test_resolved_conversation_is_reopened_when_configured(db_session, chatwoot, chatwoot_config, resolver):
    _, mapping = resolver.resolve(chatwoot_config.session_id, JID)
    conversation_id = mapping.support_conversation_id
    chatwoot.conversations[conversation_id]["status"] = "resolved"
    mapping.status = ConversationStatus.resolved
    chatwoot_config.auto_reopen = True
    db_session.commit()

    _, reopened = resolver.resolve(chatwoot_config.session_id, JID)

    assert reopened.support_conversation_id == conversation_id
    assert reopened.status == ConversationStatus.open
    assert chatwoot.conversations[conversation_id]["status"] == "open"
    assert chatwoot.count("create_conversation") == 1


def test_resolved_conversation_is_replaced_without_reopen(db_session, chatwoot, chatwoot_config, resolver):
    _, mapping = resolver.resolve(chatwoot_config.session_id, JID)
    old_id = mapping.support_conversation_id
    chatwoot.conversations[old_id]["status"] = "resolved"
    mapping.status = ConversationStatus.resolved
    db_session.commit()

    _, fresh = resolver.resolve(chatwoot_config.session_id, JID)

    assert fresh.support_conversation_id != old_id
    assert fresh.status == ConversationStatus.open
    assert chatwoot.count("create_conversation") == 2
    assert chatwoot.count("toggle_status") == 0
    assert db_session.query(ConversationMapping).count() == 1


def test_new_conversations_start_pending_when_configured(db_session, chatwoot, chatwoot_config, resolver):
    chatwoot_config.start_conversations_pending = True
    db_session.commit()

    _, mapping = resolver.resolve(chatwoot_config.session_id, JID)

    created = [kw for name, kw in chatwoot.calls if name == "create_conversation"]
    assert created[0]["status"] == "pending"
    assert mapping.status == ConversationStatus.pending


def test_deleted_contact_is_recreated(db_session, chatwoot, chatwoot_config, resolver):
    contact = resolver.resolve_contact(chatwoot_config.session_id, JID)
    del chatwoot.contacts[contact.support_contact_id]

    _, conversation = resolver.resolve(chatwoot_config.session_id, JID)

    db_session.refresh(contact)
    assert contact.support_contact_id in chatwoot.contacts
    assert chatwoot.conversations[conversation.support_conversation_id]["contact_id"] == contact.support_contact_id


def test_unreachable_chatwoot_is_retryable(db_session, chatwoot, chatwoot_config, resolver):
    chatwoot.fail("filter_contacts_by_phone", ChatwootError("Chatwoot API error: 503", status_code=503))

    with pytest.raises(ResolutionError) as excinfo:
        resolver.resolve(chatwoot_config.session_id, JID)

    assert excinfo.value.code == "support_unreachable"
    assert excinfo.value.retryable is True
    assert db_session.query(ContactMapping).count() == 0


def test_lock_timeout_reports_busy(db_session, chatwoot, chatwoot_config, locks):
    resolver = IdentityResolver(db_session, chatwoot, chatwoot_config, locks, lock_timeout=0.05)
    held = threading.Event()
    release = threading.Event()

    def _holder():
        with locks.hold((chatwoot_config.session_id, JID)):
            held.set()
            release.wait(5)

    worker = threading.Thread(target=_holder)
    worker.start()
    try:
        assert held.wait(5)
        with pytest.raises(ResolutionError) as excinfo:
            resolver.resolve(chatwoot_config.session_id, JID)
        assert excinfo.value.code == "resolver_busy"
        assert excinfo.value.retryable is True
    finally:
        release.set()
        worker.join(5)
    assert chatwoot.calls == []


def test_concurrent_first_messages_create_one_contact_and_conversation(engine, chatwoot, chatwoot_config, locks):
    search = chatwoot.filter_contacts_by_phone

    def _slow_search(phone_numbers):
        found = search(phone_numbers)
        # Widen the window between search and create
        threading.Event().wait(0.05)
        return found

    chatwoot.filter_contacts_by_phone = _slow_search
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    sessions = [factory() for _ in range(2)]
    resolvers = [
        IdentityResolver(session, chatwoot, session.get(ChatwootConfig, chatwoot_config.id), locks, lock_timeout=5)
        for session in sessions
    ]
    start = threading.Barrier(2)
    errors = []

    def _worker(worker_resolver):
        try:
            start.wait(5)
            worker_resolver.resolve(chatwoot_config.session_id, JID, "Ana")
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_worker, args=(r,)) for r in resolvers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)
    for session in sessions:
        session.close()

    assert errors == []
    assert chatwoot.count("create_contact") == 1
    assert chatwoot.count("create_conversation") == 1


def test_resolution_takes_the_chat_lock_row_once(db_session, chatwoot, chatwoot_config, resolver):
    resolver.resolve(chatwoot_config.session_id, JID, "Ana")
    resolver.resolve(chatwoot_config.session_id, "5511987654321:7@s.whatsapp.net", "Ana")

    rows = db_session.query(ChatLock).all()
    assert [(row.session_id, row.whatsapp_jid) for row in rows] == [(chatwoot_config.session_id, JID)]
