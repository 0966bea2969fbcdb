from datetime import UTC, datetime, timedelta

import pytest

from app.models.chatwoot import (
    ContactMapping,
    ConversationMapping,
    ConversationStatus,
    MessageEchoTag,
    MessageMapping,
    SyncFailure,
    SyncJob,
    SyncJobStatus,
    SyncJobType,
)
from app.models.whatsapp import WhatsAppContact, WhatsAppMessage
from app.services.chatwoot.client import ChatwootError
from app.services.chatwoot.errors import ConfigValidationError, ConflictError, DeliveryError
from app.services.chatwoot.sync import (
    BulkSyncOrchestrator,
    reconcile_stale,
    request_cancel,
    reset_integration,
)

ALICE = "5511987654321@s.whatsapp.net"
BOB = "4915112345678@s.whatsapp.net"
GROUP = "120363041234567890@g.us"


@pytest.fixture()
def orchestrator(db_session, chatwoot, chatwoot_config, locks, gateway):
    return BulkSyncOrchestrator(db_session, chatwoot, chatwoot_config, locks, gateway, page_size=2)


def _contact(db, jid, name=None, session_id="sess-1"):
    contact = WhatsAppContact(session_id=session_id, jid=jid, full_name=name)
    db.add(contact)
    db.commit()
    return contact


def _message(db, message_id, jid, text, at, from_me=False, session_id="sess-1"):
    message = WhatsAppMessage(
        session_id=session_id,
        message_id=message_id,
        remote_jid=jid,
        from_me=from_me,
        message_timestamp=at,
        content={"conversation": text},
    )
    db.add(message)
    db.commit()
    return message


def _running_job(db, heartbeat_at=None, cancel_requested=False, job_type=SyncJobType.all):
    now = datetime.now(UTC)
    job = SyncJob(
        session_id="sess-1",
        job_type=job_type,
        status=SyncJobStatus.running,
        started_at=now,
        heartbeat_at=heartbeat_at or now,
        cancel_requested=cancel_requested,
        stats={"imported": 0, "skipped": 0, "errors": 0},
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def test_empty_store_completes_immediately(orchestrator):
    job = orchestrator.start("sess-1", SyncJobType.all, dispatch=False)

    assert job.status == SyncJobStatus.completed
    assert job.total == 0
    assert job.progress == 0
    assert job.finished_at is not None


def test_contacts_sync_imports_new_contacts(db_session, chatwoot, orchestrator):
    _contact(db_session, ALICE, "Alice")
    _contact(db_session, GROUP, "Team")
    _contact(db_session, BOB, "Bob")
    db_session.add(ContactMapping(session_id="sess-1", whatsapp_jid=BOB, support_contact_id=55, support_identifier=BOB))
    db_session.commit()

    job = orchestrator.start("sess-1", SyncJobType.contacts, dispatch=False)

    assert job.status == SyncJobStatus.completed
    assert job.stats == {"imported": 1, "skipped": 2, "errors": 0}
    assert job.progress == job.total == 3
    [(_, created)] = [call for call in chatwoot.calls if call[0] == "create_contact"]
    assert created["name"] == "Alice"
    assert created["identifier"] == ALICE


def test_messages_are_pushed_in_chat_order(db_session, chatwoot, orchestrator):
    base = datetime.now(UTC) - timedelta(days=1)
    _message(db_session, "A1", ALICE, "alice one", base + timedelta(minutes=10))
    _message(db_session, "A2", ALICE, "alice two", base + timedelta(minutes=11))
    _message(db_session, "A3", ALICE, "alice three", base + timedelta(minutes=12), from_me=True)
    _message(db_session, "B1", BOB, "bob one", base)

    job = orchestrator.start("sess-1", SyncJobType.messages, dispatch=False)

    assert job.status == SyncJobStatus.completed
    assert job.stats == {"imported": 4, "skipped": 0, "errors": 0}
    assert job.progress == job.total == 4
    contents = [m["content"] for m in chatwoot.messages.values()]
    assert contents == ["bob one", "alice one", "alice two", "alice three"]
    types = [m["message_type"] for m in chatwoot.messages.values()]
    assert types[-1] == "outgoing"
    assert db_session.query(MessageMapping).count() == 4
    assert db_session.query(MessageEchoTag).filter(MessageEchoTag.support_message_id.is_(None)).count() == 0


def test_already_mapped_messages_are_skipped(db_session, chatwoot, orchestrator):
    base = datetime.now(UTC) - timedelta(hours=3)
    _message(db_session, "A1", ALICE, "alice one", base)
    _message(db_session, "A2", ALICE, "alice two", base + timedelta(minutes=1))
    db_session.add(
        MessageMapping(
            session_id="sess-1",
            whatsapp_message_id="A1",
            whatsapp_jid=ALICE,
            support_message_id=999,
            support_conversation_id=998,
        )
    )
    db_session.commit()

    job = orchestrator.start("sess-1", SyncJobType.messages, dispatch=False)

    assert job.stats == {"imported": 1, "skipped": 1, "errors": 0}
    assert [m["content"] for m in chatwoot.messages.values()] == ["alice two"]


def test_rerun_does_not_duplicate(db_session, chatwoot, orchestrator):
    _message(db_session, "A1", ALICE, "alice one", datetime.now(UTC) - timedelta(hours=1))

    orchestrator.start("sess-1", SyncJobType.messages, dispatch=False)
    second = orchestrator.start("sess-1", SyncJobType.messages, dispatch=False)

    assert second.status == SyncJobStatus.completed
    assert second.stats["skipped"] == 1
    assert chatwoot.count("create_message") == 1


def test_window_limits_backfill(db_session, chatwoot, orchestrator):
    now = datetime.now(UTC)
    _message(db_session, "OLD", ALICE, "last month", now - timedelta(days=30))
    _message(db_session, "NEW", ALICE, "yesterday", now - timedelta(days=1))

    job = orchestrator.start("sess-1", SyncJobType.messages, window_days=7, dispatch=False)

    assert job.window_days == 7
    assert job.total == 1
    assert [m["content"] for m in chatwoot.messages.values()] == ["yesterday"]


def test_ignored_chat_is_skipped_whole(db_session, chatwoot, chatwoot_config, orchestrator):
    chatwoot_config.ignored_chat_ids = [ALICE]
    db_session.commit()
    base = datetime.now(UTC) - timedelta(hours=2)
    _message(db_session, "A1", ALICE, "one", base)
    _message(db_session, "A2", ALICE, "two", base + timedelta(minutes=1))

    job = orchestrator.start("sess-1", SyncJobType.messages, dispatch=False)

    assert job.stats["skipped"] == 2
    assert job.progress == 2
    assert chatwoot.calls == []


def test_start_conflicts_with_running_job(db_session, orchestrator):
    running = _running_job(db_session)
    running.progress = 3
    running.total = 10
    db_session.commit()

    with pytest.raises(ConflictError) as exc_info:
        orchestrator.start("sess-1", SyncJobType.all, dispatch=False)

    assert exc_info.value.code == "already-running"
    assert exc_info.value.status_code == 409
    db_session.refresh(running)
    assert running.status == SyncJobStatus.running
    assert (running.progress, running.total) == (3, 10)
    assert db_session.query(SyncJob).count() == 1


def test_stale_job_is_reconciled_before_start(db_session, orchestrator):
    stale = _running_job(db_session, heartbeat_at=datetime.now(UTC) - timedelta(days=1))

    job = orchestrator.start("sess-1", SyncJobType.all, dispatch=False)

    db_session.refresh(stale)
    assert stale.status == SyncJobStatus.failed
    assert stale.error == "stale"
    assert job.status == SyncJobStatus.completed


def test_reconcile_stale_leaves_live_jobs(db_session):
    live = _running_job(db_session)

    assert reconcile_stale(db_session, stale_after_seconds=60) == 0
    db_session.refresh(live)
    assert live.status == SyncJobStatus.running


def test_cancel_stops_at_checkpoint(db_session, chatwoot, orchestrator):
    _message(db_session, "A1", ALICE, "one", datetime.now(UTC) - timedelta(hours=1))
    job = _running_job(db_session, job_type=SyncJobType.messages)

    assert request_cancel(db_session, "sess-1").id == job.id
    finished = orchestrator.run(job.id)

    assert finished.status == SyncJobStatus.failed
    assert finished.error == "cancelled"
    assert chatwoot.count("create_message") == 0


def test_cancel_without_running_job(db_session):
    assert request_cancel(db_session, "sess-1") is None


def test_disabled_half_is_rejected(db_session, chatwoot_config, orchestrator):
    chatwoot_config.sync_messages_enabled = False
    db_session.commit()

    with pytest.raises(ConfigValidationError):
        orchestrator.start("sess-1", SyncJobType.messages, dispatch=False)


def test_all_runs_only_enabled_halves(db_session, chatwoot, chatwoot_config, orchestrator):
    chatwoot_config.sync_messages_enabled = False
    db_session.commit()
    _contact(db_session, ALICE, "Alice")
    _message(db_session, "A1", ALICE, "one", datetime.now(UTC) - timedelta(hours=1))

    job = orchestrator.start("sess-1", SyncJobType.all, dispatch=False)

    assert job.total == 1
    assert chatwoot.count("create_message") == 0


def test_disabled_integration_cannot_sync(db_session, chatwoot_config, orchestrator):
    chatwoot_config.enabled = False
    db_session.commit()

    with pytest.raises(ConfigValidationError):
        orchestrator.start("sess-1", SyncJobType.all, dispatch=False)


def test_retryable_error_fails_job(db_session, chatwoot, orchestrator):
    _message(db_session, "A1", ALICE, "one", datetime.now(UTC) - timedelta(hours=1))
    chatwoot.fail("create_message", ChatwootError("Chatwoot API error: 503", status_code=503))

    job = orchestrator.start("sess-1", SyncJobType.messages, dispatch=False)

    assert job.status == SyncJobStatus.failed
    assert "503" in job.error
    assert db_session.query(SyncFailure).one().kind == "messages"
    assert db_session.query(MessageEchoTag).count() == 0


def test_rejected_message_is_counted_and_job_continues(db_session, chatwoot, orchestrator):
    base = datetime.now(UTC) - timedelta(hours=1)
    _message(db_session, "A1", ALICE, "one", base)
    _message(db_session, "A2", ALICE, "two", base + timedelta(minutes=1))
    chatwoot.fail("create_message", ChatwootError("Chatwoot API error: 422", status_code=422))

    job = orchestrator.start("sess-1", SyncJobType.messages, dispatch=False)

    assert job.status == SyncJobStatus.completed
    assert job.stats == {"imported": 1, "skipped": 0, "errors": 1}



def test_unresolvable_chat_counts_only_unprocessed_rows(db_session, chatwoot, orchestrator):
    base = datetime.now(UTC) - timedelta(hours=1)
    for index in range(3):
        _message(db_session, f"M{index}", ALICE, f"text {index}", base + timedelta(minutes=index))
    for index in range(2):
        db_session.add(
            MessageMapping(
                session_id="sess-1",
                whatsapp_message_id=f"M{index}",
                whatsapp_jid=ALICE,
                support_message_id=900 + index,
                support_conversation_id=800,
            )
        )
    db_session.commit()
    chatwoot.fail("create_contact", ChatwootError("Chatwoot API error: 422", status_code=422), times=2)

    job = orchestrator.start("sess-1", SyncJobType.messages, dispatch=False)

    assert job.total == 3
    assert job.progress == 3
    assert job.stats == {"imported": 0, "skipped": 2, "errors": 1}
    failure = db_session.query(SyncFailure).one()
    assert failure.whatsapp_jid == ALICE
    assert failure.whatsapp_message_id == "M2"
    assert failure.kind == "messages"
    assert chatwoot.messages == {}

def test_resolve_all_conversations(db_session, chatwoot, orchestrator):
    contact = chatwoot.add_contact("Alice", identifier=ALICE)
    for index in range(5):
        status = "resolved" if index >= 3 else "open"
        conversation = chatwoot.add_conversation(contact["id"], status=status)
        db_session.add(
            ConversationMapping(
                session_id="sess-1",
                whatsapp_jid=f"55119876543{index:02d}@s.whatsapp.net",
                support_conversation_id=conversation["id"],
                status=ConversationStatus(status),
            )
        )
    db_session.commit()

    assert orchestrator.resolve_all_conversations("sess-1") == 3
    assert chatwoot.count("toggle_status") == 3
    assert all(c["status"] == "resolved" for c in chatwoot.conversations.values())
    assert orchestrator.resolve_all_conversations("sess-1") == 0


def test_resolve_all_marks_missing_conversations(db_session, chatwoot, orchestrator):
    db_session.add(ConversationMapping(session_id="sess-1", whatsapp_jid=ALICE, support_conversation_id=404))
    db_session.commit()

    assert orchestrator.resolve_all_conversations("sess-1") == 0
    assert db_session.query(ConversationMapping).one().status == ConversationStatus.resolved


def test_resolve_all_reports_chatwoot_errors(db_session, chatwoot, orchestrator):
    db_session.add(ConversationMapping(session_id="sess-1", whatsapp_jid=ALICE, support_conversation_id=300))
    db_session.commit()
    chatwoot.fail("toggle_status", ChatwootError("Chatwoot API error: 500", status_code=500))

    with pytest.raises(DeliveryError) as exc_info:
        orchestrator.resolve_all_conversations("sess-1")

    assert exc_info.value.code == "resolve_all_failed"


def test_reset_clears_mappings(db_session, chatwoot_config):
    for session_id in ("sess-1", "other"):
        db_session.add(
            ContactMapping(session_id=session_id, whatsapp_jid=ALICE, support_contact_id=41, support_identifier=ALICE)
        )
    db_session.add(ConversationMapping(session_id="sess-1", whatsapp_jid=ALICE, support_conversation_id=300))
    db_session.commit()

    counts = reset_integration(db_session, "sess-1")

    assert counts == {"message_mappings": 0, "echo_tags": 0, "conversation_mappings": 1, "contact_mappings": 1}
    assert db_session.query(ContactMapping).one().session_id == "other"


def test_reset_refused_while_running(db_session, chatwoot_config):
    _running_job(db_session)

    with pytest.raises(ConflictError):
        reset_integration(db_session, "sess-1")


def test_status_reports_idle_then_latest(db_session, orchestrator):
    assert orchestrator.status("sess-1").status == SyncJobStatus.idle

    orchestrator.start("sess-1", SyncJobType.all, dispatch=False)

    assert orchestrator.status("sess-1").status == SyncJobStatus.completed
