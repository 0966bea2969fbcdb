"""Add WhatsApp store and Chatwoot sync tables.

Revision ID: c7d1e2f3a4b5
Revises:
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "c7d1e2f3a4b5"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    conversationstatus = sa.Enum("open", "pending", "resolved", name="conversationstatus")
    syncjobtype = sa.Enum("contacts", "messages", "all", name="syncjobtype")
    syncjobstatus = sa.Enum("idle", "running", "completed", "failed", name="syncjobstatus")
    failuredirection = sa.Enum("whatsapp_inbound", "chatwoot_webhook", "bulk_sync", name="failuredirection")

    op.create_table(
        "whatsapp_contacts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("jid", sa.String(length=255), nullable=False),
        sa.Column("push_name", sa.String(length=255), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("business_name", sa.String(length=255), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("session_id", "jid", name="uq_whatsapp_contacts_session_jid"),
    )
    op.create_index("ix_whatsapp_contacts_session_updated", "whatsapp_contacts", ["session_id", "updated_at"])

    op.create_table(
        "whatsapp_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("message_id", sa.String(length=255), nullable=False),
        sa.Column("remote_jid", sa.String(length=255), nullable=False),
        sa.Column("from_me", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("participant", sa.String(length=255), nullable=True),
        sa.Column("push_name", sa.String(length=255), nullable=True),
        sa.Column("message_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("content", sa.JSON(), nullable=True),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.UniqueConstraint("session_id", "message_id", name="uq_whatsapp_messages_session_message"),
    )
    op.create_index(
        "ix_whatsapp_messages_session_chat_ts",
        "whatsapp_messages",
        ["session_id", "remote_jid", "message_timestamp"],
    )

    op.create_table(
        "chatwoot_configs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=100), nullable=False, unique=True),
        sa.Column("base_url", sa.String(length=500), nullable=True),
        sa.Column("api_token", sa.Text(), nullable=True),
        sa.Column("account_id", sa.Integer(), nullable=True),
        sa.Column("inbox_id", sa.Integer(), nullable=True),
        sa.Column("inbox_name", sa.String(length=160), nullable=True),
        sa.Column("auto_create_inbox", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sign_with_agent_name", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sign_separator", sa.String(length=20), nullable=False, server_default="\n"),
        sa.Column("auto_reopen", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("start_conversations_pending", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("merge_local_phone_formats", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sync_contacts_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sync_messages_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sync_window_days", sa.Integer(), nullable=True),
        sa.Column("ignored_chat_ids", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "chatwoot_contact_mappings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("whatsapp_jid", sa.String(length=255), nullable=False),
        sa.Column("support_contact_id", sa.Integer(), nullable=False),
        sa.Column("support_identifier", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("session_id", "whatsapp_jid", name="uq_chatwoot_contact_mappings_jid"),
        sa.UniqueConstraint("session_id", "support_contact_id", name="uq_chatwoot_contact_mappings_contact"),
    )

    op.create_table(
        "chatwoot_conversation_mappings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("whatsapp_jid", sa.String(length=255), nullable=False),
        sa.Column("support_conversation_id", sa.Integer(), nullable=False),
        sa.Column("status", conversationstatus, nullable=False, server_default="open"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("session_id", "whatsapp_jid", name="uq_chatwoot_conversation_mappings_jid"),
    )
    op.create_index(
        "ix_chatwoot_conversation_mappings_conversation",
        "chatwoot_conversation_mappings",
        ["session_id", "support_conversation_id"],
    )

    op.create_table(
        "chatwoot_message_echo_tags",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("support_message_id", sa.Integer(), nullable=True),
        sa.Column("source_whatsapp_message_id", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_chatwoot_echo_tags_support_message",
        "chatwoot_message_echo_tags",
        ["session_id", "support_message_id"],
    )
    op.create_index(
        "ix_chatwoot_echo_tags_source",
        "chatwoot_message_echo_tags",
        ["session_id", "source_whatsapp_message_id"],
    )
    op.create_index("ix_chatwoot_echo_tags_created", "chatwoot_message_echo_tags", ["created_at"])

    op.create_table(
        "chatwoot_message_mappings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("whatsapp_message_id", sa.String(length=255), nullable=False),
        sa.Column("whatsapp_jid", sa.String(length=255), nullable=False),
        sa.Column("support_message_id", sa.Integer(), nullable=False),
        sa.Column("support_conversation_id", sa.Integer(), nullable=False),
        sa.Column("from_me", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("session_id", "whatsapp_message_id", name="uq_chatwoot_message_mappings_wa"),
    )
    op.create_index(
        "ix_chatwoot_message_mappings_support",
        "chatwoot_message_mappings",
        ["session_id", "support_message_id"],
    )

    op.create_table(
        "chatwoot_sync_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("job_type", syncjobtype, nullable=False),
        sa.Column("status", syncjobstatus, nullable=False, server_default="running"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("window_days", sa.Integer(), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("stats", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_chatwoot_sync_jobs_session_status", "chatwoot_sync_jobs", ["session_id", "status"])
    op.create_index(
        "uq_chatwoot_sync_jobs_running",
        "chatwoot_sync_jobs",
        ["session_id"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
    )

    op.create_table(
        "chatwoot_sync_failures",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("direction", failuredirection, nullable=False),
        sa.Column("kind", sa.String(length=60), nullable=True),
        sa.Column("reason", sa.String(length=60), nullable=False),
        sa.Column("whatsapp_jid", sa.String(length=255), nullable=True),
        sa.Column("whatsapp_message_id", sa.String(length=255), nullable=True),
        sa.Column("support_conversation_id", sa.Integer(), nullable=True),
        sa.Column("support_message_id", sa.Integer(), nullable=True),
        sa.Column("raw_payload", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_chatwoot_sync_failures_session_created",
        "chatwoot_sync_failures",
        ["session_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_chatwoot_sync_failures_session_created", table_name="chatwoot_sync_failures")
    op.drop_table("chatwoot_sync_failures")
    op.drop_index("uq_chatwoot_sync_jobs_running", table_name="chatwoot_sync_jobs")
    op.drop_index("ix_chatwoot_sync_jobs_session_status", table_name="chatwoot_sync_jobs")
    op.drop_table("chatwoot_sync_jobs")
    op.drop_index("ix_chatwoot_message_mappings_support", table_name="chatwoot_message_mappings")
    op.drop_table("chatwoot_message_mappings")
    op.drop_index("ix_chatwoot_echo_tags_created", table_name="chatwoot_message_echo_tags")
    op.drop_index("ix_chatwoot_echo_tags_source", table_name="chatwoot_message_echo_tags")
    op.drop_index("ix_chatwoot_echo_tags_support_message", table_name="chatwoot_message_echo_tags")
    op.drop_table("chatwoot_message_echo_tags")
    op.drop_index("ix_chatwoot_conversation_mappings_conversation", table_name="chatwoot_conversation_mappings")
    op.drop_table("chatwoot_conversation_mappings")
    op.drop_table("chatwoot_contact_mappings")
    op.drop_table("chatwoot_configs")
    op.drop_index("ix_whatsapp_messages_session_chat_ts", table_name="whatsapp_messages")
    op.drop_table("whatsapp_messages")
    op.drop_index("ix_whatsapp_contacts_session_updated", table_name="whatsapp_contacts")
    op.drop_table("whatsapp_contacts")

    bind = op.get_bind()
    for enum_name in ("failuredirection", "syncjobstatus", "syncjobtype", "conversationstatus"):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
