"""Add per-chat lock rows and the last known Chatwoot contact name.

Revision ID: d8e2f3a4b5c6
Revises: c7d1e2f3a4b5
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "d8e2f3a4b5c6"
down_revision = "c7d1e2f3a4b5"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "chatwoot_chat_locks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=100), nullable=False),
        sa.Column("whatsapp_jid", sa.String(length=255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("session_id", "whatsapp_jid", name="uq_chatwoot_chat_locks_jid"),
    )
    op.add_column("chatwoot_contact_mappings", sa.Column("support_name", sa.String(length=255), nullable=True))


def downgrade() -> None:
    op.drop_column("chatwoot_contact_mappings", "support_name")
    op.drop_table("chatwoot_chat_locks")
