"""create_messaging_tables

Revision ID: 3b1e7c2a9d40
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b1e7c2a9d40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create directory tables, property conversations and messages."""

    op.create_table(
        "agents",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index(op.f("ix_agents_status"), "agents", ["status"], unique=False)
    op.create_index(op.f("ix_agents_created_at"), "agents", ["created_at"], unique=False)

    op.create_table(
        "clients",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("first_name", sa.String(length=120), nullable=False),
        sa.Column("last_name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["agent_id"], ["agents.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_clients_agent_id"), "clients", ["agent_id"], unique=False)
    op.create_index(op.f("ix_clients_email"), "clients", ["email"], unique=False)
    op.create_index(op.f("ix_clients_is_active"), "clients", ["is_active"], unique=False)

    op.create_table(
        "timelines",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("share_token", sa.String(length=64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["agent_id"], ["agents.id"]),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("share_token"),
    )
    op.create_index(op.f("ix_timelines_agent_id"), "timelines", ["agent_id"], unique=False)
    op.create_index(op.f("ix_timelines_client_id"), "timelines", ["client_id"], unique=False)

    op.create_table(
        "properties",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("timeline_id", sa.String(), nullable=True),
        sa.Column("address", sa.String(length=255), nullable=False),
        sa.Column("price", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["timeline_id"], ["timelines.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_properties_timeline_id"), "properties", ["timeline_id"], unique=False)

    op.create_table(
        "property_conversations",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("property_id", sa.String(), nullable=False),
        sa.Column("timeline_id", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=False),
        sa.Column("client_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("last_message_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["agent_id"], ["agents.id"]),
        sa.ForeignKeyConstraint(["client_id"], ["clients.id"]),
        sa.ForeignKeyConstraint(["property_id"], ["properties.id"]),
        sa.ForeignKeyConstraint(["timeline_id"], ["timelines.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("property_id", name="uq_property_conversations_property"),
    )
    op.create_index(
        op.f("ix_property_conversations_timeline_id"),
        "property_conversations",
        ["timeline_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_property_conversations_status"),
        "property_conversations",
        ["status"],
        unique=False,
    )
    op.create_index(
        "ix_property_conversations_agent_status",
        "property_conversations",
        ["agent_id", "status"],
        unique=False,
    )
    op.create_index(
        "ix_property_conversations_client_status",
        "property_conversations",
        ["client_id", "status"],
        unique=False,
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("conversation_id", sa.String(), nullable=False),
        sa.Column("sender_id", sa.String(length=64), nullable=False),
        sa.Column("sender_type", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("message_type", sa.String(length=16), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["conversation_id"], ["property_conversations.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_messages_sender_id"), "messages", ["sender_id"], unique=False)
    op.create_index(
        "ix_messages_conversation_created",
        "messages",
        ["conversation_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_messages_conversation_unread",
        "messages",
        ["conversation_id", "sender_type", "is_read"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_messages_conversation_unread", table_name="messages")
    op.drop_index("ix_messages_conversation_created", table_name="messages")
    op.drop_index(op.f("ix_messages_sender_id"), table_name="messages")
    op.drop_table("messages")

    op.drop_index(
        "ix_property_conversations_client_status", table_name="property_conversations"
    )
    op.drop_index("ix_property_conversations_agent_status", table_name="property_conversations")
    op.drop_index(op.f("ix_property_conversations_status"), table_name="property_conversations")
    op.drop_index(
        op.f("ix_property_conversations_timeline_id"), table_name="property_conversations"
    )
    op.drop_table("property_conversations")

    op.drop_index(op.f("ix_properties_timeline_id"), table_name="properties")
    op.drop_table("properties")

    op.drop_index(op.f("ix_timelines_client_id"), table_name="timelines")
    op.drop_index(op.f("ix_timelines_agent_id"), table_name="timelines")
    op.drop_table("timelines")

    op.drop_index(op.f("ix_clients_is_active"), table_name="clients")
    op.drop_index(op.f("ix_clients_email"), table_name="clients")
    op.drop_index(op.f("ix_clients_agent_id"), table_name="clients")
    op.drop_table("clients")

    op.drop_index(op.f("ix_agents_created_at"), table_name="agents")
    op.drop_index(op.f("ix_agents_status"), table_name="agents")
    op.drop_table("agents")
