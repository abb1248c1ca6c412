"""init support desk schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    conversation_status = sa.Enum(
        "pending", "active", "slot", "closed", name="conversation_status"
    )
    sender_kind = sa.Enum("visitor", "agent", "system", name="sender_kind")
    message_kind = sa.Enum("text", "file", "event", name="message_kind")

    bind = op.get_bind()
    conversation_status.create(bind, checkfirst=True)
    sender_kind.create(bind, checkfirst=True)
    message_kind.create(bind, checkfirst=True)

    op.execute(sa.schema.CreateSequence(sa.Sequence("conversation_id_seq")))

    op.create_table(
        "visitor_sessions",
        sa.Column("id", sa.String(length=120), nullable=False),
        sa.Column("display_name", sa.String(length=120), nullable=False),
        sa.Column("locale", sa.String(length=16), nullable=False, server_default=sa.text("'en'")),
        sa.Column(
            "last_seen_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "conversations",
        sa.Column(
            "id",
            sa.BigInteger(),
            server_default=sa.text("nextval('conversation_id_seq')"),
            nullable=False,
        ),
        sa.Column("session_id", sa.String(length=120), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "active",
                "slot",
                "closed",
                name="conversation_status",
                create_type=False,
            ),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("assigned_agent_id", sa.String(length=120), nullable=True),
        sa.Column("slot_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["session_id"], ["visitor_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_conversations_session_id", "conversations", ["session_id"], unique=False)
    op.create_index(
        "ix_conversations_assigned_agent_id",
        "conversations",
        ["assigned_agent_id"],
        unique=False,
    )
    op.create_index(
        "uq_conversations_slot_time",
        "conversations",
        ["slot_time"],
        unique=True,
        postgresql_where=sa.text("status = 'slot'"),
    )

    op.create_table(
        "messages",
        sa.Column("conversation_id", sa.BigInteger(), nullable=False),
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "sender_kind",
            sa.Enum("visitor", "agent", "system", name="sender_kind", create_type=False),
            nullable=False,
        ),
        sa.Column("sender_id", sa.String(length=120), nullable=True),
        sa.Column(
            "kind",
            sa.Enum("text", "file", "event", name="message_kind", create_type=False),
            nullable=False,
        ),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("file_json", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["conversation_id"], ["conversations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("conversation_id", "id"),
    )


def downgrade() -> None:
    op.drop_table("messages")
    op.drop_index("uq_conversations_slot_time", table_name="conversations")
    op.drop_index("ix_conversations_assigned_agent_id", table_name="conversations")
    op.drop_index("ix_conversations_session_id", table_name="conversations")
    op.drop_table("conversations")
    op.drop_table("visitor_sessions")
    op.execute(sa.schema.DropSequence(sa.Sequence("conversation_id_seq")))

    bind = op.get_bind()
    sa.Enum(name="message_kind").drop(bind, checkfirst=True)
    sa.Enum(name="sender_kind").drop(bind, checkfirst=True)
    sa.Enum(name="conversation_status").drop(bind, checkfirst=True)
