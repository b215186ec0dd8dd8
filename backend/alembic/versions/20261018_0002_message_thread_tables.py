"""Create message thread, participant, message and read receipt tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "message_threads",
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("pair_key", sa.String(length=300), nullable=False),
        sa.Column("property_id", sa.String(length=128), nullable=True),
        sa.Column("context_type", sa.String(length=16), nullable=False, server_default="general"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("active_key", sa.String(length=448), nullable=True),
        sa.Column("last_message_content", sa.Text(), nullable=True),
        sa.Column("last_message_sender_id", sa.String(length=128), nullable=True),
        sa.Column("last_message_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_type", sa.String(length=16), nullable=True),
        sa.Column("last_message_sequence", sa.BigInteger(), nullable=True),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("thread_id"),
        sa.UniqueConstraint("active_key"),
    )
    op.create_index("ix_message_threads_pair_key", "message_threads", ["pair_key"], unique=False)
    op.create_index("ix_message_threads_property_id", "message_threads", ["property_id"], unique=False)
    op.create_index("ix_message_threads_status", "message_threads", ["status"], unique=False)
    op.create_index("ix_message_threads_is_deleted", "message_threads", ["is_deleted"], unique=False)
    op.create_index("ix_message_threads_updated_at", "message_threads", ["updated_at"], unique=False)

    op.create_table(
        "thread_participants",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_read_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["thread_id"], ["message_threads.thread_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("thread_id", "user_id", name="uq_thread_participants_thread_user"),
    )
    op.create_index("ix_thread_participants_thread_id", "thread_participants", ["thread_id"], unique=False)
    op.create_index("ix_thread_participants_user_id", "thread_participants", ["user_id"], unique=False)

    op.create_table(
        "thread_messages",
        sa.Column("sequence", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("sender_id", sa.String(length=128), nullable=False),
        sa.Column("receiver_id", sa.String(length=128), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("message_type", sa.String(length=16), nullable=False, server_default="text"),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["message_threads.thread_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("sequence"),
        sa.UniqueConstraint("message_id"),
    )
    op.create_index("ix_thread_messages_thread_id", "thread_messages", ["thread_id"], unique=False)
    op.create_index("ix_thread_messages_sender_id", "thread_messages", ["sender_id"], unique=False)

    op.create_table(
        "message_read_receipts",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["message_id"], ["thread_messages.message_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("message_id", "user_id", name="uq_message_read_receipts_message_user"),
    )
    op.create_index("ix_message_read_receipts_message_id", "message_read_receipts", ["message_id"], unique=False)
    op.create_index("ix_message_read_receipts_user_id", "message_read_receipts", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_message_read_receipts_user_id", table_name="message_read_receipts")
    op.drop_index("ix_message_read_receipts_message_id", table_name="message_read_receipts")
    op.drop_table("message_read_receipts")
    op.drop_index("ix_thread_messages_sender_id", table_name="thread_messages")
    op.drop_index("ix_thread_messages_thread_id", table_name="thread_messages")
    op.drop_table("thread_messages")
    op.drop_index("ix_thread_participants_user_id", table_name="thread_participants")
    op.drop_index("ix_thread_participants_thread_id", table_name="thread_participants")
    op.drop_table("thread_participants")
    op.drop_index("ix_message_threads_updated_at", table_name="message_threads")
    op.drop_index("ix_message_threads_is_deleted", table_name="message_threads")
    op.drop_index("ix_message_threads_status", table_name="message_threads")
    op.drop_index("ix_message_threads_property_id", table_name="message_threads")
    op.drop_index("ix_message_threads_pair_key", table_name="message_threads")
    op.drop_table("message_threads")
