"""Social core schema - users, friend requests, friendships, chats, messages

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users (profile directory)
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("avatar_url", sa.String(1024), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_display_name", "users", ["display_name"])

    # Friend requests
    op.create_table(
        "friend_requests",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("sender_id", sa.Uuid(), nullable=False),
        sa.Column("receiver_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("responded_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_friend_requests"),
        sa.ForeignKeyConstraint(["sender_id"], ["users.id"], name="fk_friend_requests_sender_id_users", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["receiver_id"], ["users.id"], name="fk_friend_requests_receiver_id_users", ondelete="CASCADE"),
        sa.CheckConstraint("sender_id <> receiver_id", name="ck_friend_requests_distinct_users"),
    )
    op.create_index("ix_friend_requests_sender_id", "friend_requests", ["sender_id"])
    op.create_index("ix_friend_requests_receiver_id", "friend_requests", ["receiver_id"])
    op.create_index(
        "uq_friend_requests_pending_pair",
        "friend_requests",
        ["sender_id", "receiver_id"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    # Friendships
    op.create_table(
        "friendships",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id_1", sa.Uuid(), nullable=False),
        sa.Column("user_id_2", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_friendships"),
        sa.ForeignKeyConstraint(["user_id_1"], ["users.id"], name="fk_friendships_user_id_1_users", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id_2"], ["users.id"], name="fk_friendships_user_id_2_users", ondelete="CASCADE"),
        sa.UniqueConstraint("user_id_1", "user_id_2", name="uq_friendships_pair"),
        sa.CheckConstraint("user_id_1 < user_id_2", name="ck_friendships_canonical_order"),
    )
    op.create_index("ix_friendships_user_id_1", "friendships", ["user_id_1"])
    op.create_index("ix_friendships_user_id_2", "friendships", ["user_id_2"])

    # Chats
    op.create_table(
        "chats",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("participant1_id", sa.Uuid(), nullable=False),
        sa.Column("participant2_id", sa.Uuid(), nullable=False),
        sa.Column("pair_key", sa.String(73), nullable=False),
        sa.Column("last_message", sa.Text(), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unread_count_1", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unread_count_2", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_chats"),
        sa.ForeignKeyConstraint(["participant1_id"], ["users.id"], name="fk_chats_participant1_id_users", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["participant2_id"], ["users.id"], name="fk_chats_participant2_id_users", ondelete="CASCADE"),
        sa.UniqueConstraint("pair_key", name="uq_chats_pair_key"),
        sa.CheckConstraint("participant1_id <> participant2_id", name="ck_chats_distinct_participants"),
        sa.CheckConstraint("unread_count_1 >= 0", name="ck_chats_unread_count_1_non_negative"),
        sa.CheckConstraint("unread_count_2 >= 0", name="ck_chats_unread_count_2_non_negative"),
    )
    op.create_index("ix_chats_participant1_id", "chats", ["participant1_id"])
    op.create_index("ix_chats_participant2_id", "chats", ["participant2_id"])

    # Messages
    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("chat_id", sa.Uuid(), nullable=False),
        sa.Column("sender_id", sa.Uuid(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id", name="pk_messages"),
        sa.ForeignKeyConstraint(["chat_id"], ["chats.id"], name="fk_messages_chat_id_chats", ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sender_id"], ["users.id"], name="fk_messages_sender_id_users", ondelete="CASCADE"),
        sa.UniqueConstraint("chat_id", "sequence", name="uq_messages_chat_sequence"),
    )
    op.create_index("ix_messages_chat_id", "messages", ["chat_id"])


def downgrade() -> None:
    op.drop_table("messages")
    op.drop_table("chats")
    op.drop_table("friendships")
    op.drop_table("friend_requests")
    op.drop_table("users")
