"""One-to-one chats and their message logs.

A chat row carries a per-participant summary (last message, unread
counters) that must agree with its message log. Every write to a chat holds
the chat's lock and the chat row lock for the whole transaction, so the
message insert and the summary update commit together.
"""
import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wherewhen.database import on_commit, transaction
from wherewhen.errors import DomainFailure, ErrorCode, fail, returns_result
from wherewhen.models.chat import chat_pair_key
from wherewhen.schemas.chat import ChatRead, ChatWithUser, MessageRead
from wherewhen.schemas.common import require_identifier
from wherewhen.services.change_feed import (
    ChangeFeed,
    Subscription,
    chat_messages_topic,
    user_chats_topic,
)
from wherewhen.services.locks import KeyedLock
from wherewhen.stores.chat_store import ChatStore
from wherewhen.stores.user_directory import UserDirectory

logger = logging.getLogger(__name__)


class ChatService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chats: ChatStore,
        users: UserDirectory,
        feed: ChangeFeed,
        locks: KeyedLock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._chats = chats
        self._users = users
        self._feed = feed
        self._locks = locks or KeyedLock()

    @returns_result
    async def create_or_get_chat(
        self, user_id: uuid.UUID | str, other_user_id: uuid.UUID | str
    ) -> ChatRead:
        """Return the chat between two users, creating it on first use.

        Concurrent callers for the same pair all receive the same chat.
        """
        user_id = require_identifier(user_id, "user_id")
        other_user_id = require_identifier(other_user_id, "other_user_id")
        if user_id == other_user_id:
            raise fail(ErrorCode.SELF_CHAT, "Cannot start a chat with yourself", user_id=user_id)

        try:
            return await self._create_or_get(user_id, other_user_id)
        except DomainFailure as exc:
            if exc.error.code != ErrorCode.ALREADY_EXISTS:
                raise

        # Lost an insert race against another process; the winner's row is committed
        async with self._session_factory() as db:
            chat = await self._chats.get_by_pair(db, user_id, other_user_id)
        if chat is None:
            raise fail(
                ErrorCode.CHAT_NOT_FOUND,
                "Chat not found",
                user_a=user_id,
                user_b=other_user_id,
            )
        return chat

    @returns_result
    async def send_message(
        self, chat_id: uuid.UUID | str, sender_id: uuid.UUID | str, content: str
    ) -> MessageRead:
        if not content or not content.strip():
            raise fail(ErrorCode.EMPTY_CONTENT, "Message content cannot be empty")
        chat_id = require_identifier(chat_id, "chat_id")
        sender_id = require_identifier(sender_id, "sender_id")

        async with self._locks.hold(("chat", chat_id)):
            async with transaction(self._session_factory) as db:
                await self._get_participant_chat(db, chat_id, sender_id)
                chat, message = await self._chats.append_message(
                    db, chat_id, sender_id, content, datetime.now(timezone.utc)
                )
                on_commit(db, self._feed.publish, *_chat_topics(chat))

        logger.debug("Message %s appended to chat %s", message.id, chat_id)
        return message

    @returns_result
    async def mark_all_as_read(
        self, chat_id: uuid.UUID | str, user_id: uuid.UUID | str
    ) -> int:
        """Mark every message addressed to *user_id* as read; returns how many changed."""
        chat_id = require_identifier(chat_id, "chat_id")
        user_id = require_identifier(user_id, "user_id")

        async with self._locks.hold(("chat", chat_id)):
            async with transaction(self._session_factory) as db:
                await self._get_participant_chat(db, chat_id, user_id)
                chat, count = await self._chats.mark_all_as_read(db, chat_id, user_id)
                on_commit(db, self._feed.publish, *_chat_topics(chat))
        return count

    @returns_result
    async def mark_message_as_read(
        self, message_id: uuid.UUID | str, user_id: uuid.UUID | str
    ) -> MessageRead:
        """Mark a single message as read. Only its recipient may do this."""
        message_id = require_identifier(message_id, "message_id")
        user_id = require_identifier(user_id, "user_id")

        async with self._session_factory() as db:
            message = await self._chats.get_message(db, message_id)
        if message is None:
            raise fail(ErrorCode.MESSAGE_NOT_FOUND, "Message not found", message_id=message_id)

        async with self._locks.hold(("chat", message.chat_id)):
            async with transaction(self._session_factory) as db:
                await self._get_participant_chat(db, message.chat_id, user_id)
                if message.sender_id == user_id:
                    raise fail(
                        ErrorCode.NOT_CHAT_PARTICIPANT,
                        "Only the recipient can mark a message as read",
                        message_id=message_id,
                        user_id=user_id,
                    )
                chat, message, changed = await self._chats.mark_message_as_read(db, message_id)
                if changed:
                    on_commit(db, self._feed.publish, *_chat_topics(chat))
        return message

    @returns_result
    async def get_chat(
        self, chat_id: uuid.UUID | str, user_id: uuid.UUID | str
    ) -> ChatRead:
        chat_id = require_identifier(chat_id, "chat_id")
        user_id = require_identifier(user_id, "user_id")
        async with self._session_factory() as db:
            return await self._get_participant_chat(db, chat_id, user_id)

    @returns_result
    async def get_messages(
        self, chat_id: uuid.UUID | str, user_id: uuid.UUID | str
    ) -> list[MessageRead]:
        """Messages in the chat, oldest first."""
        chat_id = require_identifier(chat_id, "chat_id")
        user_id = require_identifier(user_id, "user_id")
        return await self._load_messages(chat_id, user_id)

    @returns_result
    async def get_user_chats(self, user_id: uuid.UUID | str) -> list[ChatWithUser]:
        """Chats of *user_id*, most recent activity first, chats without messages last."""
        return await self._load_user_chats(require_identifier(user_id, "user_id"))

    @returns_result
    async def observe_user_chats(
        self, user_id: uuid.UUID | str
    ) -> Subscription[list[ChatWithUser]]:
        user_id = require_identifier(user_id, "user_id")
        return self._feed.subscribe(
            [user_chats_topic(user_id)], lambda: self._load_user_chats(user_id)
        )

    @returns_result
    async def observe_messages(
        self, chat_id: uuid.UUID | str, user_id: uuid.UUID | str
    ) -> Subscription[list[MessageRead]]:
        chat_id = require_identifier(chat_id, "chat_id")
        user_id = require_identifier(user_id, "user_id")
        async with self._session_factory() as db:
            await self._get_participant_chat(db, chat_id, user_id)
        return self._feed.subscribe(
            [chat_messages_topic(chat_id)], lambda: self._load_messages(chat_id, user_id)
        )

    async def _create_or_get(self, user_a: uuid.UUID, user_b: uuid.UUID) -> ChatRead:
        async with self._locks.hold(("chat-pair", chat_pair_key(user_a, user_b))):
            async with transaction(self._session_factory) as db:
                for user_id in (user_a, user_b):
                    if not await self._users.exists(db, user_id):
                        raise fail(ErrorCode.USER_NOT_FOUND, "User not found", user_id=user_id)

                existing = await self._chats.get_by_pair(db, user_a, user_b)
                if existing is not None:
                    return existing

                chat = await self._chats.create(db, user_a, user_b)
                on_commit(
                    db, self._feed.publish, user_chats_topic(user_a), user_chats_topic(user_b)
                )

        logger.info("Chat %s created between %s and %s", chat.id, user_a, user_b)
        return chat

    async def _get_participant_chat(
        self, db: AsyncSession, chat_id: uuid.UUID, user_id: uuid.UUID
    ) -> ChatRead:
        chat = await self._chats.get_chat(db, chat_id)
        if chat is None:
            raise fail(ErrorCode.CHAT_NOT_FOUND, "Chat not found", chat_id=chat_id)
        if not chat.is_participant(user_id):
            raise fail(
                ErrorCode.NOT_CHAT_PARTICIPANT,
                "User is not a participant of this chat",
                chat_id=chat_id,
                user_id=user_id,
            )
        return chat

    async def _load_messages(
        self, chat_id: uuid.UUID, user_id: uuid.UUID
    ) -> list[MessageRead]:
        async with self._session_factory() as db:
            await self._get_participant_chat(db, chat_id, user_id)
            return await self._chats.get_messages(db, chat_id)

    async def _load_user_chats(self, user_id: uuid.UUID) -> list[ChatWithUser]:
        async with self._session_factory() as db:
            chats = await self._chats.get_chats_for_user(db, user_id)
            entries = []
            for chat in chats:
                profile = await self._users.get_public_user(db, chat.other_participant(user_id))
                if profile is None:
                    continue
                entries.append(
                    ChatWithUser(
                        chat=chat,
                        other_user=profile,
                        last_message=chat.last_message,
                        last_message_at=chat.last_message_at,
                        unread_count=chat.unread_count_for(user_id),
                    )
                )
        return _by_recency(entries)


def _chat_topics(chat: ChatRead) -> tuple[str, ...]:
    return (
        chat_messages_topic(chat.id),
        user_chats_topic(chat.participant1_id),
        user_chats_topic(chat.participant2_id),
    )


def _by_recency(entries: list[ChatWithUser]) -> list[ChatWithUser]:
    active = [e for e in entries if e.last_message_at is not None]
    idle = [e for e in entries if e.last_message_at is None]
    active.sort(key=lambda e: _as_utc(e.last_message_at), reverse=True)
    return active + idle


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
