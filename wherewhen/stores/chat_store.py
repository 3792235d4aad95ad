import uuid
from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from wherewhen.errors import ErrorCode, fail
from wherewhen.models.chat import Chat, chat_pair_key
from wherewhen.models.message import Message
from wherewhen.schemas.chat import ChatRead, MessageRead


class ChatStore:
    """Chats, their message logs and the per-participant summary fields.

    Every mutating method locks the chat row first, so sends and reads on the
    same chat are serialized at the database as well as in-process.
    """

    async def get_by_pair(
        self, db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> ChatRead | None:
        result = await db.execute(
            select(Chat).where(Chat.pair_key == chat_pair_key(user_a, user_b))
        )
        chat = result.scalar_one_or_none()
        if chat is None:
            return None
        return ChatRead.model_validate(chat)

    async def create(
        self, db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> ChatRead:
        chat = Chat(
            participant1_id=user_a,
            participant2_id=user_b,
            pair_key=chat_pair_key(user_a, user_b),
            last_message=None,
            last_message_at=None,
            unread_count_1=0,
            unread_count_2=0,
            message_seq=0,
        )
        db.add(chat)
        try:
            await db.flush()
        except IntegrityError:
            raise fail(
                ErrorCode.ALREADY_EXISTS,
                "Chat already exists for this pair",
                user_a=user_a,
                user_b=user_b,
            ) from None
        return ChatRead.model_validate(chat)

    async def get_chat(self, db: AsyncSession, chat_id: uuid.UUID) -> ChatRead | None:
        chat = await db.get(Chat, chat_id)
        if chat is None:
            return None
        return ChatRead.model_validate(chat)

    async def get_chats_for_user(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> list[ChatRead]:
        result = await db.execute(
            select(Chat).where(
                or_(
                    Chat.participant1_id == user_id,
                    Chat.participant2_id == user_id,
                )
            )
        )
        return [ChatRead.model_validate(c) for c in result.scalars().all()]

    async def get_message(
        self, db: AsyncSession, message_id: uuid.UUID
    ) -> MessageRead | None:
        message = await db.get(Message, message_id)
        if message is None:
            return None
        return MessageRead.model_validate(message)

    async def get_messages(
        self, db: AsyncSession, chat_id: uuid.UUID
    ) -> list[MessageRead]:
        result = await db.execute(
            select(Message)
            .where(Message.chat_id == chat_id)
            .order_by(Message.sequence.asc())
        )
        return [MessageRead.model_validate(m) for m in result.scalars().all()]

    async def append_message(
        self,
        db: AsyncSession,
        chat_id: uuid.UUID,
        sender_id: uuid.UUID,
        content: str,
        timestamp: datetime,
    ) -> tuple[ChatRead, MessageRead]:
        """Insert a message and apply its summary to the chat in one flush."""
        chat = await self._lock_chat(db, chat_id)
        if sender_id == chat.participant1_id:
            chat.unread_count_2 += 1
        elif sender_id == chat.participant2_id:
            chat.unread_count_1 += 1
        else:
            raise fail(
                ErrorCode.NOT_CHAT_PARTICIPANT,
                "Sender is not a participant of this chat",
                chat_id=chat_id,
                user_id=sender_id,
            )

        chat.message_seq += 1
        message = Message(
            chat_id=chat_id,
            sender_id=sender_id,
            content=content,
            timestamp=timestamp,
            sequence=chat.message_seq,
            is_read=False,
        )
        db.add(message)
        chat.last_message = content
        chat.last_message_at = timestamp
        await db.flush()
        return ChatRead.model_validate(chat), MessageRead.model_validate(message)

    async def mark_all_as_read(
        self, db: AsyncSession, chat_id: uuid.UUID, user_id: uuid.UUID
    ) -> tuple[ChatRead, int]:
        """Mark messages addressed to *user_id* as read and zero their counter.

        Only messages that existed when the chat row was locked are touched.
        """
        chat = await self._lock_chat(db, chat_id)
        result = await db.execute(
            update(Message)
            .where(
                Message.chat_id == chat_id,
                Message.sender_id != user_id,
                Message.is_read == False,  # noqa: E712
                Message.sequence <= chat.message_seq,
            )
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        if user_id == chat.participant1_id:
            chat.unread_count_1 = 0
        else:
            chat.unread_count_2 = 0
        await db.flush()
        return ChatRead.model_validate(chat), result.rowcount

    async def mark_message_as_read(
        self, db: AsyncSession, message_id: uuid.UUID
    ) -> tuple[ChatRead, MessageRead, bool]:
        """Mark one message read; returns whether anything changed."""
        message = await db.get(Message, message_id)
        if message is None:
            raise fail(
                ErrorCode.MESSAGE_NOT_FOUND,
                "Message not found",
                message_id=message_id,
            )
        chat = await self._lock_chat(db, message.chat_id)
        await db.refresh(message)
        if message.is_read:
            return ChatRead.model_validate(chat), MessageRead.model_validate(message), False

        message.is_read = True
        if message.sender_id == chat.participant1_id:
            chat.unread_count_2 = max(0, chat.unread_count_2 - 1)
        else:
            chat.unread_count_1 = max(0, chat.unread_count_1 - 1)
        await db.flush()
        return ChatRead.model_validate(chat), MessageRead.model_validate(message), True

    async def _lock_chat(self, db: AsyncSession, chat_id: uuid.UUID) -> Chat:
        result = await db.execute(
            select(Chat)
            .where(Chat.id == chat_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        chat = result.scalar_one_or_none()
        if chat is None:
            raise fail(ErrorCode.CHAT_NOT_FOUND, "Chat not found", chat_id=chat_id)
        return chat
