"""Redis read-through caches wrapping the stores.

The caches sit strictly outside the consistency logic: every mutating call
goes to the wrapped store and drops the affected keys both immediately and
once the transaction commits. Each key carries a generation counter that
invalidation bumps; a read-through fill is only written while the generation
it saw before querying the database is still current, so a slow reader can
never put a pre-commit value back. A Redis outage degrades to uncached reads.
"""
import logging
import uuid
from datetime import datetime

from redis.exceptions import RedisError, WatchError
from sqlalchemy.ext.asyncio import AsyncSession

from wherewhen.database import on_commit
from wherewhen.schemas.chat import ChatRead, MessageRead
from wherewhen.schemas.social import FriendshipRead, PublicProfile
from wherewhen.stores.chat_store import ChatStore
from wherewhen.stores.friendship_store import FriendshipStore, canonical_pair
from wherewhen.stores.user_directory import UserDirectory

logger = logging.getLogger(__name__)

KEY_PREFIX = "wherewhen"

# Generation could not be read; the fill is skipped
UNKNOWN_GENERATION = object()


def friendship_key(user_a: uuid.UUID, user_b: uuid.UUID) -> str:
    uid1, uid2 = canonical_pair(user_a, user_b)
    return f"{KEY_PREFIX}:friendship:{uid1}:{uid2}"


def chat_key(chat_id: uuid.UUID) -> str:
    return f"{KEY_PREFIX}:chat:{chat_id}"


def profile_key(user_id: uuid.UUID) -> str:
    return f"{KEY_PREFIX}:profile:{user_id}"


def generation_key(key: str) -> str:
    return f"{key}:gen"


class RedisCache:
    def __init__(self, redis_client, ttl_seconds: int) -> None:
        self._redis = redis_client
        self._ttl = ttl_seconds

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except (RedisError, OSError) as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None

    async def generation(self, key: str):
        """Current generation of *key*, captured before a database read."""
        try:
            return await self._redis.get(generation_key(key))
        except (RedisError, OSError) as exc:
            logger.warning("Cache generation read failed for %s: %s", key, exc)
            return UNKNOWN_GENERATION

    async def fill(self, key: str, value: str, generation) -> None:
        """Store *value* only if *key* has not been invalidated since *generation*."""
        if generation is UNKNOWN_GENERATION:
            return
        gen_key = generation_key(key)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(gen_key)
                if await pipe.get(gen_key) != generation:
                    logger.debug("Skipping stale cache fill for %s", key)
                    return
                pipe.multi()
                pipe.set(key, value, ex=self._ttl)
                await pipe.execute()
        except WatchError:
            logger.debug("Cache fill for %s lost a race with invalidation", key)
        except (RedisError, OSError) as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)

    async def invalidate(self, *keys: str) -> None:
        try:
            pipe = self._redis.pipeline(transaction=True)
            for key in keys:
                pipe.incr(generation_key(key))
                pipe.delete(key)
            await pipe.execute()
        except (RedisError, OSError) as exc:
            logger.warning("Cache invalidation failed for %s: %s", ", ".join(keys), exc)

    async def invalidate_now_and_on_commit(self, db: AsyncSession, *keys: str) -> None:
        await self.invalidate(*keys)
        on_commit(db, self.invalidate, *keys)


class CachedFriendshipStore:
    def __init__(self, delegate: FriendshipStore, cache: RedisCache) -> None:
        self._delegate = delegate
        self._cache = cache

    async def create(
        self, db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> FriendshipRead:
        await self._cache.invalidate_now_and_on_commit(db, friendship_key(user_a, user_b))
        return await self._delegate.create(db, user_a, user_b)

    async def get_friendships_for_user(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> list[FriendshipRead]:
        return await self._delegate.get_friendships_for_user(db, user_id)

    async def exists_between_users(
        self, db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> bool:
        key = friendship_key(user_a, user_b)
        generation = await self._cache.generation(key)
        cached = await self._cache.get(key)
        if cached is not None:
            return cached == "1"
        exists = await self._delegate.exists_between_users(db, user_a, user_b)
        await self._cache.fill(key, "1" if exists else "0", generation)
        return exists

    async def delete_between_users(
        self, db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> bool:
        await self._cache.invalidate_now_and_on_commit(db, friendship_key(user_a, user_b))
        return await self._delegate.delete_between_users(db, user_a, user_b)


class CachedChatStore:
    def __init__(self, delegate: ChatStore, cache: RedisCache) -> None:
        self._delegate = delegate
        self._cache = cache

    async def get_by_pair(
        self, db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> ChatRead | None:
        return await self._delegate.get_by_pair(db, user_a, user_b)

    async def create(
        self, db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> ChatRead:
        return await self._delegate.create(db, user_a, user_b)

    async def get_chat(self, db: AsyncSession, chat_id: uuid.UUID) -> ChatRead | None:
        key = chat_key(chat_id)
        generation = await self._cache.generation(key)
        cached = await self._cache.get(key)
        if cached is not None:
            return ChatRead.model_validate_json(cached)
        chat = await self._delegate.get_chat(db, chat_id)
        if chat is not None:
            await self._cache.fill(key, chat.model_dump_json(), generation)
        return chat

    async def get_chats_for_user(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> list[ChatRead]:
        return await self._delegate.get_chats_for_user(db, user_id)

    async def get_message(
        self, db: AsyncSession, message_id: uuid.UUID
    ) -> MessageRead | None:
        return await self._delegate.get_message(db, message_id)

    async def get_messages(
        self, db: AsyncSession, chat_id: uuid.UUID
    ) -> list[MessageRead]:
        return await self._delegate.get_messages(db, chat_id)

    async def append_message(
        self,
        db: AsyncSession,
        chat_id: uuid.UUID,
        sender_id: uuid.UUID,
        content: str,
        timestamp: datetime,
    ) -> tuple[ChatRead, MessageRead]:
        await self._cache.invalidate_now_and_on_commit(db, chat_key(chat_id))
        return await self._delegate.append_message(db, chat_id, sender_id, content, timestamp)

    async def mark_all_as_read(
        self, db: AsyncSession, chat_id: uuid.UUID, user_id: uuid.UUID
    ) -> tuple[ChatRead, int]:
        await self._cache.invalidate_now_and_on_commit(db, chat_key(chat_id))
        return await self._delegate.mark_all_as_read(db, chat_id, user_id)

    async def mark_message_as_read(
        self, db: AsyncSession, message_id: uuid.UUID
    ) -> tuple[ChatRead, MessageRead, bool]:
        chat, message, changed = await self._delegate.mark_message_as_read(db, message_id)
        await self._cache.invalidate_now_and_on_commit(db, chat_key(chat.id))
        return chat, message, changed


class CachedUserDirectory:
    def __init__(self, delegate: UserDirectory, cache: RedisCache) -> None:
        self._delegate = delegate
        self._cache = cache

    async def get_public_user(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> PublicProfile | None:
        key = profile_key(user_id)
        generation = await self._cache.generation(key)
        cached = await self._cache.get(key)
        if cached is not None:
            return PublicProfile.model_validate_json(cached)
        profile = await self._delegate.get_public_user(db, user_id)
        if profile is not None:
            await self._cache.fill(key, profile.model_dump_json(), generation)
        return profile

    async def exists(self, db: AsyncSession, user_id: uuid.UUID) -> bool:
        return await self.get_public_user(db, user_id) is not None

    async def search_by_name(
        self, db: AsyncSession, query: str, limit: int = 20
    ) -> list[PublicProfile]:
        return await self._delegate.search_by_name(db, query, limit)
