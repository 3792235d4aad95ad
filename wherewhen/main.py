import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import redis.asyncio as redis
import sentry_sdk
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wherewhen.config import settings
from wherewhen.database import async_session, engine
from wherewhen.services.change_feed import ChangeFeed
from wherewhen.services.chat_service import ChatService
from wherewhen.services.friendship_service import FriendshipService
from wherewhen.services.locks import KeyedLock
from wherewhen.services.user_service import UserService
from wherewhen.stores.cache import (
    CachedChatStore,
    CachedFriendshipStore,
    CachedUserDirectory,
    RedisCache,
)
from wherewhen.stores.chat_store import ChatStore
from wherewhen.stores.friend_request_store import FriendRequestStore
from wherewhen.stores.friendship_store import FriendshipStore
from wherewhen.stores.user_directory import UserDirectory

logger = logging.getLogger(__name__)


def init_sentry() -> None:
    if not settings.SENTRY_DSN:
        return
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.2 if settings.ENVIRONMENT == "production" else 1.0,
        send_default_pii=False,
    )


@dataclass
class SocialCore:
    users: UserService
    friendships: FriendshipService
    chats: ChatService
    feed: ChangeFeed


def build_core(
    session_factory: async_sessionmaker[AsyncSession],
    redis_client=None,
) -> SocialCore:
    """Wire stores, caches and services around one change feed.

    Caching is only layered in when a Redis client is given and
    ``CACHE_ENABLED`` is set.
    """
    friendships = FriendshipStore()
    chats = ChatStore()
    users = UserDirectory()
    if redis_client is not None and settings.CACHE_ENABLED:
        cache = RedisCache(redis_client, settings.CACHE_TTL_SECONDS)
        friendships = CachedFriendshipStore(friendships, cache)
        chats = CachedChatStore(chats, cache)
        users = CachedUserDirectory(users, cache)

    feed = ChangeFeed()
    locks = KeyedLock()
    return SocialCore(
        users=UserService(session_factory, users, settings.USER_SEARCH_LIMIT),
        friendships=FriendshipService(
            session_factory, friendships, FriendRequestStore(), users, feed, locks
        ),
        chats=ChatService(session_factory, chats, users, feed, locks),
        feed=feed,
    )


@asynccontextmanager
async def lifespan() -> AsyncIterator[SocialCore]:
    init_sentry()

    # Startup: verify DB connection and connect Redis
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))

    redis_client = None
    if settings.CACHE_ENABLED:
        redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        try:
            await redis_client.ping()
        except (RedisError, OSError) as exc:
            logger.warning("Redis unavailable, running without cache: %s", exc)
            await redis_client.aclose()
            redis_client = None

    try:
        yield build_core(async_session, redis_client)
    finally:
        if redis_client is not None:
            await redis_client.aclose()
        await engine.dispose()
