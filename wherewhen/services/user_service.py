import uuid

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wherewhen.errors import ErrorCode, fail, returns_result
from wherewhen.schemas.common import require_identifier
from wherewhen.schemas.social import PublicProfile
from wherewhen.stores.user_directory import UserDirectory


class UserService:
    """Profile lookups used to decorate friend and chat lists."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        directory: UserDirectory,
        search_limit: int = 20,
    ) -> None:
        self._session_factory = session_factory
        self._directory = directory
        self._search_limit = search_limit

    @returns_result
    async def get_public_user(self, user_id: uuid.UUID | str) -> PublicProfile:
        user_id = require_identifier(user_id, "user_id")
        async with self._session_factory() as db:
            profile = await self._directory.get_public_user(db, user_id)
        if profile is None:
            raise fail(ErrorCode.USER_NOT_FOUND, "User not found", user_id=user_id)
        return profile

    @returns_result
    async def search_users(self, query: str) -> list[PublicProfile]:
        if not query or not query.strip():
            return []
        async with self._session_factory() as db:
            return await self._directory.search_by_name(db, query, self._search_limit)
