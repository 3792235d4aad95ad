import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from wherewhen.models.user import User
from wherewhen.schemas.social import PublicProfile


class UserDirectory:
    """Read-only lookup of public profiles."""

    async def get_public_user(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> PublicProfile | None:
        user = await db.get(User, user_id)
        if user is None:
            return None
        return PublicProfile.model_validate(user)

    async def exists(self, db: AsyncSession, user_id: uuid.UUID) -> bool:
        return await self.get_public_user(db, user_id) is not None

    async def search_by_name(
        self, db: AsyncSession, query: str, limit: int = 20
    ) -> list[PublicProfile]:
        """Case-insensitive substring match on display name."""
        query = query.strip()
        if not query:
            return []
        result = await db.execute(
            select(User)
            .where(func.lower(User.display_name).contains(query.lower(), autoescape=True))
            .order_by(User.display_name.asc())
            .limit(limit)
        )
        return [PublicProfile.model_validate(user) for user in result.scalars().all()]
