import uuid

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from wherewhen.errors import ErrorCode, fail
from wherewhen.models.friendship import Friendship
from wherewhen.schemas.social import FriendshipRead


def canonical_pair(user_a: uuid.UUID, user_b: uuid.UUID) -> tuple[uuid.UUID, uuid.UUID]:
    return min(user_a, user_b), max(user_a, user_b)


class FriendshipStore:
    """Undirected friendship edges, one row per unordered pair."""

    async def create(
        self, db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> FriendshipRead:
        if await self.exists_between_users(db, user_a, user_b):
            raise fail(
                ErrorCode.ALREADY_EXISTS,
                "Friendship already exists",
                user_a=user_a,
                user_b=user_b,
            )

        uid1, uid2 = canonical_pair(user_a, user_b)
        friendship = Friendship(user_id_1=uid1, user_id_2=uid2)
        db.add(friendship)
        try:
            await db.flush()
        except IntegrityError:
            raise fail(
                ErrorCode.ALREADY_EXISTS,
                "Friendship already exists",
                user_a=user_a,
                user_b=user_b,
            ) from None
        await db.refresh(friendship)
        return FriendshipRead.model_validate(friendship)

    async def get_friendships_for_user(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> list[FriendshipRead]:
        result = await db.execute(
            select(Friendship)
            .where(
                or_(
                    Friendship.user_id_1 == user_id,
                    Friendship.user_id_2 == user_id,
                )
            )
            .order_by(Friendship.created_at.asc())
        )
        return [FriendshipRead.model_validate(f) for f in result.scalars().all()]

    async def exists_between_users(
        self, db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> bool:
        uid1, uid2 = canonical_pair(user_a, user_b)
        result = await db.execute(
            select(Friendship.id).where(
                Friendship.user_id_1 == uid1,
                Friendship.user_id_2 == uid2,
            )
        )
        return result.scalar_one_or_none() is not None

    async def delete_between_users(
        self, db: AsyncSession, user_a: uuid.UUID, user_b: uuid.UUID
    ) -> bool:
        """Remove the edge; returns False when there was none."""
        uid1, uid2 = canonical_pair(user_a, user_b)
        result = await db.execute(
            delete(Friendship).where(
                Friendship.user_id_1 == uid1,
                Friendship.user_id_2 == uid2,
            )
        )
        return result.rowcount > 0
