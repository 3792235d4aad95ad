import uuid
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from wherewhen.errors import ErrorCode, fail
from wherewhen.models.friend_request import FriendRequest, FriendRequestStatus
from wherewhen.schemas.social import FriendRequestRead

_PENDING = FriendRequestStatus.PENDING.value


class FriendRequestStore:
    """Directed friend requests and their status transitions."""

    async def create(
        self, db: AsyncSession, sender_id: uuid.UUID, receiver_id: uuid.UUID
    ) -> FriendRequestRead:
        request = FriendRequest(
            sender_id=sender_id,
            receiver_id=receiver_id,
            status=_PENDING,
            created_at=datetime.now(timezone.utc),
            responded_at=None,
        )
        db.add(request)
        try:
            await db.flush()
        except IntegrityError:
            # Partial unique index on pending (sender, receiver)
            raise fail(
                ErrorCode.DUPLICATE_REQUEST,
                "Friend request already pending",
                sender_id=sender_id,
                receiver_id=receiver_id,
            ) from None
        return FriendRequestRead.model_validate(request)

    async def get_by_id(
        self, db: AsyncSession, request_id: uuid.UUID
    ) -> FriendRequestRead | None:
        request = await db.get(FriendRequest, request_id)
        if request is None:
            return None
        return FriendRequestRead.model_validate(request)

    async def get_pending_between(
        self, db: AsyncSession, sender_id: uuid.UUID, receiver_id: uuid.UUID
    ) -> FriendRequestRead | None:
        result = await db.execute(
            select(FriendRequest).where(
                FriendRequest.sender_id == sender_id,
                FriendRequest.receiver_id == receiver_id,
                FriendRequest.status == _PENDING,
            )
        )
        request = result.scalar_one_or_none()
        if request is None:
            return None
        return FriendRequestRead.model_validate(request)

    async def get_pending_requests_for_user(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> list[FriendRequestRead]:
        """Pending requests received by *user_id*, oldest first."""
        result = await db.execute(
            select(FriendRequest)
            .where(
                FriendRequest.receiver_id == user_id,
                FriendRequest.status == _PENDING,
            )
            .order_by(FriendRequest.created_at.asc())
        )
        return [FriendRequestRead.model_validate(r) for r in result.scalars().all()]

    async def get_sent_requests_from_user(
        self, db: AsyncSession, user_id: uuid.UUID
    ) -> list[FriendRequestRead]:
        """Pending requests sent by *user_id*, oldest first."""
        result = await db.execute(
            select(FriendRequest)
            .where(
                FriendRequest.sender_id == user_id,
                FriendRequest.status == _PENDING,
            )
            .order_by(FriendRequest.created_at.asc())
        )
        return [FriendRequestRead.model_validate(r) for r in result.scalars().all()]

    async def transition(
        self,
        db: AsyncSession,
        request_id: uuid.UUID,
        status: FriendRequestStatus,
        responded_at: datetime,
    ) -> FriendRequestRead | None:
        """Move a pending request to *status*.

        Compare-and-swap on ``status = 'pending'``: returns None when the
        request is no longer pending, so only one of two racing transitions wins.
        """
        result = await db.execute(
            update(FriendRequest)
            .where(FriendRequest.id == request_id, FriendRequest.status == _PENDING)
            .values(status=status.value, responded_at=responded_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        refreshed = await db.execute(
            select(FriendRequest)
            .where(FriendRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        return FriendRequestRead.model_validate(refreshed.scalar_one())
