"""Friend request lifecycle and the friendship graph.

Every mutation of a user pair holds that pair's lock for the whole
transaction; request transitions additionally hold the request's lock. The
database backs this up with a unique pair constraint on friendships, a
partial unique index on pending requests and a compare-and-swap on status.
"""
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wherewhen.database import on_commit, transaction
from wherewhen.errors import DomainFailure, ErrorCode, fail, returns_result
from wherewhen.models.friend_request import FriendRequestStatus
from wherewhen.schemas.common import require_identifier
from wherewhen.schemas.social import (
    FriendRequestRead,
    FriendRequestWithUser,
    FriendshipRead,
    FriendshipStatus,
    PublicProfile,
)
from wherewhen.services.change_feed import (
    ChangeFeed,
    Subscription,
    friends_topic,
    pending_requests_topic,
    sent_requests_topic,
)
from wherewhen.services.locks import KeyedLock
from wherewhen.stores.friend_request_store import FriendRequestStore
from wherewhen.stores.friendship_store import FriendshipStore, canonical_pair
from wherewhen.stores.user_directory import UserDirectory

logger = logging.getLogger(__name__)


def _pair_lock(user_a: uuid.UUID, user_b: uuid.UUID) -> tuple:
    return ("friend-pair", *canonical_pair(user_a, user_b))


class FriendshipService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        friendships: FriendshipStore,
        requests: FriendRequestStore,
        users: UserDirectory,
        feed: ChangeFeed,
        locks: KeyedLock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._friendships = friendships
        self._requests = requests
        self._users = users
        self._feed = feed
        self._locks = locks or KeyedLock()

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    @returns_result
    async def send_request(
        self, sender_id: uuid.UUID | str, receiver_id: uuid.UUID | str
    ) -> FriendRequestRead:
        """Create a pending request from *sender_id* to *receiver_id*.

        A pending request in the opposite direction is left untouched; the
        two stay independent until one of them is accepted.
        """
        sender_id = require_identifier(sender_id, "sender_id")
        receiver_id = require_identifier(receiver_id, "receiver_id")
        if sender_id == receiver_id:
            raise fail(
                ErrorCode.SELF_REQUEST,
                "Cannot send a friend request to yourself",
                user_id=sender_id,
            )

        async with self._locks.hold(_pair_lock(sender_id, receiver_id)):
            async with transaction(self._session_factory) as db:
                for user_id in (sender_id, receiver_id):
                    if not await self._users.exists(db, user_id):
                        raise fail(ErrorCode.USER_NOT_FOUND, "User not found", user_id=user_id)

                if await self._friendships.exists_between_users(db, sender_id, receiver_id):
                    raise fail(
                        ErrorCode.ALREADY_FRIENDS,
                        "Users are already friends",
                        user_a=sender_id,
                        user_b=receiver_id,
                    )

                if await self._requests.get_pending_between(db, sender_id, receiver_id):
                    raise fail(
                        ErrorCode.DUPLICATE_REQUEST,
                        "Friend request already pending",
                        sender_id=sender_id,
                        receiver_id=receiver_id,
                    )

                request = await self._requests.create(db, sender_id, receiver_id)
                on_commit(
                    db,
                    self._feed.publish,
                    pending_requests_topic(receiver_id),
                    sent_requests_topic(sender_id),
                )

        logger.info("Friend request %s sent from %s to %s", request.id, sender_id, receiver_id)
        return request

    @returns_result
    async def accept_request(
        self, request_id: uuid.UUID | str, acting_user_id: uuid.UUID | str
    ) -> FriendshipRead:
        """Accept a pending request and create the friendship in one transaction.

        Only the receiver may accept. A pending request in the opposite
        direction is accepted along with it.
        """
        request_id = require_identifier(request_id, "request_id")
        acting_user_id = require_identifier(acting_user_id, "acting_user_id")
        async with self._hold_request(request_id):
            async with transaction(self._session_factory) as db:
                request = await self._load_for_transition(
                    db, request_id, acting_user_id, must_be_receiver=True
                )
                now = datetime.now(timezone.utc)
                if await self._requests.transition(
                    db, request_id, FriendRequestStatus.ACCEPTED, now
                ) is None:
                    raise _not_pending(request_id)

                try:
                    friendship = await self._friendships.create(
                        db, request.sender_id, request.receiver_id
                    )
                except DomainFailure as exc:
                    if exc.error.code != ErrorCode.ALREADY_EXISTS:
                        raise
                    raise fail(
                        ErrorCode.ALREADY_FRIENDS,
                        "Users are already friends",
                        user_a=request.sender_id,
                        user_b=request.receiver_id,
                    ) from None

                reciprocal = await self._requests.get_pending_between(
                    db, request.receiver_id, request.sender_id
                )
                topics = list(_request_topics(request))
                if reciprocal is not None:
                    await self._requests.transition(
                        db, reciprocal.id, FriendRequestStatus.ACCEPTED, now
                    )
                    topics.extend(_request_topics(reciprocal))

                on_commit(
                    db,
                    self._feed.publish,
                    *topics,
                    friends_topic(request.sender_id),
                    friends_topic(request.receiver_id),
                )

        logger.info(
            "Friend request %s accepted; %s and %s are now friends",
            request_id,
            request.sender_id,
            request.receiver_id,
        )
        return friendship

    @returns_result
    async def reject_request(
        self, request_id: uuid.UUID | str, acting_user_id: uuid.UUID | str
    ) -> FriendRequestRead:
        """Reject a pending request. Only the receiver may reject."""
        return await self._close_request(
            request_id, acting_user_id, FriendRequestStatus.REJECTED, must_be_receiver=True
        )

    @returns_result
    async def cancel_request(
        self, request_id: uuid.UUID | str, acting_user_id: uuid.UUID | str
    ) -> FriendRequestRead:
        """Withdraw a pending request. Only the sender may cancel."""
        return await self._close_request(
            request_id, acting_user_id, FriendRequestStatus.CANCELLED, must_be_receiver=False
        )

    @returns_result
    async def remove_friend(
        self, user_id: uuid.UUID | str, other_user_id: uuid.UUID | str
    ) -> None:
        """Delete the friendship edge. Request history is kept."""
        user_id = require_identifier(user_id, "user_id")
        other_user_id = require_identifier(other_user_id, "other_user_id")

        async with self._locks.hold(_pair_lock(user_id, other_user_id)):
            async with transaction(self._session_factory) as db:
                removed = await self._friendships.delete_between_users(db, user_id, other_user_id)
                if not removed:
                    raise fail(
                        ErrorCode.FRIENDSHIP_NOT_FOUND,
                        "Friendship not found",
                        user_a=user_id,
                        user_b=other_user_id,
                    )
                on_commit(
                    db, self._feed.publish, friends_topic(user_id), friends_topic(other_user_id)
                )

        logger.info("Friendship between %s and %s removed", user_id, other_user_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @returns_result
    async def get_friendship_status(
        self, current_user_id: uuid.UUID | str, other_user_id: uuid.UUID | str
    ) -> FriendshipStatus:
        current_user_id = require_identifier(current_user_id, "current_user_id")
        other_user_id = require_identifier(other_user_id, "other_user_id")

        async with self._session_factory() as db:
            # Friendship wins over any stale pending request
            if await self._friendships.exists_between_users(db, current_user_id, other_user_id):
                return FriendshipStatus.FRIENDS
            if await self._requests.get_pending_between(db, current_user_id, other_user_id):
                return FriendshipStatus.REQUEST_SENT
            if await self._requests.get_pending_between(db, other_user_id, current_user_id):
                return FriendshipStatus.REQUEST_RECEIVED
        return FriendshipStatus.NOT_FRIENDS

    @returns_result
    async def get_friends(self, user_id: uuid.UUID | str) -> list[PublicProfile]:
        return await self._load_friends(require_identifier(user_id, "user_id"))

    @returns_result
    async def get_pending_requests(
        self, user_id: uuid.UUID | str
    ) -> list[FriendRequestWithUser]:
        return await self._load_pending(require_identifier(user_id, "user_id"))

    @returns_result
    async def get_sent_requests(self, user_id: uuid.UUID | str) -> list[FriendRequestWithUser]:
        return await self._load_sent(require_identifier(user_id, "user_id"))

    @returns_result
    async def observe_friends(
        self, user_id: uuid.UUID | str
    ) -> Subscription[list[PublicProfile]]:
        user_id = require_identifier(user_id, "user_id")
        return self._feed.subscribe([friends_topic(user_id)], lambda: self._load_friends(user_id))

    @returns_result
    async def observe_pending_requests(
        self, user_id: uuid.UUID | str
    ) -> Subscription[list[FriendRequestWithUser]]:
        user_id = require_identifier(user_id, "user_id")
        return self._feed.subscribe(
            [pending_requests_topic(user_id)], lambda: self._load_pending(user_id)
        )

    @returns_result
    async def observe_sent_requests(
        self, user_id: uuid.UUID | str
    ) -> Subscription[list[FriendRequestWithUser]]:
        user_id = require_identifier(user_id, "user_id")
        return self._feed.subscribe(
            [sent_requests_topic(user_id)], lambda: self._load_sent(user_id)
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _close_request(
        self,
        request_id: uuid.UUID | str,
        acting_user_id: uuid.UUID | str,
        status: FriendRequestStatus,
        must_be_receiver: bool,
    ) -> FriendRequestRead:
        request_id = require_identifier(request_id, "request_id")
        acting_user_id = require_identifier(acting_user_id, "acting_user_id")
        async with self._hold_request(request_id):
            async with transaction(self._session_factory) as db:
                request = await self._load_for_transition(
                    db, request_id, acting_user_id, must_be_receiver=must_be_receiver
                )
                updated = await self._requests.transition(
                    db, request_id, status, datetime.now(timezone.utc)
                )
                if updated is None:
                    raise _not_pending(request_id)
                on_commit(db, self._feed.publish, *_request_topics(request))

        logger.info("Friend request %s %s by %s", request_id, status.value, acting_user_id)
        return updated

    @asynccontextmanager
    async def _hold_request(self, request_id: uuid.UUID) -> AsyncIterator[None]:
        """Lock the request, then the user pair it belongs to."""
        async with self._locks.hold(("request", request_id)):
            request = await self._get_request(request_id)
            async with self._locks.hold(_pair_lock(request.sender_id, request.receiver_id)):
                yield

    async def _get_request(self, request_id: uuid.UUID) -> FriendRequestRead:
        async with self._session_factory() as db:
            request = await self._requests.get_by_id(db, request_id)
        if request is None:
            raise fail(
                ErrorCode.REQUEST_NOT_FOUND, "Friend request not found", request_id=request_id
            )
        return request

    async def _load_for_transition(
        self,
        db: AsyncSession,
        request_id: uuid.UUID,
        acting_user_id: uuid.UUID,
        must_be_receiver: bool,
    ) -> FriendRequestRead:
        request = await self._requests.get_by_id(db, request_id)
        if request is None:
            raise fail(
                ErrorCode.REQUEST_NOT_FOUND, "Friend request not found", request_id=request_id
            )
        if must_be_receiver and acting_user_id != request.receiver_id:
            raise fail(
                ErrorCode.NOT_REQUEST_RECEIVER,
                "Only the receiver can respond to this friend request",
                request_id=request_id,
                user_id=acting_user_id,
            )
        if not must_be_receiver and acting_user_id != request.sender_id:
            raise fail(
                ErrorCode.NOT_REQUEST_SENDER,
                "Only the sender can cancel this friend request",
                request_id=request_id,
                user_id=acting_user_id,
            )
        if not request.is_pending:
            raise _not_pending(request_id, request.status)
        return request

    async def _load_friends(self, user_id: uuid.UUID) -> list[PublicProfile]:
        async with self._session_factory() as db:
            friendships = await self._friendships.get_friendships_for_user(db, user_id)
            friends = []
            for friendship in friendships:
                profile = await self._users.get_public_user(
                    db, friendship.other_user_id(user_id)
                )
                if profile is not None:
                    friends.append(profile)
        return friends

    async def _load_pending(self, user_id: uuid.UUID) -> list[FriendRequestWithUser]:
        async with self._session_factory() as db:
            requests = await self._requests.get_pending_requests_for_user(db, user_id)
            return await self._with_profiles(db, requests, lambda r: r.sender_id)

    async def _load_sent(self, user_id: uuid.UUID) -> list[FriendRequestWithUser]:
        async with self._session_factory() as db:
            requests = await self._requests.get_sent_requests_from_user(db, user_id)
            return await self._with_profiles(db, requests, lambda r: r.receiver_id)

    async def _with_profiles(self, db, requests, counterpart) -> list[FriendRequestWithUser]:
        joined = []
        for request in requests:
            profile = await self._users.get_public_user(db, counterpart(request))
            if profile is not None:
                joined.append(FriendRequestWithUser(request=request, user=profile))
        return joined


def _request_topics(request: FriendRequestRead) -> tuple[str, ...]:
    return (
        pending_requests_topic(request.receiver_id),
        sent_requests_topic(request.sender_id),
    )


def _not_pending(request_id: uuid.UUID, status: FriendRequestStatus | None = None) -> DomainFailure:
    detail = "Friend request is no longer pending"
    if status is not None:
        detail = f"Friend request is already {status.value}"
    return fail(ErrorCode.INVALID_STATE, detail, request_id=request_id)
