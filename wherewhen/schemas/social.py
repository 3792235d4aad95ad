import enum
from datetime import datetime

from pydantic import BaseModel

from wherewhen.models.friend_request import FriendRequestStatus
from wherewhen.schemas.common import Identifier


class FriendshipStatus(str, enum.Enum):
    """Relationship between the querying user and another user."""

    NOT_FRIENDS = "not_friends"
    FRIENDS = "friends"
    REQUEST_SENT = "request_sent"
    REQUEST_RECEIVED = "request_received"


class PublicProfile(BaseModel):
    id: Identifier
    display_name: str
    description: str = ""
    avatar_url: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class FriendRequestRead(BaseModel):
    id: Identifier
    sender_id: Identifier
    receiver_id: Identifier
    status: FriendRequestStatus
    created_at: datetime
    responded_at: datetime | None = None

    model_config = {"from_attributes": True}

    @property
    def is_pending(self) -> bool:
        return self.status == FriendRequestStatus.PENDING


class FriendshipRead(BaseModel):
    id: Identifier
    user_id_1: Identifier
    user_id_2: Identifier
    created_at: datetime

    model_config = {"from_attributes": True}

    def contains(self, user_id) -> bool:
        return user_id in (self.user_id_1, self.user_id_2)

    def other_user_id(self, user_id):
        if user_id == self.user_id_1:
            return self.user_id_2
        if user_id == self.user_id_2:
            return self.user_id_1
        return None


class FriendRequestWithUser(BaseModel):
    """A request joined with the profile of the other party."""

    request: FriendRequestRead
    user: PublicProfile
