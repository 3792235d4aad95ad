from wherewhen.models.base import Base
from wherewhen.models.chat import Chat
from wherewhen.models.friend_request import FriendRequest, FriendRequestStatus
from wherewhen.models.friendship import Friendship
from wherewhen.models.message import Message
from wherewhen.models.user import User

__all__ = [
    "Base",
    "Chat",
    "FriendRequest",
    "FriendRequestStatus",
    "Friendship",
    "Message",
    "User",
]
