from datetime import datetime

from pydantic import BaseModel

from wherewhen.schemas.common import Identifier
from wherewhen.schemas.social import PublicProfile


class ChatRead(BaseModel):
    id: Identifier
    participant1_id: Identifier
    participant2_id: Identifier
    last_message: str | None = None
    last_message_at: datetime | None = None
    unread_count_1: int = 0
    unread_count_2: int = 0

    model_config = {"from_attributes": True}

    def is_participant(self, user_id) -> bool:
        return user_id in (self.participant1_id, self.participant2_id)

    def other_participant(self, user_id):
        if user_id == self.participant1_id:
            return self.participant2_id
        if user_id == self.participant2_id:
            return self.participant1_id
        return None

    def unread_count_for(self, user_id) -> int:
        if user_id == self.participant1_id:
            return self.unread_count_1
        if user_id == self.participant2_id:
            return self.unread_count_2
        return 0


class MessageRead(BaseModel):
    id: Identifier
    chat_id: Identifier
    sender_id: Identifier
    content: str
    timestamp: datetime
    sequence: int
    is_read: bool = False

    model_config = {"from_attributes": True}


class ChatWithUser(BaseModel):
    chat: ChatRead
    other_user: PublicProfile
    last_message: str | None
    last_message_at: datetime | None
    unread_count: int
