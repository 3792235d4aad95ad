import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wherewhen.models.base import Base


def chat_pair_key(user_a: uuid.UUID, user_b: uuid.UUID) -> str:
    """Deterministic key for an unordered participant pair."""
    low, high = sorted((str(user_a), str(user_b)))
    return f"{low}_{high}"


class Chat(Base):
    __tablename__ = "chats"

    participant1_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    participant2_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    pair_key: Mapped[str] = mapped_column(String(73), unique=True, nullable=False)
    last_message: Mapped[str | None] = mapped_column(Text)
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    unread_count_1: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unread_count_2: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    messages: Mapped[list["Message"]] = relationship(back_populates="chat", cascade="all, delete-orphan")  # noqa: F821

    __table_args__ = (
        CheckConstraint("participant1_id <> participant2_id", name="distinct_participants"),
        CheckConstraint("unread_count_1 >= 0", name="unread_count_1_non_negative"),
        CheckConstraint("unread_count_2 >= 0", name="unread_count_2_non_negative"),
    )
