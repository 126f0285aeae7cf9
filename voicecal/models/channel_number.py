"""Channel number model for verified senders."""

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from voicecal.database import Base
from voicecal.models.mixins import TimestampMixin


class ChannelNumber(Base, TimestampMixin):
    """A messaging address a user has verified for voice notes."""

    __tablename__ = "channel_numbers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<ChannelNumber(id={self.id}, user_id={self.user_id}, verified={self.is_verified})>"
