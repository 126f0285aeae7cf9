"""Pending intent, interactive prompt and flow session models for clarifications."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from voicecal.database import Base
from voicecal.models.enums import PendingIntentStatus
from voicecal.models.mixins import CreatedAtMixin, TimestampMixin


class PendingIntent(Base, TimestampMixin):
    """Paused pipeline state waiting for clarification answers. One per voice job."""

    __tablename__ = "pending_intents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    job_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("voice_jobs.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    channel_number_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    intent_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    # {round, items: [{field, reason, question, options, resolved, answer}], responses: {...}}
    clarification_plan: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=PendingIntentStatus.AWAITING_CLARIFICATION.value,
        index=True,
    )
    round: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    voice_job = relationship("VoiceJob", back_populates="pending_intent")
    prompts = relationship(
        "InteractivePrompt",
        back_populates="pending_intent",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    flow_sessions = relationship(
        "FlowSession",
        back_populates="pending_intent",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<PendingIntent(id={self.id}, job_id={self.job_id}, status={self.status})>"


class InteractivePrompt(Base, CreatedAtMixin):
    """A single-field multiple-choice question sent as buttons or a list."""

    __tablename__ = "interactive_prompts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    pending_intent_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("pending_intents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    outbound_message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    field_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    options: Mapped[list] = mapped_column(JSON, nullable=False)  # [{id, label}]
    selected_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_received: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    pending_intent = relationship("PendingIntent", back_populates="prompts")


class FlowSession(Base, CreatedAtMixin):
    """A multi-field structured form correlated by an opaque token."""

    __tablename__ = "flow_sessions"

    flow_token = Column(String(64), primary_key=True)
    pending_intent_id = Column(
        Integer,
        ForeignKey("pending_intents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    fields_requested = Column(JSON, nullable=False)  # [{field, question, options}]
    response_data = Column(JSON, nullable=True)
    response_received = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    pending_intent = relationship("PendingIntent", back_populates="flow_sessions")
