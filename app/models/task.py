import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class TaskStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class Channel(str, enum.Enum):
    """Answer surface that produced an observation."""

    CHATGPT = "chatgpt"
    PERPLEXITY = "perplexity"
    COPILOT = "copilot"
    GEMINI = "gemini"
    GOOGLE_AI_MODE = "google_ai_mode"
    GOOGLE_AI_OVERVIEW = "google_ai_overview"


class Task(Base):
    """One (prompt, channel) submission to the monitoring provider.

    ``id`` is caller-assigned and doubles as the idempotency key sent to the
    provider; completion webhooks reference it, and aggregation is keyed on it.
    """

    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_status_created", "status", "created_at"),
        Index("ix_tasks_prompt_created", "prompt_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    prompt_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("prompts.id", ondelete="CASCADE"), nullable=False
    )
    channel: Mapped[str] = mapped_column(String(30), nullable=False)  # Channel values
    status: Mapped[str] = mapped_column(String(20), default=TaskStatus.PENDING.value, nullable=False)

    raw_payload: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    extracted_sentiment: Mapped[float | None] = mapped_column(Float, nullable=True)  # 0..100
    extracted_position: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 1 = most prominent
    extracted_competitors: Mapped[list | None] = mapped_column(JSONB, nullable=True)  # [{"name", "position", "sentiment"}]

    # Retry bookkeeping (never stored inside raw_payload)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_failure_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    prompt: Mapped["Prompt"] = relationship("Prompt", back_populates="tasks")  # noqa: F821
