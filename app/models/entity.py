import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base


class Entity(Base):
    """A tracked brand. Competitors discovered in answers are Entities too."""

    __tablename__ = "entities"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    domain: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str | None] = mapped_column(String(50), nullable=True)  # SourceType value

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    ownerships: Mapped[list["EntityOwnership"]] = relationship(
        "EntityOwnership", back_populates="entity", cascade="all, delete-orphan"
    )
    prompts: Mapped[list["Prompt"]] = relationship("Prompt", back_populates="entity")  # noqa: F821

    @property
    def display_name(self) -> str:
        """Text the signal analyzer searches for."""
        return self.name or self.domain


class EntityOwnership(Base):
    """Tenant <-> Entity join. One entity may be tracked by several tenants."""

    __tablename__ = "entity_owners"

    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id", ondelete="CASCADE"), primary_key=True
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    entity: Mapped["Entity"] = relationship("Entity", back_populates="ownerships")
    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="ownerships")  # noqa: F821


class CompetitorStatus:
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class CompetitorLink(Base):
    """Directed link entity -> competitor, created the first time a competitor is resolved."""

    __tablename__ = "competitor_links"
    __table_args__ = (UniqueConstraint("entity_id", "competitor_id", name="uq_competitor_link"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    competitor_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False
    )
    mentions: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True)  # ACCEPTED | REJECTED | NULL (pending)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    competitor: Mapped["Entity"] = relationship("Entity", foreign_keys=[competitor_id])
