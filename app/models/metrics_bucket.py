import uuid
from datetime import date, datetime, timezone

from sqlalchemy import Date, DateTime, Float, ForeignKey, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class MetricsBucket(Base):
    """Daily visibility aggregate for one (entity, tenant, competitor-or-own, date, channel).

    Rows are only ever written through atomic upserts in
    ``app.services.metrics_aggregator``. ``position_samples`` and
    ``sentiment_samples`` count the observations behind each running average.
    """

    __tablename__ = "metrics_buckets"
    __table_args__ = (
        # NULL competitor_id means "the entity itself"; two partial indexes make
        # the key unique in both cases (NULLs are distinct in a plain index).
        Index(
            "uq_metrics_bucket_own",
            "entity_id",
            "tenant_id",
            "date",
            "channel",
            unique=True,
            postgresql_where=text("competitor_id IS NULL"),
        ),
        Index(
            "uq_metrics_bucket_competitor",
            "entity_id",
            "tenant_id",
            "competitor_id",
            "date",
            "channel",
            unique=True,
            postgresql_where=text("competitor_id IS NOT NULL"),
        ),
        Index("ix_metrics_bucket_tenant_date", "tenant_id", "entity_id", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    competitor_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id", ondelete="CASCADE"), nullable=True
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    channel: Mapped[str] = mapped_column(String(30), nullable=False)

    total_mentions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_results: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_position: Mapped[float | None] = mapped_column(Float, nullable=True)
    position_samples: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    average_sentiment: Mapped[float | None] = mapped_column(Float, nullable=True)
    sentiment_samples: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    visibility_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)  # 0..100

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )


class SourceMetricsBucket(Base):
    """Daily citation counters for one (entity, tenant, source, date, channel).

    ``utilization`` is derived by the recalculation pass and can lag the counters.
    """

    __tablename__ = "source_metrics_buckets"
    __table_args__ = (
        UniqueConstraint("entity_id", "tenant_id", "source_id", "date", "channel", name="uq_source_metrics_bucket"),
        Index("ix_source_metrics_entity_date", "entity_id", "date"),
        Index("ix_source_metrics_updated_at", "updated_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False
    )
    source_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("sources.id", ondelete="CASCADE"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    channel: Mapped[str] = mapped_column(String(30), nullable=False)

    total_mentions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_prompts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    utilization: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)  # 0..100

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )
