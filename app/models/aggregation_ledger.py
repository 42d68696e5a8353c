from datetime import datetime, timezone

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base

GLOBAL_SCOPE = "global"


class LedgerKind:
    METRICS = "metrics"
    SOURCES = "sources"
    COMPETITOR_LINKS = "competitor_links"


class AggregationLedger(Base):
    """Marks that a task's observation has been folded into a set of buckets.

    A row is inserted in the same transaction as the bucket upserts it guards,
    so an aggregation either lands together with its ledger row or not at all.
    ``scope`` is a tenant id, or ``"global"`` for tenant-independent counters.
    """

    __tablename__ = "aggregation_ledger"

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(30), primary_key=True)
    scope: Mapped[str] = mapped_column(String(64), primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
