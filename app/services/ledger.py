"""Aggregation ledger helpers (at-most-once bucket effects per task)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.aggregation_ledger import AggregationLedger

logger = logging.getLogger(__name__)


def claim_statement(task_id: str, kind: str, scope: str):
    return (
        pg_insert(AggregationLedger)
        .values(task_id=task_id, kind=kind, scope=scope)
        .on_conflict_do_nothing(index_elements=["task_id", "kind", "scope"])
        .returning(AggregationLedger.task_id)
    )


async def claim(db: AsyncSession, task_id: str, kind: str, scope: str) -> bool:
    """Insert the ledger row inside the caller's transaction.

    True means this caller owns the aggregation and must apply it in the same
    transaction; False means it was already applied and must be skipped.
    """
    result = await db.execute(claim_statement(task_id, kind, scope))
    return result.scalar_one_or_none() is not None


@dataclass
class AggregationReport:
    """Per-scope outcome of one aggregation call."""

    applied: list[str] = field(default_factory=list)
    already_applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def merge(self, other: AggregationReport) -> AggregationReport:
        return AggregationReport(
            applied=self.applied + other.applied,
            already_applied=self.already_applied + other.already_applied,
            failed=self.failed + other.failed,
        )
