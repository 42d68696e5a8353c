"""Task record store.

Every status transition is a single conditional UPDATE so that duplicate or
out-of-order completion events cannot clobber each other:

  * SUCCESS is terminal: ``mark_success`` only fires when the task is not yet
    SUCCESS, and ``mark_failed`` never overwrites SUCCESS.
  * A failed resubmission is terminal too: ``mark_failed`` leaves a row whose
    reason starts with REQUEUE_FAILED_PREFIX untouched.
  * ``reset_for_retry`` only fires for a FAILED task still at the retry_count
    the caller observed, so two concurrent FAILED events resubmit at most once.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.analysis.types import Signals
from app.models.entity import Entity, EntityOwnership
from app.models.prompt import Prompt
from app.models.task import Task, TaskStatus

logger = logging.getLogger(__name__)

REQUEUE_FAILED_PREFIX = "requeue_failed"


@dataclass
class TaskContext:
    """Detached snapshot of a task and everything aggregation needs about it."""

    task_id: str
    status: str
    channel: str
    retry_count: int
    created_at: datetime
    prompt_id: uuid.UUID
    prompt_text: str
    locale: str
    entity_id: uuid.UUID
    entity_name: str
    tenant_ids: list[uuid.UUID] = field(default_factory=list)
    raw_payload: dict | None = None
    extracted_sentiment: float | None = None
    extracted_position: int | None = None
    extracted_competitors: list | None = None
    last_failure_reason: str | None = None

    @property
    def requeue_failed(self) -> bool:
        return (self.last_failure_reason or "").startswith(REQUEUE_FAILED_PREFIX)

    @property
    def day(self) -> date:
        """UTC calendar day the observation is bucketed under."""
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return created.astimezone(timezone.utc).date()

    @property
    def signals(self) -> Signals:
        return Signals.from_task_columns(
            self.extracted_sentiment, self.extracted_position, self.extracted_competitors
        )


def _context_query():
    return (
        select(Task, Prompt, Entity)
        .join(Prompt, Prompt.id == Task.prompt_id)
        .join(Entity, Entity.id == Prompt.entity_id)
    )


async def _owners_by_entity(db: AsyncSession, entity_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, list[uuid.UUID]]:
    ids = list(set(entity_ids))
    if not ids:
        return {}
    result = await db.execute(
        select(EntityOwnership.entity_id, EntityOwnership.tenant_id)
        .where(EntityOwnership.entity_id.in_(ids))
        .order_by(EntityOwnership.created_at)
    )
    owners: dict[uuid.UUID, list[uuid.UUID]] = {}
    for entity_id, tenant_id in result.all():
        owners.setdefault(entity_id, []).append(tenant_id)
    return owners


def _to_context(task: Task, prompt: Prompt, entity: Entity, tenant_ids: list[uuid.UUID]) -> TaskContext:
    return TaskContext(
        task_id=task.id,
        status=task.status,
        channel=task.channel,
        retry_count=task.retry_count or 0,
        created_at=task.created_at,
        prompt_id=prompt.id,
        prompt_text=prompt.text,
        locale=prompt.locale,
        entity_id=entity.id,
        entity_name=entity.display_name,
        tenant_ids=tenant_ids,
        raw_payload=task.raw_payload,
        extracted_sentiment=task.extracted_sentiment,
        extracted_position=task.extracted_position,
        extracted_competitors=task.extracted_competitors,
        last_failure_reason=task.last_failure_reason,
    )


async def load_task_context(db: AsyncSession, task_id: str) -> TaskContext | None:
    row = (await db.execute(_context_query().where(Task.id == task_id))).first()
    if row is None:
        return None
    task, prompt, entity = row
    owners = await _owners_by_entity(db, [entity.id])
    return _to_context(task, prompt, entity, owners.get(entity.id, []))


async def load_task_contexts(db: AsyncSession, task_ids: list[str]) -> list[TaskContext]:
    """Batch variant of load_task_context, preserving the order of ``task_ids``."""
    if not task_ids:
        return []
    rows = (await db.execute(_context_query().where(Task.id.in_(task_ids)))).all()
    owners = await _owners_by_entity(db, [entity.id for _, _, entity in rows])
    by_id = {task.id: _to_context(task, prompt, entity, owners.get(entity.id, [])) for task, prompt, entity in rows}
    return [by_id[tid] for tid in task_ids if tid in by_id]


async def mark_success(
    db: AsyncSession,
    task_id: str,
    raw_payload: dict,
    signals: Signals | None,
) -> bool:
    """Persist SUCCESS with the extracted signals. False if the task was already SUCCESS."""
    values = {
        "status": TaskStatus.SUCCESS.value,
        "raw_payload": raw_payload,
        "extracted_sentiment": signals.sentiment if signals else None,
        "extracted_position": signals.position if signals else None,
        "extracted_competitors": [c.to_dict() for c in signals.competitors] if signals else None,
        "updated_at": datetime.now(timezone.utc),
    }
    result = await db.execute(
        update(Task)
        .where(Task.id == task_id, Task.status != TaskStatus.SUCCESS.value)
        .values(**values)
        .returning(Task.id)
    )
    transitioned = result.scalar_one_or_none() is not None
    await db.commit()
    return transitioned


async def mark_failed(
    db: AsyncSession,
    task_id: str,
    reason: str,
    raw_payload: dict | None = None,
) -> bool:
    """Persist FAILED with a failure reason.

    False if the task is missing, already SUCCESS, or already failed terminally
    because its resubmission was rejected.
    """
    now = datetime.now(timezone.utc)
    values = {
        "status": TaskStatus.FAILED.value,
        "last_failure_reason": reason[:2000],
        "last_failure_at": now,
        "updated_at": now,
    }
    if raw_payload is not None:
        values["raw_payload"] = raw_payload
    result = await db.execute(
        update(Task)
        .where(
            Task.id == task_id,
            Task.status != TaskStatus.SUCCESS.value,
            or_(
                Task.last_failure_reason.is_(None),
                Task.last_failure_reason.not_like(f"{REQUEUE_FAILED_PREFIX}%"),
            ),
        )
        .values(**values)
        .returning(Task.id)
    )
    changed = result.scalar_one_or_none() is not None
    await db.commit()
    return changed


async def reset_for_retry(db: AsyncSession, task_id: str, expected_retry_count: int, reason: str) -> bool:
    """FAILED -> PENDING with retry_count + 1. False if another writer got there first."""
    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(Task)
        .where(
            Task.id == task_id,
            Task.status == TaskStatus.FAILED.value,
            Task.retry_count == expected_retry_count,
        )
        .values(
            status=TaskStatus.PENDING.value,
            retry_count=Task.retry_count + 1,
            last_failure_reason=reason[:2000],
            last_failure_at=now,
            updated_at=now,
        )
        .returning(Task.id)
    )
    changed = result.scalar_one_or_none() is not None
    await db.commit()
    return changed
