"""Bounded retry for tasks the provider reported as failed.

    FAILED, retry_count <  max  ->  PENDING, retry_count + 1, resubmit with the same id
    FAILED, retry_count >= max  ->  stays FAILED (terminal)
    resubmission raises         ->  FAILED with reason "requeue_failed: ..." (terminal)
    FAILED after requeue_failed ->  no resubmission, whatever the retry_count
"""

from __future__ import annotations

import enum
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.collectors.base import BaseTaskSubmitter
from app.core.config import settings
from app.core.metrics import TASK_RETRIES
from app.models.task import TaskStatus
from app.services import task_store

logger = logging.getLogger(__name__)


class RetryDecision(str, enum.Enum):
    REQUEUED = "requeued"
    EXHAUSTED = "exhausted"
    REQUEUE_FAILED = "requeue_failed"
    TERMINAL = "terminal"  # an earlier resubmission was rejected
    RACED = "raced"  # status or retry_count changed under us
    NOT_FOUND = "not_found"


async def retry_failed_task(
    session_factory: async_sessionmaker[AsyncSession],
    submitter: BaseTaskSubmitter,
    task_id: str,
    reason: str,
    max_retries: int | None = None,
) -> RetryDecision:
    max_retries = settings.max_task_retries if max_retries is None else max_retries
    log_extra = {"task_id": task_id}

    async with session_factory() as db:
        ctx = await task_store.load_task_context(db, task_id)
        if ctx is None:
            logger.warning("Retry skipped: task not found", extra=log_extra)
            return RetryDecision.NOT_FOUND

        if ctx.status != TaskStatus.FAILED.value:
            logger.info("Retry skipped: task is %s, not FAILED", ctx.status, extra=log_extra)
            TASK_RETRIES.labels(decision=RetryDecision.RACED.value).inc()
            return RetryDecision.RACED

        if ctx.requeue_failed:
            logger.info("Retry skipped: resubmission already failed (%s)", ctx.last_failure_reason, extra=log_extra)
            TASK_RETRIES.labels(decision=RetryDecision.TERMINAL.value).inc()
            return RetryDecision.TERMINAL

        if ctx.retry_count >= max_retries:
            logger.warning(
                "Task failed permanently after %d retries (%s)", ctx.retry_count, reason, extra=log_extra
            )
            TASK_RETRIES.labels(decision=RetryDecision.EXHAUSTED.value).inc()
            return RetryDecision.EXHAUSTED

        claimed = await task_store.reset_for_retry(db, task_id, expected_retry_count=ctx.retry_count, reason=reason)
        if not claimed:
            logger.info("Retry skipped: another delivery already requeued the task", extra=log_extra)
            TASK_RETRIES.labels(decision=RetryDecision.RACED.value).inc()
            return RetryDecision.RACED

        try:
            await submitter.submit(ctx.prompt_text, ctx.locale, ctx.channel, task_id)
        except Exception as e:
            failure = f"{task_store.REQUEUE_FAILED_PREFIX}: {type(e).__name__}: {e}"
            logger.error("Task resubmission failed: %s", failure, extra=log_extra)
            await task_store.mark_failed(db, task_id, failure)
            TASK_RETRIES.labels(decision=RetryDecision.REQUEUE_FAILED.value).inc()
            return RetryDecision.REQUEUE_FAILED

    logger.info("Task requeued (retry %d/%d)", ctx.retry_count + 1, max_retries, extra=log_extra)
    TASK_RETRIES.labels(decision=RetryDecision.REQUEUED.value).inc()
    return RetryDecision.REQUEUED
