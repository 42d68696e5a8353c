"""Tests for bounded task retry."""

from unittest.mock import AsyncMock, patch

import pytest

from app.core.exceptions import TaskSubmissionError
from app.services import task_store
from app.services.retry_policy import RetryDecision, retry_failed_task


@pytest.fixture
def submitter():
    s = AsyncMock()
    s.submit = AsyncMock(return_value=None)
    return s


@pytest.mark.asyncio
async def test_requeue_under_limit(session_factory, submitter, make_context):
    ctx = make_context(status="FAILED", retry_count=2)
    with (
        patch.object(task_store, "load_task_context", AsyncMock(return_value=ctx)),
        patch.object(task_store, "reset_for_retry", AsyncMock(return_value=True)) as reset,
        patch.object(task_store, "mark_failed", AsyncMock()) as mark_failed,
    ):
        decision = await retry_failed_task(session_factory, submitter, "task-1", "timeout", max_retries=3)

    assert decision == RetryDecision.REQUEUED
    reset.assert_awaited_once()
    assert reset.call_args.kwargs["expected_retry_count"] == 2
    submitter.submit.assert_awaited_once_with(ctx.prompt_text, "US", "chatgpt", "task-1")
    mark_failed.assert_not_awaited()


@pytest.mark.asyncio
async def test_exhausted_at_limit(session_factory, submitter, make_context):
    ctx = make_context(status="FAILED", retry_count=3)
    with (
        patch.object(task_store, "load_task_context", AsyncMock(return_value=ctx)),
        patch.object(task_store, "reset_for_retry", AsyncMock()) as reset,
    ):
        decision = await retry_failed_task(session_factory, submitter, "task-1", "timeout", max_retries=3)

    assert decision == RetryDecision.EXHAUSTED
    reset.assert_not_awaited()
    submitter.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_resubmission_failure_is_terminal(session_factory, submitter, make_context):
    ctx = make_context(status="FAILED", retry_count=0)
    submitter.submit.side_effect = TaskSubmissionError("provider 503")
    with (
        patch.object(task_store, "load_task_context", AsyncMock(return_value=ctx)),
        patch.object(task_store, "reset_for_retry", AsyncMock(return_value=True)),
        patch.object(task_store, "mark_failed", AsyncMock(return_value=True)) as mark_failed,
    ):
        decision = await retry_failed_task(session_factory, submitter, "task-1", "timeout", max_retries=3)

    assert decision == RetryDecision.REQUEUE_FAILED
    reason = mark_failed.call_args.args[2]
    assert reason.startswith("requeue_failed")
    assert "provider 503" in reason


@pytest.mark.asyncio
async def test_lost_race_does_not_resubmit(session_factory, submitter, make_context):
    ctx = make_context(status="FAILED", retry_count=1)
    with (
        patch.object(task_store, "load_task_context", AsyncMock(return_value=ctx)),
        patch.object(task_store, "reset_for_retry", AsyncMock(return_value=False)),
    ):
        decision = await retry_failed_task(session_factory, submitter, "task-1", "timeout", max_retries=3)

    assert decision == RetryDecision.RACED
    submitter.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_not_failed_anymore(session_factory, submitter, make_context):
    ctx = make_context(status="SUCCESS")
    with patch.object(task_store, "load_task_context", AsyncMock(return_value=ctx)):
        decision = await retry_failed_task(session_factory, submitter, "task-1", "late", max_retries=3)
    assert decision == RetryDecision.RACED


@pytest.mark.asyncio
async def test_unknown_task(session_factory, submitter):
    with patch.object(task_store, "load_task_context", AsyncMock(return_value=None)):
        decision = await retry_failed_task(session_factory, submitter, "ghost", "x", max_retries=3)
    assert decision == RetryDecision.NOT_FOUND


@pytest.mark.asyncio
async def test_failed_resubmission_is_not_retried_again(session_factory, submitter, make_context):
    # Redelivered FAILED event after a rejected resubmission, retry budget left
    ctx = make_context(status="FAILED", retry_count=1, last_failure_reason="requeue_failed: TaskSubmissionError: 503")
    with (
        patch.object(task_store, "load_task_context", AsyncMock(return_value=ctx)),
        patch.object(task_store, "reset_for_retry", AsyncMock(return_value=True)) as reset,
    ):
        decision = await retry_failed_task(session_factory, submitter, "task-1", "timeout", max_retries=3)

    assert decision == RetryDecision.TERMINAL
    reset.assert_not_awaited()
    submitter.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_provider_failure_reason_still_retried(session_factory, submitter, make_context):
    ctx = make_context(status="FAILED", retry_count=1, last_failure_reason="provider_status: FAILED")
    with (
        patch.object(task_store, "load_task_context", AsyncMock(return_value=ctx)),
        patch.object(task_store, "reset_for_retry", AsyncMock(return_value=True)),
    ):
        decision = await retry_failed_task(session_factory, submitter, "task-1", "timeout", max_retries=3)

    assert decision == RetryDecision.REQUEUED
    submitter.submit.assert_awaited_once()
