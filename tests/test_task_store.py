"""Tests for task status transitions and TaskContext."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from app.analysis.types import CompetitorSignal, Signals
from app.services import task_store


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _returning(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    return result


class TestTaskContext:
    def test_day_is_utc(self, make_context):
        ctx = make_context(created_at=datetime(2026, 3, 14, 23, 30, tzinfo=timezone(timedelta(hours=-5))))
        assert ctx.day.isoformat() == "2026-03-15"

    def test_naive_created_at_treated_as_utc(self, make_context):
        ctx = make_context(created_at=datetime(2026, 3, 14, 23, 59))
        assert ctx.day.isoformat() == "2026-03-14"

    def test_signals_from_columns(self, make_context):
        ctx = make_context(
            extracted_sentiment=70.0,
            extracted_position=2,
            extracted_competitors=[{"name": "Globex", "position": 1, "sentiment": 60.0}, "Initech", {"x": 1}],
        )
        signals = ctx.signals
        assert signals.position == 2
        assert [c.name for c in signals.competitors] == ["Globex", "Initech"]

    def test_requeue_failed_flag(self, make_context):
        assert make_context(last_failure_reason="requeue_failed: HTTPStatusError: 503").requeue_failed
        assert not make_context(last_failure_reason="provider_status: FAILED").requeue_failed
        assert not make_context().requeue_failed


class TestMarkSuccess:
    @pytest.mark.asyncio
    async def test_transition(self, db):
        db.execute.return_value = _returning("task-1")
        signals = Signals(sentiment=70.0, position=2, competitors=[CompetitorSignal("Globex", 1, 60.0)])

        changed = await task_store.mark_success(db, "task-1", {"text": "answer"}, signals)

        assert changed is True
        stmt = db.execute.call_args.args[0]
        sql = _sql(stmt)
        assert "UPDATE tasks" in sql
        assert "tasks.status != " in sql
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["extracted_position"] == 2
        assert params["extracted_competitors"] == [{"name": "Globex", "position": 1, "sentiment": 60.0}]
        db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_is_noop(self, db):
        db.execute.return_value = _returning(None)
        assert await task_store.mark_success(db, "task-1", {"text": "answer"}, None) is False

    @pytest.mark.asyncio
    async def test_null_signals_stored_as_nulls(self, db):
        db.execute.return_value = _returning("task-1")
        await task_store.mark_success(db, "task-1", {"text": "answer"}, None)
        params = db.execute.call_args.args[0].compile(dialect=postgresql.dialect()).params
        assert params["extracted_sentiment"] is None
        assert params["extracted_position"] is None
        assert params["extracted_competitors"] is None


class TestMarkFailed:
    @pytest.mark.asyncio
    async def test_never_overwrites_success(self, db):
        db.execute.return_value = _returning(None)
        assert await task_store.mark_failed(db, "task-1", "provider error") is False
        sql = _sql(db.execute.call_args.args[0])
        assert "tasks.status != " in sql

    @pytest.mark.asyncio
    async def test_reason_truncated(self, db):
        db.execute.return_value = _returning("task-1")
        await task_store.mark_failed(db, "task-1", "x" * 5000)
        params = db.execute.call_args.args[0].compile(dialect=postgresql.dialect()).params
        assert len(params["last_failure_reason"]) == 2000

    @pytest.mark.asyncio
    async def test_keeps_terminal_requeue_failure(self, db):
        db.execute.return_value = _returning(None)
        assert await task_store.mark_failed(db, "task-1", "provider_status: FAILED") is False
        compiled = db.execute.call_args.args[0].compile(dialect=postgresql.dialect())
        assert "tasks.last_failure_reason IS NULL" in str(compiled)
        assert "tasks.last_failure_reason NOT LIKE" in str(compiled)
        assert "requeue_failed%" in compiled.params.values()


class TestResetForRetry:
    @pytest.mark.asyncio
    async def test_conditional_on_status_and_count(self, db):
        db.execute.return_value = _returning("task-1")
        assert await task_store.reset_for_retry(db, "task-1", expected_retry_count=2, reason="timeout") is True
        sql = _sql(db.execute.call_args.args[0])
        assert "tasks.status = " in sql
        assert "tasks.retry_count = " in sql
        assert "tasks.retry_count + " in sql

    @pytest.mark.asyncio
    async def test_lost_race(self, db):
        db.execute.return_value = _returning(None)
        assert await task_store.reset_for_retry(db, "task-1", expected_retry_count=0, reason="x") is False
