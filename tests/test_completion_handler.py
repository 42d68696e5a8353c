"""Tests for the completion webhook handler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.analysis.types import CompetitorSignal, ResolvedCompetitor, Signals
from app.schemas.webhook import CompletionEvent
from app.services import completion_handler as ch
from app.services import task_store
from app.services.completion_handler import CompletionHandler, Outcome


class RecordingBackground:
    """Captures spawned continuations without running them."""

    def __init__(self):
        self.spawned: list[tuple[str, str | None]] = []
        self.coros = []

    def spawn(self, coro, *, name, task_id=None):
        self.spawned.append((name, task_id))
        self.coros.append(coro)

    def close(self):
        for coro in self.coros:
            coro.close()


@pytest.fixture
def background():
    bg = RecordingBackground()
    yield bg
    bg.close()


@pytest.fixture
def extractor():
    ex = MagicMock()
    ex.extract = AsyncMock(return_value=Signals(sentiment=70.0, position=2, competitors=[CompetitorSignal("Globex", 1)]))
    return ex


@pytest.fixture
def handler(session_factory, extractor, background):
    return CompletionHandler(
        session_factory=session_factory,
        extractor=extractor,
        resolver=MagicMock(),
        submitter=AsyncMock(),
        background=background,
        max_retries=3,
        budget_seconds=5,
    )


def _event(status="COMPLETED", response=None, task_id="task-1"):
    return CompletionEvent.model_validate(
        {
            "task": {"id": "prov-99", "status": status, "idempotencyKey": task_id},
            "response": response if response is not None else {"text": "Globex and Acme are popular."},
        }
    )


class TestSuccess:
    @pytest.mark.asyncio
    async def test_success_spawns_both_continuations(self, handler, background, extractor, make_context):
        with (
            patch.object(task_store, "load_task_context", AsyncMock(return_value=make_context())),
            patch.object(task_store, "mark_success", AsyncMock(return_value=True)) as mark_success,
        ):
            outcome = await handler.handle(_event())

        assert outcome.outcome == Outcome.SUCCESS
        assert outcome.scheduled == ["metrics", "sources"]
        assert background.spawned == [("metrics", "task-1"), ("sources", "task-1")]
        extractor.extract.assert_awaited_once_with("Globex and Acme are popular.", "Acme", task_id="task-1")
        signals = mark_success.call_args.args[3]
        assert signals.position == 2

    @pytest.mark.asyncio
    async def test_duplicate_success_skips_aggregation(self, handler, background, make_context):
        with (
            patch.object(task_store, "load_task_context", AsyncMock(return_value=make_context(status="SUCCESS"))),
            patch.object(task_store, "mark_success", AsyncMock(return_value=False)),
        ):
            outcome = await handler.handle(_event())

        assert outcome.outcome == Outcome.DUPLICATE
        assert background.spawned == []

    @pytest.mark.asyncio
    async def test_no_answer_text_stores_null_signals(self, handler, background, extractor, make_context):
        with (
            patch.object(task_store, "load_task_context", AsyncMock(return_value=make_context())),
            patch.object(task_store, "mark_success", AsyncMock(return_value=True)) as mark_success,
        ):
            outcome = await handler.handle(_event(response={"status": "done"}))

        assert outcome.outcome == Outcome.SUCCESS
        extractor.extract.assert_not_awaited()
        assert mark_success.call_args.args[3] is None
        assert len(background.spawned) == 2

    @pytest.mark.asyncio
    async def test_extraction_failure_still_succeeds(self, handler, extractor, make_context):
        extractor.extract.return_value = None
        with (
            patch.object(task_store, "load_task_context", AsyncMock(return_value=make_context())),
            patch.object(task_store, "mark_success", AsyncMock(return_value=True)),
        ):
            outcome = await handler.handle(_event())
        assert outcome.outcome == Outcome.SUCCESS


class TestFailure:
    @pytest.mark.asyncio
    async def test_unknown_task(self, handler, background):
        with patch.object(task_store, "load_task_context", AsyncMock(return_value=None)):
            outcome = await handler.handle(_event(task_id="ghost"))
        assert outcome.outcome == Outcome.UNKNOWN_TASK
        assert outcome.task_id == "ghost"
        assert background.spawned == []

    @pytest.mark.asyncio
    async def test_failed_event_schedules_retry(self, handler, background, make_context):
        with (
            patch.object(task_store, "load_task_context", AsyncMock(return_value=make_context())),
            patch.object(task_store, "mark_failed", AsyncMock(return_value=True)) as mark_failed,
        ):
            outcome = await handler.handle(_event(status="FAILED", response={}))

        assert outcome.outcome == Outcome.FAILED
        assert background.spawned == [("retry", "task-1")]
        assert mark_failed.call_args.args[2] == "provider_status: FAILED"
        assert mark_failed.call_args.kwargs["raw_payload"] is None

    @pytest.mark.asyncio
    async def test_late_failure_after_success_ignored(self, handler, background, make_context):
        with (
            patch.object(task_store, "load_task_context", AsyncMock(return_value=make_context(status="SUCCESS"))),
            patch.object(task_store, "mark_failed", AsyncMock(return_value=False)),
        ):
            outcome = await handler.handle(_event(status="FAILED"))

        assert outcome.outcome == Outcome.LATE_FAILURE
        assert background.spawned == []

    @pytest.mark.asyncio
    async def test_budget_exceeded(self, handler, make_context):
        async def slow_load(db, task_id):
            await asyncio.sleep(5)

        handler.budget_seconds = 0.01
        with patch.object(task_store, "load_task_context", side_effect=slow_load):
            outcome = await handler.handle(_event())
        assert outcome.outcome == Outcome.TIMEOUT


class TestContinuations:
    @pytest.mark.asyncio
    async def test_metrics_continuation_resolves_then_aggregates(self, handler, make_context):
        ctx = make_context()
        resolved = [ResolvedCompetitor(entity_id=ctx.prompt_id, name="Globex", position=1)]
        handler.resolver.resolve = AsyncMock(return_value=resolved)
        signals = Signals(position=2, competitors=[CompetitorSignal("Globex", 1)])

        with patch.object(ch, "aggregate_metrics", AsyncMock()) as aggregate:
            await handler._metrics_continuation(ctx, signals)

        aggregate.assert_awaited_once_with(handler.session_factory, ctx, signals, resolved)

    @pytest.mark.asyncio
    async def test_resolution_failure_aggregates_without_competitors(self, handler, make_context):
        ctx = make_context()
        handler.resolver.resolve = AsyncMock(side_effect=RuntimeError("llm down"))
        signals = Signals(position=2, competitors=[CompetitorSignal("Globex", 1)])

        with patch.object(ch, "aggregate_metrics", AsyncMock()) as aggregate:
            await handler._metrics_continuation(ctx, signals)

        assert aggregate.call_args.args[3] == []

    @pytest.mark.asyncio
    async def test_sources_continuation_recalculates_each_tenant(self, handler, make_context):
        import uuid

        tenants = [uuid.uuid4(), uuid.uuid4()]
        ctx = make_context(tenant_ids=tenants)

        with (
            patch.object(ch, "aggregate_sources", AsyncMock()) as aggregate,
            patch.object(ch, "recalculate_daily_utilization", AsyncMock(side_effect=[RuntimeError("x"), 2])) as recalc,
        ):
            await handler._sources_continuation(ctx, [])

        aggregate.assert_awaited_once()
        assert [c.args[2] for c in recalc.call_args_list] == tenants

    @pytest.mark.asyncio
    async def test_sources_continuation_classifies_new_sources(self, handler, make_context):
        handler.classifier = MagicMock()
        with (
            patch.object(ch, "aggregate_sources", AsyncMock()) as aggregate,
            patch.object(ch, "recalculate_daily_utilization", AsyncMock(return_value=0)),
        ):
            await handler._sources_continuation(make_context(), [])

        assert aggregate.await_args.args[3] is handler.classifier.classify

    def test_production_wiring_shares_classifier(self, background):
        built = ch.build_completion_handler(MagicMock(), background)
        assert built.classifier is not None
        assert built.resolver.fetch_info == built.classifier.describe
