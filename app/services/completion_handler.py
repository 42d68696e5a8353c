"""Completion handler for provider callbacks.

Synchronous prefix (bounded by ``completion_budget_seconds``):

  1. load the task (unknown ids are logged and dropped)
  2. non-success -> FAILED + retry policy in the background
  3. pull the answer text from the payload
  4. best-effort signal extraction
  5. conditional SUCCESS write; a duplicate delivery stops here

Background continuations, independent of each other:

  metrics  competitor resolution -> metrics aggregation
  sources  new-source classification -> source aggregation -> utilization recalculation per tenant
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.analysis.payload import extract_answer_text, extract_sources
from app.analysis.signal_extractor import SignalExtractor
from app.analysis.types import ExtractedSource, Signals
from app.collectors.base import BaseTaskSubmitter
from app.core.config import settings
from app.core.metrics import AGGREGATION_FAILURES, COMPLETION_EVENTS
from app.schemas.webhook import CompletionEvent
from app.services import task_store
from app.services.background import BackgroundRunner
from app.services.competitor_resolver import CompetitorResolver
from app.services.domain_classifier import DomainClassifier
from app.services.metrics_aggregator import aggregate_metrics
from app.services.retry_policy import retry_failed_task
from app.services.source_aggregator import aggregate_sources, recalculate_daily_utilization
from app.services.task_store import TaskContext

logger = logging.getLogger(__name__)


class Outcome:
    SUCCESS = "success"
    FAILED = "failed"
    DUPLICATE = "duplicate"
    UNKNOWN_TASK = "unknown_task"
    LATE_FAILURE = "late_failure"  # FAILED after SUCCESS, ignored
    TIMEOUT = "timeout"


@dataclass
class CompletionOutcome:
    task_id: str
    outcome: str
    scheduled: list[str] = field(default_factory=list)


class CompletionHandler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        extractor: SignalExtractor,
        resolver: CompetitorResolver,
        submitter: BaseTaskSubmitter,
        background: BackgroundRunner,
        *,
        classifier: DomainClassifier | None = None,
        max_retries: int | None = None,
        budget_seconds: float | None = None,
    ):
        self.session_factory = session_factory
        self.extractor = extractor
        self.resolver = resolver
        self.submitter = submitter
        self.background = background
        self.classifier = classifier
        self.max_retries = settings.max_task_retries if max_retries is None else max_retries
        self.budget_seconds = budget_seconds or settings.completion_budget_seconds

    async def handle(self, event: CompletionEvent) -> CompletionOutcome:
        try:
            outcome = await asyncio.wait_for(self._handle(event), timeout=self.budget_seconds)
        except asyncio.TimeoutError:
            logger.error(
                "Completion handling exceeded %.0fs budget", self.budget_seconds, extra={"task_id": event.task_id}
            )
            outcome = CompletionOutcome(event.task_id, Outcome.TIMEOUT)
        COMPLETION_EVENTS.labels(outcome=outcome.outcome).inc()
        return outcome

    async def _handle(self, event: CompletionEvent) -> CompletionOutcome:
        task_id = event.task_id
        log_extra = {"task_id": task_id}

        async with self.session_factory() as db:
            ctx = await task_store.load_task_context(db, task_id)
        if ctx is None:
            logger.warning("Completion for unknown task, discarding", extra=log_extra)
            return CompletionOutcome(task_id, Outcome.UNKNOWN_TASK)

        if not event.is_success:
            return await self._handle_failure(ctx, event)

        text = extract_answer_text(event.response)
        signals: Signals | None = None
        if text is None:
            logger.warning("No answer text in payload, storing raw payload only", extra=log_extra)
        else:
            signals = await self.extractor.extract(text, ctx.entity_name, task_id=task_id)

        async with self.session_factory() as db:
            transitioned = await task_store.mark_success(db, task_id, event.response, signals)
        if not transitioned:
            logger.info("Duplicate completion for already successful task, skipping", extra=log_extra)
            return CompletionOutcome(task_id, Outcome.DUPLICATE)

        sources = extract_sources(event.response)
        self.background.spawn(self._metrics_continuation(ctx, signals), name="metrics", task_id=task_id)
        self.background.spawn(self._sources_continuation(ctx, sources), name="sources", task_id=task_id)

        logger.info(
            "Task completed (position=%s, sentiment=%s, competitors=%d, sources=%d)",
            signals.position if signals else None,
            signals.sentiment if signals else None,
            len(signals.competitors) if signals else 0,
            len(sources),
            extra=log_extra,
        )
        return CompletionOutcome(task_id, Outcome.SUCCESS, scheduled=["metrics", "sources"])

    async def _handle_failure(self, ctx: TaskContext, event: CompletionEvent) -> CompletionOutcome:
        reason = f"provider_status: {event.task.status}"
        async with self.session_factory() as db:
            changed = await task_store.mark_failed(db, ctx.task_id, reason, raw_payload=event.response or None)
        if not changed:
            logger.info("FAILED event ignored: task already succeeded or failed terminally", extra={"task_id": ctx.task_id})
            return CompletionOutcome(ctx.task_id, Outcome.LATE_FAILURE)

        logger.warning("Provider reported task failure (%s)", event.task.status, extra={"task_id": ctx.task_id})
        self.background.spawn(
            retry_failed_task(self.session_factory, self.submitter, ctx.task_id, reason, self.max_retries),
            name="retry",
            task_id=ctx.task_id,
        )
        return CompletionOutcome(ctx.task_id, Outcome.FAILED, scheduled=["retry"])

    async def _metrics_continuation(self, ctx: TaskContext, signals: Signals | None) -> None:
        competitors = []
        if signals and signals.competitors:
            try:
                competitors = await self.resolver.resolve(self.session_factory, ctx, signals.competitors)
            except Exception as e:
                AGGREGATION_FAILURES.labels(kind="resolution").inc()
                logger.warning("Competitor resolution failed, aggregating without competitors: %s", e, extra={"task_id": ctx.task_id})
        await aggregate_metrics(self.session_factory, ctx, signals, competitors)

    async def _sources_continuation(self, ctx: TaskContext, sources: list[ExtractedSource]) -> None:
        classify = self.classifier.classify if self.classifier else None
        await aggregate_sources(self.session_factory, ctx, sources, classify)
        for tenant_id in ctx.tenant_ids:
            try:
                async with self.session_factory() as db:
                    await recalculate_daily_utilization(db, ctx.entity_id, tenant_id, ctx.day)
            except Exception as e:
                AGGREGATION_FAILURES.labels(kind="utilization").inc()
                logger.error(
                    "Utilization recalculation failed: %s: %s",
                    type(e).__name__,
                    e,
                    extra={"task_id": ctx.task_id, "tenant_id": tenant_id},
                )


def build_completion_handler(
    session_factory: async_sessionmaker[AsyncSession],
    background: BackgroundRunner,
) -> CompletionHandler:
    """Wire the production collaborators (OpenAI analyzer, monitoring provider)."""
    from app.analysis.signal_extractor import OpenAiSignalAnalyzer
    from app.collectors.task_provider import MonitoringTaskProvider

    analyzer = OpenAiSignalAnalyzer()
    classifier = DomainClassifier(analyzer)
    return CompletionHandler(
        session_factory=session_factory,
        extractor=SignalExtractor(analyzer),
        resolver=CompetitorResolver(domain_resolver=analyzer, fetch_info=classifier.describe),
        submitter=MonitoringTaskProvider(),
        background=background,
        classifier=classifier,
    )
