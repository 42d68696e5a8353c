from fastapi import Request

from app.db.postgres import async_session_factory
from app.services.batch_processor import BatchProcessor
from app.services.chart_service import ChartSnapshotCache
from app.services.completion_handler import CompletionHandler


def get_completion_handler(request: Request) -> CompletionHandler:
    """The handler is built once in the app lifespan (it owns the background runner)."""
    return request.app.state.completion_handler


def get_batch_processor(request: Request) -> BatchProcessor:
    handler = getattr(request.app.state, "completion_handler", None)
    if handler is None:
        return BatchProcessor(async_session_factory)
    return BatchProcessor(async_session_factory, handler.resolver, classifier=handler.classifier)


def get_chart_cache() -> ChartSnapshotCache:
    return ChartSnapshotCache()
