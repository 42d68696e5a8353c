from app.models.aggregation_ledger import AggregationLedger
from app.models.chart_snapshot import ChartSnapshot
from app.models.entity import CompetitorLink, Entity, EntityOwnership
from app.models.metrics_bucket import MetricsBucket, SourceMetricsBucket
from app.models.prompt import Prompt
from app.models.source import Source, TaskSource
from app.models.task import Task
from app.models.tenant import Tenant

__all__ = [
    "AggregationLedger",
    "ChartSnapshot",
    "CompetitorLink",
    "Entity",
    "EntityOwnership",
    "MetricsBucket",
    "Prompt",
    "Source",
    "SourceMetricsBucket",
    "Task",
    "TaskSource",
    "Tenant",
]
