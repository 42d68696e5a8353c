"""Pure aggregation math shared by the bucket upserts and their tests.

Every bucket is a running aggregate of observations. Two partial buckets
merge into the same result regardless of how the observations were split or
ordered, which is what lets concurrent writers update a row without reading
it first. The SQL in ``app.services.metrics_aggregator`` mirrors these
functions expression for expression.
"""

from __future__ import annotations

from dataclasses import dataclass

VISIBILITY_DECIMALS = 2
UTILIZATION_DECIMALS = 2


def weighted_merge(a: float | None, n_a: int, b: float | None, n_b: int) -> float | None:
    """Merge two weighted means.

    null if both are null, A if B is null, B if A is null, otherwise
    ``(A*nA + B*nB) / (nA + nB)``.
    """
    if a is None and b is None:
        return None
    if b is None:
        return a
    if a is None:
        return b
    total = n_a + n_b
    if total <= 0:
        return None
    return (a * n_a + b * n_b) / total


def visibility_score(total_mentions: int, total_results: int) -> float:
    """Percentage of observations that mentioned the entity (binary per observation)."""
    if total_results <= 0:
        return 0.0
    return round(100.0 * total_mentions / total_results, VISIBILITY_DECIMALS)


def utilization(unique_prompts: int, daily_prompts: int) -> float | None:
    """Share of the day's distinct successful prompts that cited a source.

    Returns None when there is nothing to divide by; the caller leaves the
    stored value untouched in that case.
    """
    if daily_prompts <= 0:
        return None
    raw = 100.0 * unique_prompts / daily_prompts
    return round(min(max(raw, 0.0), 100.0), UTILIZATION_DECIMALS)


def is_mention(position: int | None) -> bool:
    return position is not None and position > 0


@dataclass(frozen=True)
class BucketState:
    """In-memory twin of a MetricsBucket row."""

    total_mentions: int = 0
    total_results: int = 0
    average_position: float | None = None
    position_samples: int = 0
    average_sentiment: float | None = None
    sentiment_samples: int = 0

    @property
    def visibility_score(self) -> float:
        return visibility_score(self.total_mentions, self.total_results)

    def merge(self, other: BucketState) -> BucketState:
        return BucketState(
            total_mentions=self.total_mentions + other.total_mentions,
            total_results=self.total_results + other.total_results,
            average_position=weighted_merge(
                self.average_position, self.position_samples, other.average_position, other.position_samples
            ),
            position_samples=self.position_samples + other.position_samples,
            average_sentiment=weighted_merge(
                self.average_sentiment, self.sentiment_samples, other.average_sentiment, other.sentiment_samples
            ),
            sentiment_samples=self.sentiment_samples + other.sentiment_samples,
        )


def own_observation(position: int | None, sentiment: float | None) -> BucketState:
    """Delta for the entity's own bucket from one successful task.

    Position and sentiment only contribute when the entity was actually
    mentioned, so a non-null average is always backed by at least one mention.
    """
    if not is_mention(position):
        return BucketState(total_results=1)
    return BucketState(
        total_mentions=1,
        total_results=1,
        average_position=float(position),
        position_samples=1,
        average_sentiment=sentiment,
        sentiment_samples=1 if sentiment is not None else 0,
    )


def competitor_observation(position: int | None, sentiment: float | None) -> BucketState:
    """Delta for a competitor bucket. Being named in the answer counts as a mention."""
    has_position = position is not None and position > 0
    return BucketState(
        total_mentions=1,
        total_results=1,
        average_position=float(position) if has_position else None,
        position_samples=1 if has_position else 0,
        average_sentiment=sentiment,
        sentiment_samples=1 if sentiment is not None else 0,
    )
