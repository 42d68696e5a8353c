"""DTOs passed between the payload parser, the signal analyzer and the aggregators."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field


class SourceType(str, enum.Enum):
    """What kind of site a domain is, as shown on the sources dashboard."""

    NEWS = "NEWS"
    BLOG = "BLOG"
    SOCIAL_MEDIA = "SOCIAL_MEDIA"
    FORUM = "FORUM"
    CORPORATE = "CORPORATE"
    E_COMMERCE = "E_COMMERCE"
    WIKI = "WIKI"
    GOVERNMENT = "GOVERNMENT"
    REVIEW = "REVIEW"
    OTHER = "OTHER"

    @classmethod
    def coerce(cls, value) -> SourceType:
        """Lenient parse of a model answer (``"e-commerce"``, ``"Social media"``); unknown -> OTHER."""
        if isinstance(value, str):
            key = value.strip().upper().replace("-", "_").replace(" ", "_")
            if key in cls.__members__:
                return cls[key]
        return cls.OTHER


@dataclass(frozen=True)
class CompetitorSignal:
    """A brand named in an answer alongside (or instead of) the tracked entity."""

    name: str
    position: int | None = None
    sentiment: float | None = None

    def to_dict(self) -> dict:
        return {"name": self.name, "position": self.position, "sentiment": self.sentiment}


@dataclass(frozen=True)
class Signals:
    """Structured result of analyzing one answer for one entity."""

    sentiment: float | None = None  # 0..100, 50 is neutral
    position: int | None = None  # 1 = most prominent; None = not mentioned
    competitors: list[CompetitorSignal] = field(default_factory=list)

    @classmethod
    def from_task_columns(cls, sentiment, position, competitors: list | None) -> Signals:
        """Rebuild from the extracted_* columns of a stored Task."""
        parsed: list[CompetitorSignal] = []
        for item in competitors or []:
            if isinstance(item, dict) and item.get("name"):
                parsed.append(
                    CompetitorSignal(
                        name=str(item["name"]),
                        position=item.get("position"),
                        sentiment=item.get("sentiment"),
                    )
                )
            elif isinstance(item, str) and item.strip():
                parsed.append(CompetitorSignal(name=item.strip()))
        return cls(sentiment=sentiment, position=position, competitors=parsed)


@dataclass(frozen=True)
class ExtractedSource:
    """A cited URL found in a provider payload, deduplicated within one answer."""

    url: str
    hostname: str
    title: str | None = None
    occurrences: int = 1


@dataclass(frozen=True)
class ResolvedCompetitor:
    """A competitor signal matched to an Entity row."""

    entity_id: uuid.UUID
    name: str
    position: int | None = None
    sentiment: float | None = None


@dataclass
class DomainInfo:
    """What is known about a website: homepage metadata, optionally enriched by the analyzer."""

    domain: str
    name: str | None = None
    description: str | None = None
    type: SourceType | None = None

    @property
    def has_metadata(self) -> bool:
        return bool(self.name or self.description)
