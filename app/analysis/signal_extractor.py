"""Signal extraction: sentiment, position and competitors for one answer.

The analyzer itself is an LLM call (OpenAI chat completions in JSON mode).
The same analyzer also describes and classifies websites (``describe_domain``).
``SignalExtractor`` wraps any analyzer with the enrichment timeout and turns
every failure into ``None`` so the caller can keep the raw payload and move on.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Protocol

import httpx

from app.analysis.types import CompetitorSignal, DomainInfo, Signals, SourceType
from app.core.config import settings
from app.core.exceptions import SignalExtractionError

logger = logging.getLogger(__name__)


_ANALYZE_PROMPT = """You are a professional market analyst. Analyze the text below to understand
the competitive landscape for the brand "{entity_name}".

1. Identify every brand name mentioned in the text.
2. Rank them by prominence in the text (1 = most prominent).
3. If "{entity_name}" is mentioned, rate its sentiment from 0 to 100
   (0 = very negative, 50 = neutral, 100 = very positive) and give its rank.
4. If "{entity_name}" is NOT mentioned, sentiment and position must be null.

Reply with a single JSON object:
{{"sentiment": number|null, "position": integer|null,
  "competitors": [{{"name": "...", "position": integer, "sentiment": number|null}}] | null}}

"competitors" lists ALL brands you identified (including "{entity_name}"), ordered by rank.

Text to analyze:
---
{text}
---"""


_DOMAIN_TYPES = ", ".join(t.value for t in SourceType)

_DESCRIBE_DOMAIN_PROMPT = """Describe the website "{domain}".
{metadata}
Reply with a single JSON object:
{{"name": "brand or site name", "description": "one or two sentences", "type": "one of: {types}"}}

Use null for name or description if you do not know them. Pick "OTHER" when no type fits."""


class SignalAnalyzer(Protocol):
    async def analyze(self, text: str, entity_name: str) -> Signals: ...


def _clamp_sentiment(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(min(max(value, 0), 100))


def _as_position(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int) and value > 0:
        return value
    return None


def _json_object(raw: str) -> dict:
    # Strip markdown code fences
    cleaned = re.sub(r"```(?:json)?\s*", "", raw).strip()
    cleaned = re.sub(r"```\s*$", "", cleaned).strip()

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", cleaned, re.DOTALL)
        if not match:
            raise SignalExtractionError(f"No JSON object in analyzer reply: {raw[:200]!r}")
        try:
            data = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise SignalExtractionError(f"Invalid JSON in analyzer reply: {e}") from e

    if not isinstance(data, dict):
        raise SignalExtractionError(f"Analyzer reply is not an object: {type(data).__name__}")
    return data


def parse_signals(raw: str) -> Signals:
    """Parse the analyzer's JSON answer. Raises SignalExtractionError on garbage."""
    data = _json_object(raw)

    competitors: list[CompetitorSignal] = []
    for idx, item in enumerate(data.get("competitors") or []):
        # Older prompt versions returned a bare ranked list of names
        if isinstance(item, str) and item.strip():
            competitors.append(CompetitorSignal(name=item.strip(), position=idx + 1))
        elif isinstance(item, dict) and isinstance(item.get("name"), str) and item["name"].strip():
            competitors.append(
                CompetitorSignal(
                    name=item["name"].strip(),
                    position=_as_position(item.get("position")) or idx + 1,
                    sentiment=_clamp_sentiment(item.get("sentiment")),
                )
            )

    return Signals(
        sentiment=_clamp_sentiment(data.get("sentiment")),
        position=_as_position(data.get("position")),
        competitors=competitors,
    )


def _short_text(value: Any, limit: int) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()[:limit]


def parse_domain_description(raw: str, domain: str) -> DomainInfo:
    """Parse a describe_domain reply. Unknown or missing types become OTHER."""
    data = _json_object(raw)
    return DomainInfo(
        domain=domain,
        name=_short_text(data.get("name"), 255),
        description=_short_text(data.get("description"), 1000),
        type=SourceType.coerce(data.get("type")),
    )


class OpenAiSignalAnalyzer:
    """SignalAnalyzer backed by OpenAI chat completions."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        api_url: str | None = None,
        timeout: float | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.analyzer_model
        self.api_url = api_url or settings.openai_api_url
        self.timeout = timeout or settings.enrichment_timeout_seconds

    async def _complete(self, prompt: str, max_tokens: int = 1000) -> str:
        if not self.api_key:
            raise SignalExtractionError("OPENAI_API_KEY is not configured")

        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(
                self.api_url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
            resp.raise_for_status()

        data = resp.json()
        return data.get("choices", [{}])[0].get("message", {}).get("content", "").strip()

    async def analyze(self, text: str, entity_name: str) -> Signals:
        raw = await self._complete(_ANALYZE_PROMPT.format(entity_name=entity_name, text=text))
        return parse_signals(raw)

    async def resolve_domain(self, competitor_name: str, context: str | None = None) -> str | None:
        """Ask the model for a brand's official website domain. None when it does not know."""
        prompt = (
            f'What is the official website domain of the brand "{competitor_name}"?'
            + (f' It was mentioned in an answer to: "{context}".' if context else "")
            + ' Reply with JSON: {"domain": "example.com"} or {"domain": null} if unsure.'
        )
        raw = await self._complete(prompt, max_tokens=100)
        cleaned = re.sub(r"```(?:json)?\s*|```", "", raw).strip()
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError:
            logger.warning("Domain resolution returned non-JSON for %r: %r", competitor_name, raw[:100])
            return None
        domain = data.get("domain") if isinstance(data, dict) else None
        if not isinstance(domain, str) or "." not in domain:
            return None
        return normalize_domain(domain)

    async def describe_domain(self, domain: str, homepage: DomainInfo | None = None) -> DomainInfo:
        """Name, description and type of a website.

        With homepage metadata the model enriches it; without, it answers from the domain alone.
        """
        if homepage is not None and homepage.has_metadata:
            metadata = (
                "Homepage metadata:\n"
                f"  title: {homepage.name or ''}\n"
                f"  description: {homepage.description or ''}\n"
            )
        else:
            metadata = "The homepage could not be fetched; answer from what you know about the domain.\n"
        raw = await self._complete(
            _DESCRIBE_DOMAIN_PROMPT.format(domain=domain, metadata=metadata, types=_DOMAIN_TYPES), max_tokens=300
        )
        return parse_domain_description(raw, domain)


def normalize_domain(domain: str) -> str:
    """``https://www.Acme.com/path`` -> ``acme.com``."""
    d = domain.strip().lower()
    d = re.sub(r"^[a-z]+://", "", d)
    d = d.split("/", 1)[0].split("?", 1)[0]
    if d.startswith("www."):
        d = d[4:]
    return d


class SignalExtractor:
    """Best-effort wrapper: bounded by a timeout, never raises."""

    def __init__(self, analyzer: SignalAnalyzer, timeout: float | None = None):
        self.analyzer = analyzer
        self.timeout = timeout or settings.enrichment_timeout_seconds

    async def extract(self, text: str, entity_name: str, *, task_id: str | None = None) -> Signals | None:
        try:
            return await asyncio.wait_for(self.analyzer.analyze(text, entity_name), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Signal extraction timed out after %.0fs, keeping raw payload",
                self.timeout,
                extra={"task_id": task_id},
            )
        except Exception as e:
            logger.warning(
                "Signal extraction failed, keeping raw payload: %s: %s",
                type(e).__name__,
                e,
                extra={"task_id": task_id},
            )
        return None
