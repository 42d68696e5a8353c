"""Provider payload parsing.

Monitoring providers return slightly different shapes per channel, so the
answer text is located by trying an ordered list of field paths; the first
non-empty string wins. Cited sources are read the same way from the first of
``sources`` / ``citations`` / ``references`` that is present.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from app.analysis.types import ExtractedSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldPathStrategy:
    """Walks a path of dict keys / list indexes and returns a non-empty string or None."""

    name: str
    path: tuple[str | int, ...]

    def extract(self, payload: Any) -> str | None:
        node = payload
        for step in self.path:
            if isinstance(step, int):
                if not isinstance(node, list) or len(node) <= step:
                    return None
                node = node[step]
            else:
                if not isinstance(node, dict):
                    return None
                node = node.get(step)
            if node is None:
                return None
        if isinstance(node, str) and node.strip():
            return node
        return None


# Priority order matters: plain text beats markdown beats raw completions
ANSWER_TEXT_STRATEGIES: tuple[FieldPathStrategy, ...] = (
    FieldPathStrategy("text", ("text",)),
    FieldPathStrategy("result.text", ("result", "text")),
    FieldPathStrategy("answer", ("answer",)),
    FieldPathStrategy("markdown", ("markdown",)),
    FieldPathStrategy("result.markdown", ("result", "markdown")),
    FieldPathStrategy("output_text", ("output_text",)),
    FieldPathStrategy("choices.message.content", ("choices", 0, "message", "content")),
)


def extract_answer_text(
    payload: Any,
    strategies: tuple[FieldPathStrategy, ...] = ANSWER_TEXT_STRATEGIES,
) -> str | None:
    for strategy in strategies:
        text = strategy.extract(payload)
        if text is not None:
            logger.debug("Answer text found via %s (%d chars)", strategy.name, len(text))
            return text
    return None


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

_SOURCE_LIST_KEYS = ("sources", "citations", "references")
_URL_KEYS = ("url", "link", "uri")
_TITLE_KEYS = ("title", "name", "label")


def normalize_url(raw: str) -> str | None:
    """Canonical form used as Source identity.

    Lowercases scheme and host, drops the fragment and default ports, and gives
    an empty path a trailing slash. Non-http(s) or host-less values return None.
    """
    if not isinstance(raw, str):
        return None
    candidate = raw.strip()
    if not candidate:
        return None
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https") or not parts.hostname:
        return None

    host = parts.hostname.lower()
    if port and not ((scheme == "http" and port == 80) or (scheme == "https" and port == 443)):
        host = f"{host}:{port}"
    if parts.username:
        userinfo = parts.username + (f":{parts.password}" if parts.password else "")
        host = f"{userinfo}@{host}"
    path = parts.path or "/"
    return urlunsplit((scheme, host, path, parts.query, ""))


def hostname_of(url: str) -> str:
    host = (urlsplit(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def root_domain(hostname: str) -> str:
    """Last two labels of a hostname (``news.example.com`` -> ``example.com``)."""
    labels = [p for p in hostname.split(".") if p]
    if len(labels) <= 2:
        return ".".join(labels)
    return ".".join(labels[-2:])


def _first_str(item: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_sources(payload: Any) -> list[ExtractedSource]:
    """Return cited sources deduplicated by normalized URL, with per-answer occurrence counts."""
    if not isinstance(payload, dict):
        return []

    list_key = next((k for k in _SOURCE_LIST_KEYS if isinstance(payload.get(k), list)), None)
    if list_key is None:
        return []

    found: dict[str, ExtractedSource] = {}
    for item in payload[list_key]:
        title = None
        if isinstance(item, str):
            raw_url = item
        elif isinstance(item, dict):
            raw_url = _first_str(item, _URL_KEYS)
            title = _first_str(item, _TITLE_KEYS)
        else:
            continue

        url = normalize_url(raw_url) if raw_url else None
        if url is None:
            logger.debug("Skipping unparseable source entry: %r", item)
            continue

        existing = found.get(url)
        if existing is not None:
            found[url] = ExtractedSource(
                url=url,
                hostname=existing.hostname,
                title=existing.title or title,
                occurrences=existing.occurrences + 1,
            )
        else:
            found[url] = ExtractedSource(
                url=url,
                hostname=hostname_of(url),
                title=title,
            )

    return list(found.values())
