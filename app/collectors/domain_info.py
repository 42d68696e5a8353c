"""Homepage metadata for newly seen domains (competitor entities, cited sources).

Fetch layer uses httpx.AsyncClient; parse layer is pure (no I/O).
"""

import logging

import httpx
from bs4 import BeautifulSoup

from app.analysis.types import DomainInfo
from app.core.config import settings

logger = logging.getLogger(__name__)

_USER_AGENT = "Mozilla/5.0 (compatible; LLMVisibilityBot/1.0)"
_MAX_NAME_LEN = 255
_MAX_DESCRIPTION_LEN = 1000


def parse_homepage(html: str, domain: str) -> DomainInfo:
    """Extract a display name and description from homepage HTML."""
    soup = BeautifulSoup(html, "lxml")

    name = None
    og_site = soup.find("meta", attrs={"property": "og:site_name"})
    if og_site and og_site.get("content"):
        name = og_site["content"].strip()
    if not name:
        title_tag = soup.find("title")
        if title_tag and title_tag.get_text(strip=True):
            # "Acme | Project management for teams" -> "Acme"
            title = title_tag.get_text(strip=True)
            for sep in (" | ", " - ", " – ", " — ", ": "):
                if sep in title:
                    title = title.split(sep, 1)[0]
                    break
            name = title.strip()

    description = None
    for attrs in ({"name": "description"}, {"property": "og:description"}):
        tag = soup.find("meta", attrs=attrs)
        if tag and tag.get("content"):
            description = tag["content"].strip()
            break

    return DomainInfo(
        domain=domain,
        name=name[:_MAX_NAME_LEN] if name else None,
        description=description[:_MAX_DESCRIPTION_LEN] if description else None,
    )


async def fetch_domain_info(domain: str, timeout: float | None = None) -> DomainInfo:
    """Best-effort: any network or parse failure returns a bare DomainInfo."""
    url = f"https://{domain}"
    try:
        async with httpx.AsyncClient(
            timeout=timeout or settings.enrichment_timeout_seconds,
            headers={"User-Agent": _USER_AGENT},
        ) as client:
            resp = await client.get(url, follow_redirects=True)
            resp.raise_for_status()
        return parse_homepage(resp.text, domain)
    except Exception as e:
        logger.warning("Domain info fetch failed for %s: %s: %s", domain, type(e).__name__, e)
        return DomainInfo(domain=domain)
