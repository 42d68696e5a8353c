"""Tests for website description and source-type classification."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.analysis.types import DomainInfo, SourceType
from app.core.cache import TtlCache
from app.services.domain_classifier import DomainClassifier


def _describer(*results):
    d = MagicMock()
    d.describe_domain = AsyncMock(side_effect=list(results))
    return d


def _classifier(describer, homepage=None, timeout=1):
    fetch = AsyncMock(return_value=homepage or DomainInfo("example.com"))
    return DomainClassifier(describer, fetch_info=fetch, type_cache=TtlCache(ttl_seconds=60), timeout=timeout)


class TestSourceTypeCoerce:
    def test_known_values(self):
        assert SourceType.coerce("NEWS") == SourceType.NEWS
        assert SourceType.coerce("government") == SourceType.GOVERNMENT

    def test_unknown_and_non_string(self):
        assert SourceType.coerce("WEBSITE") == SourceType.OTHER
        assert SourceType.coerce(None) == SourceType.OTHER
        assert SourceType.coerce(3) == SourceType.OTHER


class TestDescribe:
    @pytest.mark.asyncio
    async def test_enriches_fetched_homepage(self):
        homepage = DomainInfo("acme.com", name="Acme", description="Project management")
        describer = _describer(DomainInfo("acme.com", name="Acme Inc", description=None, type=SourceType.CORPORATE))
        classifier = _classifier(describer, homepage)

        info = await classifier.describe("acme.com")

        assert info.name == "Acme Inc"
        # Analyzer left the description empty, homepage fills it
        assert info.description == "Project management"
        assert info.type == SourceType.CORPORATE
        describer.describe_domain.assert_awaited_once_with("acme.com", homepage)

    @pytest.mark.asyncio
    async def test_enrich_failure_falls_back_to_generation(self):
        homepage = DomainInfo("acme.com", name="Acme")
        describer = _describer(RuntimeError("bad reply"), DomainInfo("acme.com", type=SourceType.BLOG))
        classifier = _classifier(describer, homepage)

        info = await classifier.describe("acme.com")

        assert info.type == SourceType.BLOG
        assert info.name == "Acme"
        assert describer.describe_domain.await_args_list[1].args == ("acme.com", None)

    @pytest.mark.asyncio
    async def test_homepage_unavailable_generates_from_domain(self):
        describer = _describer(DomainInfo("reddit.com", name="Reddit", type=SourceType.FORUM))
        classifier = _classifier(describer, DomainInfo("reddit.com"))

        info = await classifier.describe("reddit.com")

        assert info.name == "Reddit"
        assert info.type == SourceType.FORUM
        describer.describe_domain.assert_awaited_once_with("reddit.com", None)

    @pytest.mark.asyncio
    async def test_everything_fails_keeps_metadata_as_other(self):
        homepage = DomainInfo("acme.com", name="Acme", description="Tools")
        classifier = _classifier(_describer(RuntimeError("x"), RuntimeError("y")), homepage)

        info = await classifier.describe("acme.com")

        assert info == DomainInfo("acme.com", "Acme", "Tools", SourceType.OTHER)

    @pytest.mark.asyncio
    async def test_slow_analyzer_times_out(self):
        async def slow(domain, homepage=None):
            await asyncio.sleep(5)

        describer = MagicMock()
        describer.describe_domain = slow
        classifier = _classifier(describer, timeout=0.01)

        info = await classifier.describe("example.com")

        assert info.type == SourceType.OTHER

    @pytest.mark.asyncio
    async def test_fetch_exception_is_contained(self):
        describer = _describer(DomainInfo("x.io", type=SourceType.WIKI))
        classifier = DomainClassifier(describer, fetch_info=AsyncMock(side_effect=OSError("dns")), timeout=1)

        info = await classifier.describe("x.io")

        assert info.type == SourceType.WIKI

    @pytest.mark.asyncio
    async def test_no_describer(self):
        classifier = _classifier(None, DomainInfo("acme.com", name="Acme"))
        info = await classifier.describe("acme.com")
        assert info.name == "Acme"
        assert info.type == SourceType.OTHER


class TestClassify:
    @pytest.mark.asyncio
    async def test_cached_per_hostname(self):
        describer = _describer(DomainInfo("nytimes.com", type=SourceType.NEWS))
        classifier = _classifier(describer)

        assert await classifier.classify("nytimes.com") == SourceType.NEWS
        assert await classifier.classify("nytimes.com") == SourceType.NEWS
        describer.describe_domain.assert_awaited_once()
        classifier.fetch_info.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_classified_as_other(self):
        classifier = _classifier(_describer(RuntimeError("x")))
        assert await classifier.classify("example.com") == SourceType.OTHER
