"""Tests for provider payload parsing."""

from app.analysis.payload import (
    FieldPathStrategy,
    extract_answer_text,
    extract_sources,
    hostname_of,
    normalize_url,
    root_domain,
)


class TestAnswerText:
    def test_top_level_text(self):
        assert extract_answer_text({"text": "Acme is great"}) == "Acme is great"

    def test_nested_result_text(self):
        assert extract_answer_text({"result": {"text": "hello"}}) == "hello"

    def test_priority_order(self):
        payload = {"markdown": "**md**", "text": "plain"}
        assert extract_answer_text(payload) == "plain"

    def test_blank_strings_skipped(self):
        payload = {"text": "   ", "answer": "real answer"}
        assert extract_answer_text(payload) == "real answer"

    def test_choices_path(self):
        payload = {"choices": [{"message": {"content": "from completion"}}]}
        assert extract_answer_text(payload) == "from completion"

    def test_nothing_found(self):
        assert extract_answer_text({"status": "ok"}) is None
        assert extract_answer_text(None) is None
        assert extract_answer_text(["text"]) is None

    def test_custom_strategy(self):
        strategy = FieldPathStrategy("deep", ("a", 1, "b"))
        assert strategy.extract({"a": [{}, {"b": "x"}]}) == "x"
        assert strategy.extract({"a": [{}]}) is None
        assert strategy.extract({"a": {"b": "x"}}) is None


class TestNormalizeUrl:
    def test_lowercases_scheme_and_host(self):
        assert normalize_url("HTTPS://Example.COM/Path") == "https://example.com/Path"

    def test_drops_fragment(self):
        assert normalize_url("https://example.com/a#section") == "https://example.com/a"

    def test_empty_path_gets_slash(self):
        assert normalize_url("https://example.com") == "https://example.com/"

    def test_drops_default_port(self):
        assert normalize_url("https://example.com:443/x") == "https://example.com/x"
        assert normalize_url("http://example.com:80/x") == "http://example.com/x"

    def test_keeps_other_port(self):
        assert normalize_url("http://example.com:8080/x") == "http://example.com:8080/x"

    def test_keeps_query(self):
        assert normalize_url("https://example.com/s?q=1") == "https://example.com/s?q=1"

    def test_rejects_non_http(self):
        assert normalize_url("ftp://example.com/file") is None
        assert normalize_url("mailto:a@example.com") is None
        assert normalize_url("not a url") is None
        assert normalize_url("") is None


class TestHostnames:
    def test_hostname_strips_www(self):
        assert hostname_of("https://www.example.com/") == "example.com"

    def test_root_domain(self):
        assert root_domain("news.example.com") == "example.com"
        assert root_domain("example.com") == "example.com"
        assert root_domain("localhost") == "localhost"


class TestExtractSources:
    def test_dedup_counts_occurrences(self):
        payload = {
            "sources": [
                {"url": "https://example.com/a", "title": "A"},
                {"url": "https://EXAMPLE.com/a#frag"},
                {"url": "https://other.org/"},
            ]
        }
        sources = extract_sources(payload)
        assert len(sources) == 2
        by_url = {s.url: s for s in sources}
        a = by_url["https://example.com/a"]
        assert a.occurrences == 2
        assert a.title == "A"
        assert a.hostname == "example.com"

    def test_citations_key_and_plain_strings(self):
        sources = extract_sources({"citations": ["https://www.acme.com/pricing"]})
        assert len(sources) == 1
        assert sources[0].hostname == "acme.com"

    def test_alternate_url_keys(self):
        sources = extract_sources({"references": [{"link": "https://x.io/doc", "name": "Doc"}]})
        assert sources[0].url == "https://x.io/doc"
        assert sources[0].title == "Doc"

    def test_invalid_entries_skipped(self):
        payload = {"sources": [42, {"title": "no url"}, {"url": "javascript:alert(1)"}, "https://ok.com"]}
        sources = extract_sources(payload)
        assert [s.url for s in sources] == ["https://ok.com/"]

    def test_no_sources(self):
        assert extract_sources({"text": "answer"}) == []
        assert extract_sources(None) == []
