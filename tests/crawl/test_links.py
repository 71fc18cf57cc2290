"""Tests for URL normalization and link filtering."""

from __future__ import annotations

import pytest

from geomigrate.crawl.links import (
    extract_crawled_links,
    extract_links_from_html,
    filter_crawled_links,
    filter_links,
    is_hash_only_url,
    matches_pattern,
    normalize_url,
    url_hash,
)
from geomigrate.crawl.models import ANCHOR_TEXT_LIMIT, CrawlConfig, CrawledLink

PAGE = "https://example.com/docs/"


class TestNormalizeUrl:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("https://Example.COM/a?x=1#frag", "https://example.com/a"),
            ("https://example.com", "https://example.com/"),
            ("HTTPS://example.com/Path", "https://example.com/Path"),
            ("  https://example.com/a  ", "https://example.com/a"),
            ("/relative?x=1", "/relative"),
        ],
    )
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_url(raw) == expected

    def test_hash_ignores_query_and_fragment(self) -> None:
        assert url_hash("https://example.com/a?x=1") == url_hash("https://example.com/a#top")
        assert url_hash("https://example.com") == url_hash("https://example.com/")

    def test_hash_is_sha256_hex(self) -> None:
        digest = url_hash("https://example.com/")
        assert len(digest) == 64
        int(digest, 16)

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("#top", True),
            ("https://a.com/#top", True),
            ("https://a.com#top", True),
            ("https://a.com/page#top", False),
            ("https://a.com/", False),
        ],
    )
    def test_hash_only(self, url: str, expected: bool) -> None:
        assert is_hash_only_url(url) is expected


class TestPatterns:
    def test_wildcard(self) -> None:
        assert matches_pattern("/blog/post-1", "/blog/*")
        assert not matches_pattern("/blog", "/blog/*")
        assert matches_pattern("/a/b/c.html", "*.html")

    def test_regex_characters_are_literal(self) -> None:
        assert matches_pattern("/a.b", "/a.b")
        assert not matches_pattern("/aXb", "/a.b")
        assert matches_pattern("/docs/(v1)", "/docs/(v1)")


class TestFilterLinks:
    def test_keeps_same_origin_normalized_and_deduped(self) -> None:
        links = [
            "https://example.com/a?ref=1",
            "https://example.com/a#section",
            "https://other.com/b",
            "http://example.com/c",
            "mailto:me@example.com",
            "#top",
            "https://example.com/b",
        ]
        assert filter_links(links, PAGE, CrawlConfig()) == [
            "https://example.com/a",
            "https://example.com/b",
        ]

    def test_drops_self_link(self) -> None:
        assert filter_links(["https://example.com/docs/?page=2"], PAGE, CrawlConfig()) == []

    def test_include_and_exclude(self) -> None:
        config = CrawlConfig(include_patterns=["/blog/*"], exclude_patterns=["/blog/draft-*"])
        links = [
            "https://example.com/blog/one",
            "https://example.com/blog/draft-two",
            "https://example.com/about",
        ]
        assert filter_links(links, PAGE, config) == ["https://example.com/blog/one"]

    def test_host_comparison_ignores_case(self) -> None:
        assert filter_links(["https://EXAMPLE.com/x"], PAGE, CrawlConfig()) == [
            "https://example.com/x"
        ]

    def test_first_anchor_text_wins(self) -> None:
        links = [
            CrawledLink(url="https://example.com/a?x", anchor_text="First"),
            CrawledLink(url="https://example.com/a", anchor_text="Second"),
        ]
        assert filter_crawled_links(links, PAGE, CrawlConfig()) == [
            CrawledLink(url="https://example.com/a", anchor_text="First")
        ]


class TestExtractFromHtml:
    def test_resolves_relative_and_skips_javascript(self) -> None:
        html = (
            '<a href="/a">A</a>'
            '<a href="javascript:void(0)">js</a>'
            '<a href="https://other.com/">out</a>'
            '<a href="#top">top</a>'
            '<a href="child">child</a>'
        )
        assert extract_links_from_html(html, PAGE, CrawlConfig()) == [
            "https://example.com/a",
            "https://example.com/docs/child",
        ]

    def test_anchor_text_trimmed_and_truncated(self) -> None:
        long_text = "x" * (ANCHOR_TEXT_LIMIT + 50)
        html = f'<a href="/a">  Hello\n  there </a><a href="/b">{long_text}</a><a href="/c"></a>'

        links = extract_crawled_links(html, PAGE, CrawlConfig())

        assert links[0].anchor_text == "Hello there"
        assert len(links[1].anchor_text) == ANCHOR_TEXT_LIMIT
        assert links[2].anchor_text is None
