"""URL normalization and link filtering for the breadth-first crawl.

Query strings and fragments never denote distinct pages: every URL is
normalized before it is hashed, compared or queued.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterable
from functools import lru_cache
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from geomigrate.crawl.models import ANCHOR_TEXT_LIMIT, CrawlConfig, CrawledLink


def normalize_url(url: str) -> str:
    """Strip query string and fragment; lowercase scheme and host.

    An empty path becomes ``/`` so ``https://a.com`` and ``https://a.com/``
    hash identically. Unparseable input is cut at the first ``?`` or ``#``.
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return url.split("#", 1)[0].split("?", 1)[0]
    if not parts.scheme or not parts.netloc:
        return url.split("#", 1)[0].split("?", 1)[0]
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", "", ""))


def url_hash(url: str) -> str:
    """SHA-256 hex digest of the normalized URL (the page natural key)."""
    return hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()


def is_hash_only_url(url: str) -> bool:
    """True for in-page anchors such as ``#top`` or ``https://a.com/#top``."""
    stripped = url.strip()
    if stripped.startswith("#"):
        return True
    try:
        parts = urlsplit(stripped)
    except ValueError:
        return False
    return bool(parts.netloc) and parts.path in ("", "/") and bool(parts.fragment)


@lru_cache(maxsize=256)
def _pattern_regex(pattern: str) -> re.Pattern[str]:
    body = ".*".join(re.escape(piece) for piece in pattern.split("*"))
    return re.compile(f"^{body}$")


def matches_pattern(path: str, pattern: str) -> bool:
    """Glob match of a URL path against a ``*``-wildcard pattern."""
    return _pattern_regex(pattern).match(path) is not None


def _origin(url: str) -> tuple[str, str]:
    parts = urlsplit(url)
    return parts.scheme.lower(), parts.netloc.lower()


def filter_links(links: Iterable[str], page_url: str, config: CrawlConfig) -> list[str]:
    """Keep same-origin links passing include/exclude patterns, normalized and deduped.

    Links to the page itself (after normalization) are dropped. Order of
    first appearance is preserved.
    """
    base_origin = _origin(page_url)
    normalized_base = normalize_url(page_url)
    seen: set[str] = set()
    result: list[str] = []

    for link in links:
        if is_hash_only_url(link):
            continue
        try:
            parts = urlsplit(link)
        except ValueError:
            continue
        if parts.scheme not in ("http", "https"):
            continue
        if (parts.scheme.lower(), parts.netloc.lower()) != base_origin:
            continue
        normalized = normalize_url(link)
        if normalized == normalized_base or normalized in seen:
            continue
        path = parts.path or "/"
        if config.include_patterns and not any(
            matches_pattern(path, p) for p in config.include_patterns
        ):
            continue
        if any(matches_pattern(path, p) for p in config.exclude_patterns):
            continue
        seen.add(normalized)
        result.append(normalized)

    return result


def filter_crawled_links(
    links: Iterable[CrawledLink], page_url: str, config: CrawlConfig
) -> list[CrawledLink]:
    """Filter anchor-bearing links, keeping the first anchor text per URL."""
    raw = list(links)
    anchors: dict[str, str | None] = {}
    for link in raw:
        anchors.setdefault(normalize_url(link.url), link.anchor_text)
    return [
        CrawledLink(url=url, anchor_text=anchors.get(url))
        for url in filter_links((link.url for link in raw), page_url, config)
    ]


def _anchor_links(html: str, page_url: str) -> list[CrawledLink]:
    soup = BeautifulSoup(html or "", "html.parser")
    found: list[CrawledLink] = []
    for anchor in soup.find_all("a", href=True):
        href = str(anchor.get("href") or "").strip()
        if not href or href.lower().startswith("javascript:"):
            continue
        try:
            absolute = urljoin(page_url, href)
        except ValueError:
            continue
        text = " ".join(anchor.get_text(" ").split())[:ANCHOR_TEXT_LIMIT]
        found.append(CrawledLink(url=absolute, anchor_text=text or None))
    return found


def extract_links_from_html(html: str, page_url: str, config: CrawlConfig) -> list[str]:
    """Re-derive filtered outbound links from stored HTML without a fetch."""
    return [link.url for link in extract_crawled_links(html, page_url, config)]


def extract_crawled_links(html: str, page_url: str, config: CrawlConfig) -> list[CrawledLink]:
    """Like :func:`extract_links_from_html` but keeps anchor text."""
    return filter_crawled_links(_anchor_links(html, page_url), page_url, config)
