"""Crawl domain models: pure Pydantic v2 data types."""

from __future__ import annotations

from pydantic import BaseModel, Field

from geomigrate.content.models import ContentKind

ANCHOR_TEXT_LIMIT = 500


class CrawlError(Exception):
    """A single page could not be fetched (timeout, navigation or network error)."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(message)
        self.url = url


class CrawlConfig(BaseModel):
    """Per-job crawl knobs, carried in the crawl job payload.

    Patterns are glob-style (``*`` wildcard) and match the URL path.
    ``respect_robots`` is recorded only; enforcement lives outside the crawler.
    """

    max_pages: int = Field(default=100, ge=1)
    max_depth: int = Field(default=3, ge=0)
    include_patterns: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=list)
    rate_limit_ms: int = Field(default=1000, ge=0)
    respect_robots: bool = True


class CrawledLink(BaseModel):
    """A normalized same-origin outbound link."""

    url: str
    anchor_text: str | None = None


class CrawledPage(BaseModel):
    """One fetched page with extracted content and filtered outbound links."""

    url: str
    url_hash: str
    title: str = ""
    meta_description: str = ""
    raw_html: str = ""
    extracted_content: str = ""
    structured_content: str = ""
    word_count: int = 0
    content_type: ContentKind = ContentKind.PAGE
    links: list[CrawledLink] = Field(default_factory=list)
    crawl_depth: int = 0
