"""Crawl domain: browser fetcher, URL normalization and link filtering."""

from geomigrate.crawl.crawler import CrawlerService
from geomigrate.crawl.links import (
    extract_links_from_html,
    filter_links,
    normalize_url,
    url_hash,
)
from geomigrate.crawl.models import CrawlConfig, CrawledLink, CrawledPage, CrawlError

__all__ = [
    "CrawlConfig",
    "CrawlError",
    "CrawledLink",
    "CrawledPage",
    "CrawlerService",
    "extract_links_from_html",
    "filter_links",
    "normalize_url",
    "url_hash",
]
