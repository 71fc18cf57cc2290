"""Headless-browser page fetcher.

One :class:`CrawlerService` owns one Chromium process for the lifetime of
a crawl job. ``initialize`` and ``close`` are idempotent; use it as an
async context manager so the browser is released on every exit path.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable
from typing import Any

from playwright.async_api import Browser, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from geomigrate.config import BrowserConfig
from geomigrate.content.extractor import extract_content
from geomigrate.crawl.links import filter_crawled_links, normalize_url, url_hash
from geomigrate.crawl.models import (
    ANCHOR_TEXT_LIMIT,
    CrawlConfig,
    CrawledLink,
    CrawledPage,
    CrawlError,
)

logger = logging.getLogger(__name__)

BROWSER_INSTALL_HINT = "Is the browser runtime installed? Try: playwright install chromium"

# Runs in the page; el.href is already absolute.
_LINKS_JS = f"""
() => Array.from(document.querySelectorAll('a[href]'))
  .map((el) => {{
    const href = el.href;
    if (!href || href.startsWith('javascript:')) return null;
    const text = (el.textContent || '').trim().slice(0, {ANCHOR_TEXT_LIMIT});
    return {{ url: href, anchorText: text || null }};
  }})
  .filter((x) => x !== null)
"""


class CrawlerService:
    """Fetches pages with Playwright and extracts content plus links."""

    def __init__(
        self,
        config: BrowserConfig | None = None,
        *,
        playwright_factory: Callable[[], Any] = async_playwright,
    ) -> None:
        self.config = config or BrowserConfig()
        self._factory = playwright_factory
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None

    @property
    def is_open(self) -> bool:
        return self._browser is not None

    async def initialize(self) -> None:
        """Launch Chromium once; later calls are no-ops.

        Raises:
            CrawlError: When the browser cannot be started.
        """
        if self._browser is not None:
            return
        logger.info("Launching headless browser (headless=%s)", self.config.headless)
        try:
            self._playwright = await self._factory().start()
            self._browser = await self._playwright.chromium.launch(headless=self.config.headless)
        except PlaywrightError as exc:
            await self.close()
            raise CrawlError("", f"Browser launch failed: {exc}. {BROWSER_INSTALL_HINT}") from exc

    async def close(self) -> None:
        """Close the browser and stop Playwright; safe to call repeatedly."""
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None
        try:
            if browser is not None:
                await browser.close()
        finally:
            if playwright is not None:
                await playwright.stop()
                logger.debug("Headless browser released")

    async def __aenter__(self) -> CrawlerService:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def crawl_page(self, url: str, config: CrawlConfig, depth: int = 0) -> CrawledPage:
        """Fetch ``url``, extract its content and its filtered outbound links.

        A navigation timeout is tolerated: whatever has rendered after the
        settle delay is extracted.

        Raises:
            CrawlError: On read timeouts, network errors or other browser failures.
        """
        await self.initialize()
        assert self._browser is not None

        timeout_ms = self.config.navigation_timeout_ms
        context_kwargs: dict[str, Any] = {}
        if self.config.user_agent:
            context_kwargs["user_agent"] = self.config.user_agent
        page = await self._browser.new_page(**context_kwargs)
        page.set_default_navigation_timeout(timeout_ms)
        page.set_default_timeout(timeout_ms)

        try:
            try:
                await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            except PlaywrightTimeoutError:
                logger.warning("Navigation timeout for %s, extracting partial content", url)
            await page.wait_for_timeout(self.config.settle_ms)
            html = await page.content()
            try:
                raw_links = await page.evaluate(_LINKS_JS)
            except PlaywrightError as exc:
                logger.warning("Could not evaluate links on %s: %s", url, exc)
                raw_links = []
        except PlaywrightTimeoutError as exc:
            raise CrawlError(url, f"Timeout loading {url}: Page took too long to load") from exc
        except PlaywrightError as exc:
            if "net::ERR" in str(exc):
                raise CrawlError(url, f"Network error loading {url}: {exc}") from exc
            raise CrawlError(url, f"Error loading {url}: {exc}") from exc
        finally:
            with contextlib.suppress(PlaywrightError):
                await page.close()

        return build_crawled_page(url, html, raw_links, config, depth)


def build_crawled_page(
    url: str,
    html: str,
    raw_links: list[dict[str, Any]],
    config: CrawlConfig,
    depth: int = 0,
) -> CrawledPage:
    """Assemble a CrawledPage from fetched HTML and in-page anchors."""
    normalized = normalize_url(url)
    extracted = extract_content(html, normalized)
    anchors = [
        CrawledLink(url=str(item["url"]), anchor_text=item.get("anchorText") or None)
        for item in raw_links
        if item and item.get("url")
    ]
    return CrawledPage(
        url=normalized,
        url_hash=url_hash(normalized),
        title=extracted.title,
        meta_description=extracted.meta_description,
        raw_html=html,
        extracted_content=extracted.plain_text,
        structured_content=extracted.structured_markdown,
        word_count=extracted.word_count,
        content_type=extracted.content_type,
        links=filter_crawled_links(anchors, normalized, config),
        crawl_depth=depth,
    )
