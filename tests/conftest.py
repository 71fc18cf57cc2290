"""Shared fakes for the worker, service and store tests."""

from __future__ import annotations

from typing import Any

import pytest

from geomigrate.analysis.analyzer import AnalysisService
from geomigrate.config import GeomigrateConfig
from geomigrate.crawl.crawler import build_crawled_page
from geomigrate.crawl.links import extract_crawled_links, normalize_url
from geomigrate.crawl.models import CrawlConfig, CrawledPage, CrawlError
from geomigrate.generation.generator import GenerationService
from geomigrate.jobs.lifecycle import WorkerContext
from geomigrate.jobs.queue import MemoryQueue
from geomigrate.matching.matcher import MatchingService
from geomigrate.shared.embeddings import EmbeddingClient
from geomigrate.store.memory import MemoryStore
from geomigrate.store.retry import StoreCaller


class FakeEmbedder(EmbeddingClient):
    """Returns registered vectors per exact text, else ``default``."""

    def __init__(self, vectors: dict[str, list[float]] | None = None) -> None:
        self.vectors = dict(vectors or {})
        self.default = [1.0, 0.0, 0.0]
        self.calls: list[str] = []
        self.closed = False

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.extend(texts)
        return [list(self.vectors.get(t, self.default)) for t in texts]

    async def aclose(self) -> None:
        self.closed = True


class FakeGenerator:
    """Stands in for ``call_claude``; records every call."""

    def __init__(self, response: str = "# Draft Title\n\nBody text.") -> None:
        self.response = response
        self.error: Exception | None = None
        self.calls: list[dict[str, Any]] = []

    def __call__(self, system_prompt: str, user_prompt: str, **kwargs: Any) -> str:
        self.calls.append({"system": system_prompt, "user": user_prompt, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


class FakeCrawler:
    """Serves pages from a dict of URL -> HTML (or an exception to raise)."""

    def __init__(self, site: dict[str, str | Exception]) -> None:
        self.site = {normalize_url(url): body for url, body in site.items()}
        self.fetched: list[str] = []
        self.closed = False
        self.on_fetch: Any = None

    async def crawl_page(self, url: str, config: CrawlConfig, depth: int = 0) -> CrawledPage:
        self.fetched.append(url)
        if self.on_fetch is not None:
            self.on_fetch(url)
        body = self.site.get(normalize_url(url))
        if body is None:
            raise CrawlError(url, f"Network error loading {url}: net::ERR_NAME_NOT_RESOLVED")
        if isinstance(body, Exception):
            raise body
        raw_links = [
            {"url": link.url, "anchorText": link.anchor_text}
            for link in extract_crawled_links(body, url, CrawlConfig())
        ]
        return build_crawled_page(url, body, raw_links, config, depth)

    async def close(self) -> None:
        self.closed = True


def page_html(title: str, body: str = "", links: list[str] | None = None) -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links or [])
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><main><h1>{title}</h1><p>{body or 'Some page content here.'}</p>"
        f"{anchors}</main></body></html>"
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def db(store: MemoryStore) -> StoreCaller:
    return StoreCaller(store, max_attempts=3, delay=0)


@pytest.fixture
def queue() -> MemoryQueue:
    return MemoryQueue(poll_interval=0.001)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def config() -> GeomigrateConfig:
    cfg = GeomigrateConfig()
    cfg.browser.page_timeout_seconds = 5.0
    return cfg


@pytest.fixture
def make_context(config, db, queue, embedder, generator):
    """Build a WorkerContext around a FakeCrawler for the given site."""

    def _make(
        site: dict[str, str | Exception] | None = None, on_fetch: Any = None
    ) -> tuple[WorkerContext, list[FakeCrawler]]:
        crawlers: list[FakeCrawler] = []

        def factory() -> FakeCrawler:
            crawler = FakeCrawler(site or {})
            crawler.on_fetch = on_fetch
            crawlers.append(crawler)
            return crawler

        ctx = WorkerContext(
            config=config,
            db=db,
            queue=queue,
            crawler_factory=factory,  # type: ignore[arg-type]
            analyzer=AnalysisService(embedder, generate=generator),
            matcher=MatchingService(db, embedder),
            generator=GenerationService(db, generate=generator),
        )
        return ctx, crawlers

    return _make


@pytest.fixture
def html():
    """Builder for small HTML pages: ``html(title, body, links)``."""
    return page_html
