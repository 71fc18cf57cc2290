"""Breadth-first crawl of one project seed URL.

Pages are visited in FIFO order by depth. A page already stored for the
project is not fetched again when its stored HTML still yields its
outbound links; the BFS continues from those links instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from geomigrate.crawl.crawler import BROWSER_INSTALL_HINT, CrawlerService
from geomigrate.crawl.links import extract_crawled_links, normalize_url, url_hash
from geomigrate.crawl.models import CrawlConfig, CrawledLink, CrawledPage
from geomigrate.jobs.lifecycle import Control, JobRunner
from geomigrate.jobs.payloads import CrawlJobPayload
from geomigrate.jobs.progress import (
    CrawlProgress,
    Frontier,
    FrontierEntry,
    ScannedPage,
    crawl_status_message,
    push_rolling,
    truncate_url,
)
from geomigrate.store.models import Job, JobType, Page, PageLink, PageStatus

logger = logging.getLogger(__name__)


class CrawlJobError(Exception):
    """The crawl could not fetch a single page."""


@dataclass
class CrawlState:
    """In-memory BFS state; serializes to :class:`Frontier` on pause."""

    to_visit: deque[FrontierEntry] = field(default_factory=deque)
    visited: set[str] = field(default_factory=set)
    queued: set[str] = field(default_factory=set)
    processed: int = 0
    reused: int = 0
    failed: int = 0
    total_links: int = 0
    refetches: dict[str, int] = field(default_factory=dict)
    first_error: str | None = None

    @classmethod
    def seeded(cls, base_url: str) -> CrawlState:
        seed = normalize_url(base_url)
        return cls(to_visit=deque([FrontierEntry(url=seed, depth=0)]), queued={seed})

    @classmethod
    def from_frontier(cls, frontier: Frontier) -> CrawlState:
        return cls(
            to_visit=deque(frontier.to_visit),
            visited=set(frontier.visited),
            queued={e.url for e in frontier.to_visit},
            processed=frontier.processed,
            reused=frontier.reused,
            failed=frontier.failed,
            total_links=frontier.total_links,
            refetches=dict(frontier.refetches),
        )

    def to_frontier(self) -> Frontier:
        return Frontier(
            visited=sorted(self.visited),
            to_visit=list(self.to_visit),
            processed=self.processed,
            reused=self.reused,
            failed=self.failed,
            total_links=self.total_links,
            refetches=dict(self.refetches),
        )

    def enqueue_links(self, links: list[str], depth: int, max_depth: int) -> int:
        """Queue unseen links at ``depth + 1``; returns how many were added."""
        if depth >= max_depth:
            return 0
        added = 0
        for link in links:
            if link in self.visited or link in self.queued:
                continue
            self.to_visit.append(FrontierEntry(url=link, depth=depth + 1))
            self.queued.add(link)
            added += 1
        return added


class CrawlRunner(JobRunner):
    job_type = JobType.CRAWL

    async def execute(self, job: Job) -> None:
        payload = CrawlJobPayload.model_validate(job.payload)
        config = payload.config
        settings = self.ctx.config.crawl

        frontier_data = job.metadata.get("frontier")
        if frontier_data:
            state = CrawlState.from_frontier(Frontier.model_validate(frontier_data))
            progress = CrawlProgress.model_validate(job.metadata)
            self._errors = list(progress.to_metadata()["errors"])
            logger.info(
                "Resuming crawl %s: %d visited, %d queued",
                job.id,
                len(state.visited),
                len(state.to_visit),
            )
        else:
            state = CrawlState.seeded(payload.base_url)
            progress = CrawlProgress()
            await self.db(self.store.patch_job_metadata, job.id, progress.to_metadata())
        scanned = [p.to_metadata() for p in progress.scanned_pages]

        crawler = self.ctx.crawler_factory()
        try:
            while state.to_visit and state.processed < config.max_pages:
                control = await self.check_control(job.id)
                if control is Control.CANCELLED:
                    return
                if control is Control.PAUSE:
                    await self.pause(job.id, {"frontier": state.to_frontier().to_metadata()})
                    return

                entry = state.to_visit.popleft()
                url = normalize_url(entry.url)
                state.queued.discard(entry.url)
                if url in state.visited or entry.depth > config.max_depth:
                    continue
                state.visited.add(url)

                if await self._reuse_stored(payload.project_id, url, entry.depth, config, state):
                    continue

                crawled = await self._fetch(crawler, job.id, url, entry.depth, config, state)
                if crawled is None:
                    await self._rate_limit(config)
                    continue

                await self._save(payload.project_id, crawled)
                state.processed += 1
                state.total_links += len(crawled.links)
                state.enqueue_links(
                    [link.url for link in crawled.links], entry.depth, config.max_depth
                )

                push_rolling(
                    scanned,
                    ScannedPage(
                        title=crawled.title,
                        url=crawled.url,
                        word_count=crawled.word_count,
                        links_count=len(crawled.links),
                        depth=entry.depth,
                    ).to_metadata(),
                    settings.scanned_window,
                )
                metadata = None
                if state.processed == 1 or state.processed % settings.metadata_every == 0:
                    metadata = self._snapshot(state, config, crawled, entry.depth, scanned)
                await self.report(
                    job.id, state.processed, config.max_pages, metadata, cap=99
                )
                await self._rate_limit(config)
        finally:
            await crawler.close()

        await self._finish(job.id, state, config, scanned)

    # ── Steps ────────────────────────────────────────────────────

    async def _reuse_stored(
        self,
        project_id: str,
        url: str,
        depth: int,
        config: CrawlConfig,
        state: CrawlState,
    ) -> bool:
        """Continue the BFS from a stored page instead of fetching it.

        Falls through to a fetch when the stored HTML is empty, or yields no
        links although the page had links when it was fetched, until the
        per-URL re-fetch budget is spent.
        """
        existing = await self.db(self.store.get_page_by_hash, project_id, url_hash(url))
        if existing is None:
            return False

        has_content = bool(existing.raw_html.strip()) and bool(existing.analysis_text.strip())
        links = extract_crawled_links(existing.raw_html, url, config) if has_content else []
        usable = has_content and (bool(links) or existing.link_count == 0)

        if not usable:
            budget = self.ctx.config.crawl.max_refetch_per_url
            used = state.refetches.get(url, 0)
            if used < budget:
                state.refetches[url] = used + 1
                logger.info("Re-fetching %s: stored copy has no usable links", url)
                return False
            logger.info("Re-fetch budget spent for %s; using stored copy", url)

        state.reused += 1
        state.total_links += len(links)
        state.enqueue_links([link.url for link in links], depth, config.max_depth)
        return True

    async def _fetch(
        self,
        crawler: CrawlerService,
        job_id: str,
        url: str,
        depth: int,
        config: CrawlConfig,
        state: CrawlState,
    ) -> CrawledPage | None:
        """Fetch one page; any failure is recorded and yields None."""
        timeout = self.ctx.config.browser.page_timeout_seconds
        try:
            return await asyncio.wait_for(crawler.crawl_page(url, config, depth), timeout=timeout)
        except TimeoutError:
            message = f"Timeout loading {url}: exceeded {timeout:g}s"
        except Exception as exc:  # one bad page never aborts the crawl
            message = str(exc) or exc.__class__.__name__

        logger.warning("Error crawling %s: %s", url, message)
        state.failed += 1
        if state.first_error is None:
            state.first_error = message
        errors = self.record_error(url, message)
        await self.db(
            self.store.patch_job_metadata,
            job_id,
            {"errors": errors, "failedPages": state.failed},
        )
        return None

    async def _save(self, project_id: str, crawled: CrawledPage) -> Page:
        page = await self.db(
            self.store.upsert_page,
            Page(
                project_id=project_id,
                url=crawled.url,
                url_hash=crawled.url_hash,
                title=crawled.title,
                meta_description=crawled.meta_description,
                raw_html=crawled.raw_html,
                extracted_content=crawled.extracted_content,
                structured_content=crawled.structured_content,
                word_count=crawled.word_count,
                content_type=crawled.content_type,
                crawl_depth=crawled.crawl_depth,
                link_count=len(crawled.links),
                status=PageStatus.CRAWLED,
            ),
        )
        await self.db(self.store.replace_page_links, page.id, _page_links(page.id, crawled.links))
        return page

    async def _rate_limit(self, config: CrawlConfig) -> None:
        if config.rate_limit_ms > 0:
            await asyncio.sleep(config.rate_limit_ms / 1000)

    def _snapshot(
        self,
        state: CrawlState,
        config: CrawlConfig,
        crawled: CrawledPage,
        depth: int,
        scanned: list[dict[str, Any]],
    ) -> dict[str, Any]:
        patch = CrawlProgress(
            status_message=crawl_status_message(state.processed, config.max_pages),
            current_url=truncate_url(crawled.url),
            depth=depth,
            queue_size=len(state.to_visit),
            links_found=len(crawled.links),
            last_page_title=crawled.title,
            total_links_discovered=state.total_links,
            failed_pages=state.failed,
            reused_pages=state.reused,
        ).to_metadata()
        patch["scannedPages"] = list(scanned)
        patch["errors"] = list(self._errors)
        return patch

    async def _finish(
        self,
        job_id: str,
        state: CrawlState,
        config: CrawlConfig,
        scanned: list[dict[str, Any]],
    ) -> None:
        if state.processed == 0 and state.reused == 0 and state.failed > 0:
            raise CrawlJobError(
                f"Crawl failed: no page could be fetched ({state.failed} error(s)). "
                f"First error: {state.first_error}. {BROWSER_INSTALL_HINT}"
            )

        await self.db(
            self.store.patch_job_metadata,
            job_id,
            {
                "queueSize": len(state.to_visit),
                "scannedPages": list(scanned),
                "totalLinksDiscovered": state.total_links,
                "failedPages": state.failed,
                "reusedPages": state.reused,
                "currentUrl": "",
                "frontier": None,
                "paused": False,
            },
        )
        await self.mark_completed(
            job_id,
            state.processed,
            state.processed,
            crawl_status_message(state.processed, config.max_pages, done=True),
        )


def _page_links(source_page_id: str, links: list[CrawledLink]) -> list[PageLink]:
    return [
        PageLink(
            source_page_id=source_page_id,
            target_url=link.url,
            target_url_hash=url_hash(link.url),
            anchor_text=link.anchor_text,
        )
        for link in links
    ]
