"""Storage interface shared by the in-memory and Postgres stores.

All methods are synchronous; async callers go through
:func:`geomigrate.store.retry.with_retry`, which runs them off the event
loop and retries connection-class failures.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from geomigrate.store.models import (
    Draft,
    DraftVersion,
    Job,
    Match,
    Page,
    PageLink,
    PageStatus,
    Pillar,
)


class StoreError(Exception):
    """Base error for storage operations."""


class NotFoundError(StoreError):
    """A referenced record does not exist."""


class JobNotFoundError(NotFoundError):
    pass


class PageNotFoundError(NotFoundError):
    pass


class PillarNotFoundError(NotFoundError):
    pass


INITIAL_VERSION_NOTES = "Initial generated version"


class MigrationStore(ABC):
    """Jobs, pages, links, pillars, matches and drafts for all projects."""

    def reconnect(self) -> None:  # noqa: B027
        """Re-establish the connection after a connection-class failure."""

    # ── Jobs ─────────────────────────────────────────────────────

    @abstractmethod
    def create_job(self, job: Job) -> Job: ...

    @abstractmethod
    def get_job(self, job_id: str) -> Job | None: ...

    @abstractmethod
    def update_job(self, job_id: str, **fields: Any) -> Job:
        """Set top-level job fields. Raises JobNotFoundError."""

    @abstractmethod
    def patch_job_metadata(self, job_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Atomically merge ``patch`` into the job's metadata (key level).

        Keys set to ``None`` are stored as null, not removed. Returns the
        merged document. Raises JobNotFoundError.
        """

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    # ── Pages ────────────────────────────────────────────────────

    @abstractmethod
    def get_page(self, page_id: str) -> Page | None: ...

    @abstractmethod
    def get_page_by_hash(self, project_id: str, url_hash: str) -> Page | None: ...

    @abstractmethod
    def upsert_page(self, page: Page) -> Page:
        """Insert or update by (project_id, url_hash); returns the stored page.

        On update the existing id is kept and analysis results are left
        untouched unless the page is re-crawled with a new status.
        """

    @abstractmethod
    def list_pages(
        self,
        project_id: str,
        status: PageStatus | None = None,
        page_ids: list[str] | None = None,
    ) -> list[Page]: ...

    @abstractmethod
    def update_page_analysis(
        self,
        page_id: str,
        *,
        topics: list[str],
        quality_score: float,
        embedding: list[float],
    ) -> Page:
        """Store analysis results and mark the page analyzed."""

    @abstractmethod
    def replace_page_links(self, source_page_id: str, links: list[PageLink]) -> int:
        """Replace a page's outbound links, resolving targets to known pages.

        Returns the number of links stored.
        """

    @abstractmethod
    def get_page_links(self, source_page_id: str) -> list[PageLink]: ...

    @abstractmethod
    def similar_pages(
        self,
        project_id: str,
        embedding: list[float],
        *,
        min_similarity: float,
        limit: int,
    ) -> list[tuple[Page, float]]:
        """Analyzed pages with an embedding, best cosine similarity first.

        Only pairs with ``similarity >= min_similarity`` are returned, at
        most ``limit`` of them.
        """

    # ── Pillars / matches ────────────────────────────────────────

    @abstractmethod
    def create_pillar(self, pillar: Pillar) -> Pillar: ...

    @abstractmethod
    def get_pillar(self, pillar_id: str) -> Pillar | None: ...

    @abstractmethod
    def upsert_match(self, page_id: str, pillar_id: str, relevance_score: float) -> Match:
        """Insert or update on (page_id, pillar_id); refreshes score and matched_at."""

    @abstractmethod
    def list_matches(self, pillar_id: str) -> list[Match]: ...

    # ── Drafts ───────────────────────────────────────────────────

    @abstractmethod
    def create_draft(self, draft: Draft) -> tuple[Draft, DraftVersion]:
        """Persist a draft together with its version 1."""

    @abstractmethod
    def list_draft_versions(self, draft_id: str) -> list[DraftVersion]: ...
