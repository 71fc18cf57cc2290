"""In-process store for tests and single-process runs.

Records are copied on the way in and out so callers never share mutable
state with the store. A single lock serializes every operation, which
gives ``patch_job_metadata`` its atomicity.
"""

from __future__ import annotations

import threading
from typing import Any

from geomigrate.shared.vectors import cosine_similarity
from geomigrate.store.base import (
    INITIAL_VERSION_NOTES,
    JobNotFoundError,
    MigrationStore,
    PageNotFoundError,
)
from geomigrate.store.models import (
    Draft,
    DraftVersion,
    Job,
    Match,
    Page,
    PageLink,
    PageStatus,
    Pillar,
    utcnow,
)

# Fields a re-crawl refreshes; analysis results survive
_CRAWL_FIELDS = (
    "url",
    "title",
    "meta_description",
    "raw_html",
    "extracted_content",
    "structured_content",
    "word_count",
    "content_type",
    "crawl_depth",
    "link_count",
    "status",
    "crawled_at",
)


class MemoryStore(MigrationStore):
    """Dict-backed MigrationStore with brute-force similarity search."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, Job] = {}
        self._pages: dict[str, Page] = {}
        self._page_keys: dict[tuple[str, str], str] = {}
        self._links: dict[str, list[PageLink]] = {}
        self._pillars: dict[str, Pillar] = {}
        self._matches: dict[tuple[str, str], Match] = {}
        self._drafts: dict[str, Draft] = {}
        self._versions: dict[str, list[DraftVersion]] = {}

    # ── Jobs ─────────────────────────────────────────────────────

    def create_job(self, job: Job) -> Job:
        with self._lock:
            self._jobs[job.id] = job.model_copy(deep=True)
            return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def update_job(self, job_id: str, **fields: Any) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            updated = job.model_copy(update=fields, deep=True)
            self._jobs[job_id] = Job.model_validate(updated.model_dump())
            return self._jobs[job_id].model_copy(deep=True)

    def patch_job_metadata(self, job_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            merged = {**job.metadata, **patch}
            self._jobs[job_id] = job.model_copy(update={"metadata": merged}, deep=True)
            return dict(merged)

    # ── Pages ────────────────────────────────────────────────────

    def get_page(self, page_id: str) -> Page | None:
        with self._lock:
            page = self._pages.get(page_id)
            return page.model_copy(deep=True) if page else None

    def get_page_by_hash(self, project_id: str, url_hash: str) -> Page | None:
        with self._lock:
            page_id = self._page_keys.get((project_id, url_hash))
            return self._pages[page_id].model_copy(deep=True) if page_id else None

    def upsert_page(self, page: Page) -> Page:
        with self._lock:
            key = (page.project_id, page.url_hash)
            existing_id = self._page_keys.get(key)
            if existing_id is None:
                stored = page.model_copy(deep=True)
                self._pages[stored.id] = stored
                self._page_keys[key] = stored.id
            else:
                changes = {name: getattr(page, name) for name in _CRAWL_FIELDS}
                stored = self._pages[existing_id].model_copy(update=changes, deep=True)
                self._pages[existing_id] = stored
            return stored.model_copy(deep=True)

    def list_pages(
        self,
        project_id: str,
        status: PageStatus | None = None,
        page_ids: list[str] | None = None,
    ) -> list[Page]:
        with self._lock:
            pages = [p for p in self._pages.values() if p.project_id == project_id]
            if status is not None:
                pages = [p for p in pages if p.status == status]
            if page_ids is not None:
                wanted = set(page_ids)
                pages = [p for p in pages if p.id in wanted]
            return [p.model_copy(deep=True) for p in sorted(pages, key=lambda p: p.crawled_at)]

    def update_page_analysis(
        self,
        page_id: str,
        *,
        topics: list[str],
        quality_score: float,
        embedding: list[float],
    ) -> Page:
        with self._lock:
            page = self._pages.get(page_id)
            if page is None:
                raise PageNotFoundError(f"Page not found: {page_id}")
            updated = page.model_copy(
                update={
                    "topics": list(topics),
                    "quality_score": quality_score,
                    "embedding": list(embedding),
                    "status": PageStatus.ANALYZED,
                    "analyzed_at": utcnow(),
                },
                deep=True,
            )
            self._pages[page_id] = updated
            return updated.model_copy(deep=True)

    def replace_page_links(self, source_page_id: str, links: list[PageLink]) -> int:
        with self._lock:
            source = self._pages.get(source_page_id)
            if source is None:
                raise PageNotFoundError(f"Page not found: {source_page_id}")
            resolved = []
            for link in links:
                target_id = self._page_keys.get((source.project_id, link.target_url_hash))
                resolved.append(
                    link.model_copy(
                        update={"source_page_id": source_page_id, "target_page_id": target_id}
                    )
                )
            self._links[source_page_id] = resolved
            return len(resolved)

    def get_page_links(self, source_page_id: str) -> list[PageLink]:
        with self._lock:
            return [link.model_copy() for link in self._links.get(source_page_id, [])]

    def similar_pages(
        self,
        project_id: str,
        embedding: list[float],
        *,
        min_similarity: float,
        limit: int,
    ) -> list[tuple[Page, float]]:
        with self._lock:
            scored: list[tuple[Page, float]] = []
            for page in self._pages.values():
                if page.project_id != project_id or page.status != PageStatus.ANALYZED:
                    continue
                if not page.embedding:
                    continue
                score = cosine_similarity(embedding, page.embedding)
                if score >= min_similarity:
                    scored.append((page.model_copy(deep=True), score))
            scored.sort(key=lambda pair: pair[1], reverse=True)
            return scored[: max(limit, 0)]

    # ── Pillars / matches ────────────────────────────────────────

    def create_pillar(self, pillar: Pillar) -> Pillar:
        with self._lock:
            self._pillars[pillar.id] = pillar.model_copy(deep=True)
            return pillar.model_copy(deep=True)

    def get_pillar(self, pillar_id: str) -> Pillar | None:
        with self._lock:
            pillar = self._pillars.get(pillar_id)
            return pillar.model_copy(deep=True) if pillar else None

    def upsert_match(self, page_id: str, pillar_id: str, relevance_score: float) -> Match:
        with self._lock:
            key = (page_id, pillar_id)
            existing = self._matches.get(key)
            if existing is None:
                match = Match(page_id=page_id, pillar_id=pillar_id, relevance_score=relevance_score)
            else:
                match = existing.model_copy(
                    update={"relevance_score": relevance_score, "matched_at": utcnow()}
                )
            self._matches[key] = match
            return match.model_copy()

    def list_matches(self, pillar_id: str) -> list[Match]:
        with self._lock:
            matches = [m for m in self._matches.values() if m.pillar_id == pillar_id]
            return sorted(matches, key=lambda m: m.relevance_score, reverse=True)

    # ── Drafts ───────────────────────────────────────────────────

    def create_draft(self, draft: Draft) -> tuple[Draft, DraftVersion]:
        with self._lock:
            stored = draft.model_copy(deep=True)
            version = DraftVersion(
                draft_id=stored.id,
                version_number=1,
                content=stored.content,
                change_notes=INITIAL_VERSION_NOTES,
            )
            self._drafts[stored.id] = stored
            self._versions[stored.id] = [version]
            return stored.model_copy(deep=True), version.model_copy()

    def list_draft_versions(self, draft_id: str) -> list[DraftVersion]:
        with self._lock:
            return [v.model_copy() for v in self._versions.get(draft_id, [])]
