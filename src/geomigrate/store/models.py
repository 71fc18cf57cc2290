"""Persistent entities: jobs, pages, links, pillars, matches, drafts.

Stores hand these models in and out; ids are assigned by the caller
(``new_id``) so a record can be referenced before it is written.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from geomigrate.content.models import ContentKind
from geomigrate.generation.models import DraftContentType

CANCELLED_MESSAGE = "Cancelled by user"


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobType(StrEnum):
    CRAWL = "crawl"
    ANALYZE = "analyze"
    MATCH = "match"
    GENERATE = "generate"


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PageStatus(StrEnum):
    CRAWLED = "crawled"
    ANALYZED = "analyzed"
    MATCHED = "matched"
    ARCHIVED = "archived"


class Job(BaseModel):
    """A background job record polled by the UI.

    ``payload`` is the original queue payload, kept so a paused job can be
    re-enqueued unchanged. ``metadata`` is the live progress document.
    """

    id: str = Field(default_factory=new_id)
    job_type: JobType
    project_id: str = ""
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    total_items: int | None = None
    processed_items: int = 0
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == JobStatus.FAILED and self.error_message == CANCELLED_MESSAGE

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def pause_requested(self) -> bool:
        return bool(self.metadata.get("pauseRequested"))


class Page(BaseModel):
    """One crawled URL within a project, keyed by (project_id, url_hash)."""

    id: str = Field(default_factory=new_id)
    project_id: str
    url: str
    url_hash: str
    title: str = ""
    meta_description: str = ""
    raw_html: str = ""
    extracted_content: str = ""
    structured_content: str = ""
    word_count: int = 0
    content_type: ContentKind = ContentKind.PAGE
    crawl_depth: int = 0
    link_count: int | None = None
    topics: list[str] = Field(default_factory=list)
    quality_score: float | None = None
    embedding: list[float] | None = None
    status: PageStatus = PageStatus.CRAWLED
    crawled_at: datetime = Field(default_factory=utcnow)
    analyzed_at: datetime | None = None

    @property
    def analysis_text(self) -> str:
        return self.structured_content or self.extracted_content


class PageLink(BaseModel):
    """Directed edge from a stored page to an outbound URL."""

    source_page_id: str
    target_url: str
    target_url_hash: str
    target_page_id: str | None = None
    anchor_text: str | None = None


class Pillar(BaseModel):
    """A topic cluster used as the matching query and generation context."""

    id: str = Field(default_factory=new_id)
    project_id: str
    name: str
    description: str = ""
    target_audience: str = ""
    key_themes: list[str] = Field(default_factory=list)
    primary_keywords: list[str] = Field(default_factory=list)
    tone_notes: str = ""
    priority: int = 0


class Match(BaseModel):
    """(page, pillar) relevance, unique on that pair."""

    id: str = Field(default_factory=new_id)
    page_id: str
    pillar_id: str
    relevance_score: float = Field(ge=0.0, le=1.0)
    is_selected: bool = False
    is_excluded: bool = False
    matched_at: datetime = Field(default_factory=utcnow)


class Draft(BaseModel):
    id: str = Field(default_factory=new_id)
    project_id: str
    pillar_id: str
    title: str
    slug: str
    content: str
    content_type: DraftContentType
    source_page_ids: list[str] = Field(default_factory=list)
    schema_recommendations: dict[str, Any] = Field(default_factory=dict)
    status: str = "draft"
    created_at: datetime = Field(default_factory=utcnow)


class DraftVersion(BaseModel):
    id: str = Field(default_factory=new_id)
    draft_id: str
    version_number: int
    content: str
    change_notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)
