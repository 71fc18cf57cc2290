"""Typed views of the job ``metadata`` document polled by the UI.

Workers build one of the progress models and write it with
``MigrationStore.patch_job_metadata``; keys are camelCase on the wire.
``pauseRequested``/``pauseRequestedAt`` belong to the control API and are
never part of a worker patch.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

URL_DISPLAY_LIMIT = 100


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def truncate_url(url: str, limit: int = URL_DISPLAY_LIMIT) -> str:
    if len(url) <= limit:
        return url
    return url[: limit - 3] + "..."


def push_rolling(items: list[Any], item: Any, limit: int) -> list[Any]:
    """Append ``item`` and keep only the most recent ``limit`` entries."""
    items.append(item)
    if len(items) > limit:
        del items[: len(items) - limit]
    return items


def crawl_status_message(processed: int, max_pages: int, *, done: bool = False) -> str:
    """Human-readable crawl phase, phrased by progress percentile."""
    if done:
        return "Crawl complete"
    if processed <= 0:
        return "Initializing crawler..."
    ratio = processed / max(max_pages, 1)
    if ratio < 0.25:
        return "Exploring site structure..."
    if ratio < 0.75:
        return "Gathering content..."
    return "Nearly complete..."


def compute_progress(processed: int, total: int | None, *, cap: int = 100) -> int:
    if not total:
        return 0
    return max(0, min(cap, round(processed / total * 100)))


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_metadata(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class ScannedPage(_CamelModel):
    title: str = ""
    url: str
    word_count: int = 0
    links_count: int = 0
    depth: int = 0


class ErrorEntry(_CamelModel):
    url: str = ""
    error: str
    timestamp: str = Field(default_factory=now_iso)


class FrontierEntry(_CamelModel):
    url: str
    depth: int


class Frontier(_CamelModel):
    """Resumable BFS state of a paused crawl."""

    visited: list[str] = Field(default_factory=list)
    to_visit: list[FrontierEntry] = Field(default_factory=list)
    processed: int = 0
    reused: int = 0
    failed: int = 0
    total_links: int = 0
    refetches: dict[str, int] = Field(default_factory=dict)


class CrawlProgress(_CamelModel):
    kind: Literal["crawl"] = "crawl"
    status_message: str = "Initializing crawler..."
    current_url: str = ""
    depth: int = 0
    queue_size: int = 0
    links_found: int = 0
    last_page_title: str = ""
    scanned_pages: list[ScannedPage] = Field(default_factory=list)
    total_links_discovered: int = 0
    errors: list[ErrorEntry] = Field(default_factory=list)
    failed_pages: int = 0
    reused_pages: int = 0


class ItemProgress(_CamelModel):
    """Progress of analyze, match and generate jobs."""

    kind: Literal["items"] = "items"
    status_message: str = ""
    current_item: str = ""
    errors: list[ErrorEntry] = Field(default_factory=list)
    failed_items: int = 0


JobProgress = Annotated[CrawlProgress | ItemProgress, Field(discriminator="kind")]

_progress_adapter: TypeAdapter[CrawlProgress | ItemProgress] = TypeAdapter(JobProgress)


def parse_progress(metadata: dict[str, Any]) -> CrawlProgress | ItemProgress | None:
    """Read a metadata document back into its progress model, if it has one."""
    if "kind" not in metadata:
        return None
    try:
        return _progress_adapter.validate_python(metadata)
    except ValidationError:
        return None
