"""Tests for the job progress metadata helpers."""

from __future__ import annotations

import pytest

from geomigrate.jobs.progress import (
    URL_DISPLAY_LIMIT,
    CrawlProgress,
    ErrorEntry,
    Frontier,
    FrontierEntry,
    ItemProgress,
    ScannedPage,
    compute_progress,
    crawl_status_message,
    parse_progress,
    push_rolling,
    truncate_url,
)


class TestStatusMessage:
    @pytest.mark.parametrize(
        ("processed", "expected"),
        [
            (0, "Initializing crawler..."),
            (10, "Exploring site structure..."),
            (25, "Gathering content..."),
            (74, "Gathering content..."),
            (75, "Nearly complete..."),
        ],
    )
    def test_phases(self, processed: int, expected: str) -> None:
        assert crawl_status_message(processed, 100) == expected

    def test_done(self) -> None:
        assert crawl_status_message(3, 100, done=True) == "Crawl complete"


class TestComputeProgress:
    def test_percentage(self) -> None:
        assert compute_progress(1, 3) == 33
        assert compute_progress(3, 3) == 100

    def test_capped(self) -> None:
        assert compute_progress(100, 100, cap=99) == 99
        assert compute_progress(150, 100) == 100

    def test_unknown_total(self) -> None:
        assert compute_progress(5, None) == 0
        assert compute_progress(5, 0) == 0


class TestHelpers:
    def test_truncate_url(self) -> None:
        short = "https://example.com/"
        assert truncate_url(short) == short
        long = "https://example.com/" + "a" * 200
        truncated = truncate_url(long)
        assert len(truncated) == URL_DISPLAY_LIMIT
        assert truncated.endswith("...")

    def test_push_rolling_keeps_latest(self) -> None:
        items: list[int] = []
        for i in range(5):
            push_rolling(items, i, 3)
        assert items == [2, 3, 4]


class TestMetadataModels:
    def test_crawl_progress_uses_camel_case(self) -> None:
        data = CrawlProgress(
            current_url="https://example.com/",
            scanned_pages=[ScannedPage(url="https://example.com/", word_count=10)],
            errors=[ErrorEntry(url="https://example.com/x", error="boom")],
        ).to_metadata()

        assert data["kind"] == "crawl"
        assert data["currentUrl"] == "https://example.com/"
        assert data["scannedPages"][0]["wordCount"] == 10
        assert data["errors"][0]["error"] == "boom"
        assert "timestamp" in data["errors"][0]
        assert "pauseRequested" not in data

    def test_frontier_round_trip(self) -> None:
        frontier = Frontier(
            visited=["https://example.com/"],
            to_visit=[FrontierEntry(url="https://example.com/a", depth=1)],
            refetches={"https://example.com/b": 1},
        )
        restored = Frontier.model_validate(frontier.to_metadata())
        assert restored == frontier

    def test_parse_progress_discriminates(self) -> None:
        crawl = parse_progress(CrawlProgress(failed_pages=2).to_metadata())
        items = parse_progress(ItemProgress(status_message="Working").to_metadata())

        assert isinstance(crawl, CrawlProgress)
        assert crawl.failed_pages == 2
        assert isinstance(items, ItemProgress)
        assert items.status_message == "Working"

    def test_parse_progress_without_kind(self) -> None:
        assert parse_progress({"statusMessage": "x"}) is None
        assert parse_progress({"kind": "unknown"}) is None

    def test_extra_keys_ignored(self) -> None:
        metadata = ItemProgress().to_metadata() | {"pauseRequested": True, "draftId": "d"}
        assert isinstance(parse_progress(metadata), ItemProgress)
