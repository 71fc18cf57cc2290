"""Tests for MemoryStore."""

from __future__ import annotations

import pytest

from geomigrate.crawl.links import url_hash
from geomigrate.generation.models import DraftContentType
from geomigrate.store.base import INITIAL_VERSION_NOTES, JobNotFoundError, PageNotFoundError
from geomigrate.store.memory import MemoryStore
from geomigrate.store.models import (
    Draft,
    Job,
    JobType,
    Page,
    PageLink,
    PageStatus,
    Pillar,
)


def _make_page(url: str = "https://example.com/a", **kwargs) -> Page:
    defaults = {
        "project_id": "proj",
        "url": url,
        "url_hash": url_hash(url),
        "title": "A page",
        "raw_html": "<p>hi</p>",
        "extracted_content": "hi",
    }
    defaults.update(kwargs)
    return Page(**defaults)


class TestJobs:
    def test_update_unknown_job(self, store: MemoryStore) -> None:
        with pytest.raises(JobNotFoundError):
            store.update_job("missing", progress=10)

    def test_patch_merges_keys(self, store: MemoryStore) -> None:
        job = store.create_job(Job(job_type=JobType.CRAWL, metadata={"a": 1, "b": 2}))
        merged = store.patch_job_metadata(job.id, {"b": 3, "c": None})
        assert merged == {"a": 1, "b": 3, "c": None}
        assert store.get_job(job.id).metadata == merged

    def test_returned_records_are_copies(self, store: MemoryStore) -> None:
        job = store.create_job(Job(job_type=JobType.CRAWL))
        fetched = store.get_job(job.id)
        fetched.metadata["x"] = 1
        assert store.get_job(job.id).metadata == {}


class TestPages:
    def test_upsert_by_natural_key_keeps_id(self, store: MemoryStore) -> None:
        first = store.upsert_page(_make_page(title="Old"))
        second = store.upsert_page(_make_page(title="New"))
        assert second.id == first.id
        assert second.title == "New"
        assert len(store.list_pages("proj")) == 1

    def test_upsert_keeps_analysis_results(self, store: MemoryStore) -> None:
        page = store.upsert_page(_make_page())
        store.update_page_analysis(page.id, topics=["x"], quality_score=0.5, embedding=[1.0])
        store.upsert_page(_make_page(title="Recrawled"))
        stored = store.get_page(page.id)
        assert stored.topics == ["x"]
        assert stored.embedding == [1.0]

    def test_same_url_in_other_project_is_distinct(self, store: MemoryStore) -> None:
        store.upsert_page(_make_page())
        store.upsert_page(_make_page(project_id="other"))
        assert len(store.list_pages("proj")) == 1
        assert len(store.list_pages("other")) == 1

    def test_list_filters(self, store: MemoryStore) -> None:
        a = store.upsert_page(_make_page("https://example.com/a"))
        b = store.upsert_page(_make_page("https://example.com/b"))
        store.update_page_analysis(b.id, topics=[], quality_score=0.1, embedding=[1.0])
        assert [p.id for p in store.list_pages("proj", status=PageStatus.CRAWLED)] == [a.id]
        assert [p.id for p in store.list_pages("proj", page_ids=[b.id])] == [b.id]

    def test_analysis_of_unknown_page(self, store: MemoryStore) -> None:
        with pytest.raises(PageNotFoundError):
            store.update_page_analysis("nope", topics=[], quality_score=0.0, embedding=[])

    def test_links_resolve_known_targets(self, store: MemoryStore) -> None:
        source = store.upsert_page(_make_page("https://example.com/a"))
        target = store.upsert_page(_make_page("https://example.com/b"))
        count = store.replace_page_links(
            source.id,
            [
                PageLink(
                    source_page_id=source.id,
                    target_url=target.url,
                    target_url_hash=target.url_hash,
                ),
                PageLink(
                    source_page_id=source.id,
                    target_url="https://example.com/unknown",
                    target_url_hash=url_hash("https://example.com/unknown"),
                ),
            ],
        )
        links = store.get_page_links(source.id)
        assert count == 2
        assert links[0].target_page_id == target.id
        assert links[1].target_page_id is None

    def test_replace_links_replaces(self, store: MemoryStore) -> None:
        source = store.upsert_page(_make_page())
        link = PageLink(source_page_id=source.id, target_url="u", target_url_hash="h")
        store.replace_page_links(source.id, [link, link])
        store.replace_page_links(source.id, [link])
        assert len(store.get_page_links(source.id)) == 1


class TestSimilarity:
    def _analyzed(self, store: MemoryStore, url: str, vector: list[float]) -> Page:
        page = store.upsert_page(_make_page(url))
        return store.update_page_analysis(
            page.id, topics=[], quality_score=0.5, embedding=vector
        )

    def test_threshold_limit_and_order(self, store: MemoryStore) -> None:
        best = self._analyzed(store, "https://example.com/1", [1.0, 0.0])
        good = self._analyzed(store, "https://example.com/2", [0.9, 0.1])
        self._analyzed(store, "https://example.com/3", [0.0, 1.0])
        store.upsert_page(_make_page("https://example.com/unanalyzed"))

        ranked = store.similar_pages("proj", [1.0, 0.0], min_similarity=0.5, limit=10)
        assert [p.id for p, _ in ranked] == [best.id, good.id]
        assert ranked[0][1] == pytest.approx(1.0)

        assert len(store.similar_pages("proj", [1.0, 0.0], min_similarity=0.5, limit=1)) == 1


class TestPillarsAndDrafts:
    def test_upsert_match_updates_score(self, store: MemoryStore) -> None:
        pillar = store.create_pillar(Pillar(project_id="proj", name="P"))
        page = store.upsert_page(_make_page())
        first = store.upsert_match(page.id, pillar.id, 0.8)
        second = store.upsert_match(page.id, pillar.id, 0.9)
        matches = store.list_matches(pillar.id)
        assert len(matches) == 1
        assert second.id == first.id
        assert matches[0].relevance_score == 0.9
        assert second.matched_at >= first.matched_at

    def test_create_draft_writes_version_one(self, store: MemoryStore) -> None:
        draft, version = store.create_draft(
            Draft(
                project_id="proj",
                pillar_id="pil",
                title="T",
                slug="t",
                content="body",
                content_type=DraftContentType.GLOSSARY,
            )
        )
        assert version.draft_id == draft.id
        assert version.version_number == 1
        assert version.content == "body"
        assert version.change_notes == INITIAL_VERSION_NOTES
        assert store.list_draft_versions(draft.id) == [version]
