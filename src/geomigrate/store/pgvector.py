"""Postgres + pgvector implementation of MigrationStore.

Uses SQLAlchemy Core tables. Natural-key upserts rely on
``INSERT ... ON CONFLICT DO UPDATE``; similarity search uses the pgvector
cosine distance operator (``<=>``), so similarity = 1 - distance.
"""

from __future__ import annotations

import logging
from typing import Any

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    cast,
    create_engine,
    delete,
    func,
    text,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, insert
from sqlalchemy.engine import Engine

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

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_DIM = 1536

_PAGE_CRAWL_COLUMNS = (
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


def build_tables(
    metadata: MetaData, embedding_dim: int = DEFAULT_EMBEDDING_DIM
) -> dict[str, Table]:
    """Declare the migration schema on ``metadata``."""
    jobs = Table(
        "jobs",
        metadata,
        Column("id", String, primary_key=True),
        Column("job_type", String, nullable=False, index=True),
        Column("project_id", String, nullable=False, index=True),
        Column("status", String, nullable=False),
        Column("progress", Integer, nullable=False, default=0),
        Column("total_items", Integer),
        Column("processed_items", Integer, nullable=False, default=0),
        Column("payload", JSONB, nullable=False, default=dict),
        Column("job_metadata", JSONB, nullable=False, default=dict),
        Column("error_message", Text),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("started_at", DateTime(timezone=True)),
        Column("completed_at", DateTime(timezone=True)),
    )
    pages = Table(
        "pages",
        metadata,
        Column("id", String, primary_key=True),
        Column("project_id", String, nullable=False, index=True),
        Column("url", Text, nullable=False),
        Column("url_hash", String(64), nullable=False),
        Column("title", Text, default=""),
        Column("meta_description", Text, default=""),
        Column("raw_html", Text, default=""),
        Column("extracted_content", Text, default=""),
        Column("structured_content", Text, default=""),
        Column("word_count", Integer, default=0),
        Column("content_type", String, default="page"),
        Column("crawl_depth", Integer, default=0),
        Column("link_count", Integer),
        Column("topics", ARRAY(String), default=list),
        Column("quality_score", Float),
        Column("embedding", Vector(embedding_dim)),
        Column("status", String, nullable=False, index=True),
        Column("crawled_at", DateTime(timezone=True), nullable=False),
        Column("analyzed_at", DateTime(timezone=True)),
        UniqueConstraint("project_id", "url_hash", name="uq_pages_project_url_hash"),
    )
    page_links = Table(
        "page_links",
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("source_page_id", String, ForeignKey("pages.id", ondelete="CASCADE"), index=True),
        Column("target_url", Text, nullable=False),
        Column("target_url_hash", String(64), nullable=False),
        Column("target_page_id", String, ForeignKey("pages.id", ondelete="SET NULL")),
        Column("anchor_text", Text),
    )
    pillars = Table(
        "pillars",
        metadata,
        Column("id", String, primary_key=True),
        Column("project_id", String, nullable=False, index=True),
        Column("name", Text, nullable=False),
        Column("description", Text, default=""),
        Column("target_audience", Text, default=""),
        Column("key_themes", ARRAY(String), default=list),
        Column("primary_keywords", ARRAY(String), default=list),
        Column("tone_notes", Text, default=""),
        Column("priority", Integer, default=0),
    )
    matches = Table(
        "matches",
        metadata,
        Column("id", String, primary_key=True),
        Column("page_id", String, ForeignKey("pages.id", ondelete="CASCADE"), nullable=False),
        Column("pillar_id", String, ForeignKey("pillars.id", ondelete="CASCADE"), nullable=False),
        Column("relevance_score", Float, nullable=False),
        Column("is_selected", Boolean, default=False),
        Column("is_excluded", Boolean, default=False),
        Column("matched_at", DateTime(timezone=True), nullable=False),
        UniqueConstraint("page_id", "pillar_id", name="uq_matches_page_pillar"),
    )
    drafts = Table(
        "drafts",
        metadata,
        Column("id", String, primary_key=True),
        Column("project_id", String, nullable=False, index=True),
        Column("pillar_id", String, ForeignKey("pillars.id"), nullable=False),
        Column("title", Text, nullable=False),
        Column("slug", String, nullable=False),
        Column("content", Text, nullable=False),
        Column("content_type", String, nullable=False),
        Column("source_page_ids", ARRAY(String), default=list),
        Column("schema_recommendations", JSONB, default=dict),
        Column("status", String, default="draft"),
        Column("created_at", DateTime(timezone=True), nullable=False),
    )
    draft_versions = Table(
        "draft_versions",
        metadata,
        Column("id", String, primary_key=True),
        Column("draft_id", String, ForeignKey("drafts.id", ondelete="CASCADE"), index=True),
        Column("version_number", Integer, nullable=False),
        Column("content", Text, nullable=False),
        Column("change_notes", Text, default=""),
        Column("created_at", DateTime(timezone=True), nullable=False),
        UniqueConstraint("draft_id", "version_number", name="uq_draft_versions_number"),
    )
    return {
        "jobs": jobs,
        "pages": pages,
        "page_links": page_links,
        "pillars": pillars,
        "matches": matches,
        "drafts": drafts,
        "draft_versions": draft_versions,
    }


def _job_from_row(mapping: Any) -> Job:
    data = dict(mapping)
    data["metadata"] = data.pop("job_metadata") or {}
    data["payload"] = data.get("payload") or {}
    return Job.model_validate(data)


def _page_from_row(mapping: Any) -> Page:
    data = dict(mapping)
    data.pop("similarity", None)
    embedding = data.get("embedding")
    data["embedding"] = [float(x) for x in embedding] if embedding is not None else None
    data["topics"] = list(data.get("topics") or [])
    return Page.model_validate(data)


class PgvectorStore(MigrationStore):
    """MigrationStore backed by Postgres with the pgvector extension."""

    def __init__(
        self,
        database_url: str,
        *,
        embedding_dim: int = DEFAULT_EMBEDDING_DIM,
        create_schema: bool = True,
    ) -> None:
        self._url = database_url
        self._engine: Engine = create_engine(database_url, pool_pre_ping=True)
        self._metadata = MetaData()
        self._tables = build_tables(self._metadata, embedding_dim)
        if create_schema:
            with self._engine.begin() as conn:
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            self._metadata.create_all(self._engine)

    def reconnect(self) -> None:
        logger.info("Disposing database connection pool")
        self._engine.dispose()

    # ── Jobs ─────────────────────────────────────────────────────

    def create_job(self, job: Job) -> Job:
        row = job.model_dump()
        row["job_metadata"] = row.pop("metadata")
        with self._engine.begin() as conn:
            conn.execute(self._tables["jobs"].insert().values(**row))
        return job

    def get_job(self, job_id: str) -> Job | None:
        jobs = self._tables["jobs"]
        with self._engine.connect() as conn:
            row = conn.execute(select(jobs).where(jobs.c.id == job_id)).fetchone()
        return _job_from_row(row._mapping) if row is not None else None

    def update_job(self, job_id: str, **fields: Any) -> Job:
        values = dict(fields)
        if "metadata" in values:
            values["job_metadata"] = values.pop("metadata")
        jobs = self._tables["jobs"]
        with self._engine.begin() as conn:
            row = conn.execute(
                update(jobs).where(jobs.c.id == job_id).values(**values).returning(jobs)
            ).fetchone()
        if row is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return _job_from_row(row._mapping)

    def patch_job_metadata(self, job_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        jobs = self._tables["jobs"]
        stmt = (
            update(jobs)
            .where(jobs.c.id == job_id)
            .values(
                job_metadata=func.coalesce(jobs.c.job_metadata, cast({}, JSONB)).op(
                    "||", return_type=JSONB
                )(cast(patch, JSONB))
            )
            .returning(jobs.c.job_metadata)
        )
        with self._engine.begin() as conn:
            row = conn.execute(stmt).fetchone()
        if row is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return dict(row[0] or {})

    # ── Pages ────────────────────────────────────────────────────

    def get_page(self, page_id: str) -> Page | None:
        pages = self._tables["pages"]
        with self._engine.connect() as conn:
            row = conn.execute(select(pages).where(pages.c.id == page_id)).fetchone()
        return _page_from_row(row._mapping) if row is not None else None

    def get_page_by_hash(self, project_id: str, url_hash: str) -> Page | None:
        pages = self._tables["pages"]
        stmt = select(pages).where(pages.c.project_id == project_id, pages.c.url_hash == url_hash)
        with self._engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _page_from_row(row._mapping) if row is not None else None

    def upsert_page(self, page: Page) -> Page:
        pages = self._tables["pages"]
        row = page.model_dump()
        stmt = insert(pages).values(**row)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_pages_project_url_hash",
            set_={name: stmt.excluded[name] for name in _PAGE_CRAWL_COLUMNS},
        ).returning(pages)
        with self._engine.begin() as conn:
            stored = conn.execute(stmt).fetchone()
        return _page_from_row(stored._mapping)

    def list_pages(
        self,
        project_id: str,
        status: PageStatus | None = None,
        page_ids: list[str] | None = None,
    ) -> list[Page]:
        pages = self._tables["pages"]
        stmt = select(pages).where(pages.c.project_id == project_id)
        if status is not None:
            stmt = stmt.where(pages.c.status == str(status))
        if page_ids is not None:
            stmt = stmt.where(pages.c.id.in_(page_ids))
        stmt = stmt.order_by(pages.c.crawled_at)
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_page_from_row(r._mapping) for r in rows]

    def update_page_analysis(
        self,
        page_id: str,
        *,
        topics: list[str],
        quality_score: float,
        embedding: list[float],
    ) -> Page:
        pages = self._tables["pages"]
        stmt = (
            update(pages)
            .where(pages.c.id == page_id)
            .values(
                topics=list(topics),
                quality_score=quality_score,
                embedding=list(embedding),
                status=str(PageStatus.ANALYZED),
                analyzed_at=utcnow(),
            )
            .returning(pages)
        )
        with self._engine.begin() as conn:
            row = conn.execute(stmt).fetchone()
        if row is None:
            raise PageNotFoundError(f"Page not found: {page_id}")
        return _page_from_row(row._mapping)

    def replace_page_links(self, source_page_id: str, links: list[PageLink]) -> int:
        pages = self._tables["pages"]
        page_links = self._tables["page_links"]
        with self._engine.begin() as conn:
            source = conn.execute(
                select(pages.c.project_id).where(pages.c.id == source_page_id)
            ).fetchone()
            if source is None:
                raise PageNotFoundError(f"Page not found: {source_page_id}")
            project_id = source[0]
            hashes = [link.target_url_hash for link in links]
            known: dict[str, str] = {}
            if hashes:
                for row in conn.execute(
                    select(pages.c.url_hash, pages.c.id).where(
                        pages.c.project_id == project_id, pages.c.url_hash.in_(hashes)
                    )
                ):
                    known[row[0]] = row[1]
            conn.execute(delete(page_links).where(page_links.c.source_page_id == source_page_id))
            if links:
                conn.execute(
                    page_links.insert(),
                    [
                        {
                            "source_page_id": source_page_id,
                            "target_url": link.target_url,
                            "target_url_hash": link.target_url_hash,
                            "target_page_id": known.get(link.target_url_hash),
                            "anchor_text": link.anchor_text,
                        }
                        for link in links
                    ],
                )
        return len(links)

    def get_page_links(self, source_page_id: str) -> list[PageLink]:
        page_links = self._tables["page_links"]
        stmt = (
            select(page_links)
            .where(page_links.c.source_page_id == source_page_id)
            .order_by(page_links.c.id)
        )
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [
            PageLink.model_validate({k: v for k, v in r._mapping.items() if k != "id"})
            for r in rows
        ]

    def similar_pages(
        self,
        project_id: str,
        embedding: list[float],
        *,
        min_similarity: float,
        limit: int,
    ) -> list[tuple[Page, float]]:
        pages = self._tables["pages"]
        distance = pages.c.embedding.cosine_distance(embedding)
        similarity = (1 - distance).label("similarity")
        stmt = (
            select(pages, similarity)
            .where(
                pages.c.project_id == project_id,
                pages.c.status == str(PageStatus.ANALYZED),
                pages.c.embedding.is_not(None),
                (1 - distance) >= min_similarity,
            )
            .order_by(distance)
            .limit(limit)
        )
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [(_page_from_row(r._mapping), float(r._mapping["similarity"])) for r in rows]

    # ── Pillars / matches ────────────────────────────────────────

    def create_pillar(self, pillar: Pillar) -> Pillar:
        with self._engine.begin() as conn:
            conn.execute(self._tables["pillars"].insert().values(**pillar.model_dump()))
        return pillar

    def get_pillar(self, pillar_id: str) -> Pillar | None:
        pillars = self._tables["pillars"]
        with self._engine.connect() as conn:
            row = conn.execute(select(pillars).where(pillars.c.id == pillar_id)).fetchone()
        if row is None:
            return None
        data = dict(row._mapping)
        data["key_themes"] = list(data.get("key_themes") or [])
        data["primary_keywords"] = list(data.get("primary_keywords") or [])
        return Pillar.model_validate(data)

    def upsert_match(self, page_id: str, pillar_id: str, relevance_score: float) -> Match:
        matches = self._tables["matches"]
        match = Match(page_id=page_id, pillar_id=pillar_id, relevance_score=relevance_score)
        stmt = insert(matches).values(**match.model_dump())
        stmt = stmt.on_conflict_do_update(
            constraint="uq_matches_page_pillar",
            set_={
                "relevance_score": stmt.excluded.relevance_score,
                "matched_at": stmt.excluded.matched_at,
            },
        ).returning(matches)
        with self._engine.begin() as conn:
            row = conn.execute(stmt).fetchone()
        return Match.model_validate(dict(row._mapping))

    def list_matches(self, pillar_id: str) -> list[Match]:
        matches = self._tables["matches"]
        stmt = (
            select(matches)
            .where(matches.c.pillar_id == pillar_id)
            .order_by(matches.c.relevance_score.desc())
        )
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [Match.model_validate(dict(r._mapping)) for r in rows]

    # ── Drafts ───────────────────────────────────────────────────

    def create_draft(self, draft: Draft) -> tuple[Draft, DraftVersion]:
        version = DraftVersion(
            draft_id=draft.id,
            version_number=1,
            content=draft.content,
            change_notes=INITIAL_VERSION_NOTES,
        )
        with self._engine.begin() as conn:
            conn.execute(self._tables["drafts"].insert().values(**draft.model_dump()))
            conn.execute(self._tables["draft_versions"].insert().values(**version.model_dump()))
        return draft, version

    def list_draft_versions(self, draft_id: str) -> list[DraftVersion]:
        versions = self._tables["draft_versions"]
        stmt = (
            select(versions)
            .where(versions.c.draft_id == draft_id)
            .order_by(versions.c.version_number)
        )
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [DraftVersion.model_validate(dict(r._mapping)) for r in rows]
