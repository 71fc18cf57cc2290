"""Pillar-to-page matching by embedding similarity."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from geomigrate.shared.embeddings import EmbeddingClient
from geomigrate.shared.vectors import cosine_similarity
from geomigrate.store.base import PillarNotFoundError
from geomigrate.store.models import Match, Pillar
from geomigrate.store.retry import StoreCaller

logger = logging.getLogger(__name__)


class MatchConfig(BaseModel):
    min_relevance: float = Field(default=0.7, ge=0.0, le=1.0)
    max_results: int = Field(default=100, ge=0)


class MatchResult(BaseModel):
    page_id: str
    relevance_score: float


def build_pillar_text(pillar: Pillar) -> str:
    """Concatenate the pillar's descriptive fields into one embedding query.

    Falls back to the pillar name when every descriptive field is empty.
    """
    parts = [
        pillar.description,
        pillar.target_audience,
        *pillar.key_themes,
        *pillar.primary_keywords,
    ]
    text = " ".join(p.strip() for p in parts if p and p.strip())
    return text or pillar.name


def _clamp(score: float) -> float:
    return min(1.0, max(0.0, float(score)))


class MatchingService:
    """Ranks analyzed pages against a pillar and persists matches."""

    def __init__(self, db: StoreCaller, embedder: EmbeddingClient) -> None:
        self._db = db
        self._embedder = embedder

    async def _pillar_embedding(self, pillar_id: str) -> tuple[Pillar, list[float]]:
        pillar = await self._db(self._db.store.get_pillar, pillar_id)
        if pillar is None:
            raise PillarNotFoundError(f"Pillar not found: {pillar_id}")
        return pillar, await self._embedder.embed(build_pillar_text(pillar))

    async def rank_candidates(
        self, pillar_id: str, config: MatchConfig | None = None
    ) -> list[MatchResult]:
        """Pages scoring at least ``min_relevance``, best first, at most ``max_results``.

        Raises:
            PillarNotFoundError: If the pillar does not exist.
        """
        config = config or MatchConfig()
        pillar, embedding = await self._pillar_embedding(pillar_id)
        ranked = await self._db(
            self._db.store.similar_pages,
            pillar.project_id,
            embedding,
            min_similarity=config.min_relevance,
            limit=config.max_results,
        )
        results = [
            MatchResult(page_id=page.id, relevance_score=_clamp(score))
            for page, score in ranked
            if score >= config.min_relevance
        ]
        return results[: config.max_results]

    async def save_match(self, pillar_id: str, result: MatchResult) -> Match:
        return await self._db(
            self._db.store.upsert_match, result.page_id, pillar_id, result.relevance_score
        )

    async def find_matches(
        self, pillar_id: str, config: MatchConfig | None = None
    ) -> list[MatchResult]:
        """Rank candidates and upsert a Match for each of them."""
        results = await self.rank_candidates(pillar_id, config)
        for result in results:
            await self.save_match(pillar_id, result)
        logger.info("Pillar %s matched %d page(s)", pillar_id, len(results))
        return results

    async def calculate_relevance(self, pillar_id: str, page_id: str) -> float:
        """Similarity of a single (pillar, page) pair; 0.0 if either is missing."""
        pillar = await self._db(self._db.store.get_pillar, pillar_id)
        page = await self._db(self._db.store.get_page, page_id)
        if pillar is None or page is None or not page.embedding:
            return 0.0
        embedding = await self._embedder.embed(build_pillar_text(pillar))
        return _clamp(cosine_similarity(embedding, page.embedding))
