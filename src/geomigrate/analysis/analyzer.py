"""Per-page analysis: embedding, topic extraction and a heuristic quality score."""

from __future__ import annotations

import asyncio
import json
import logging
import re

from pydantic import BaseModel, Field

from geomigrate.shared.embeddings import EmbeddingClient
from geomigrate.shared.llm import LLMError, TextGenerator, call_claude, strip_json_fences

logger = logging.getLogger(__name__)

TOPIC_CONTENT_LIMIT = 8000
MAX_TOPICS = 7

_HEADING_RE = re.compile(r"#{1,6}\s|<h[1-6]>", re.IGNORECASE)
_LIST_RE = re.compile(r"[-*]\s|<[uo]l>", re.IGNORECASE)
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")

TOPICS_PROMPT = """Analyze the following web page content and extract 3-7 main topics or themes.
Return only the topics as a JSON array of strings.
Focus on substantive topics, not generic terms."""


class PageAnalysis(BaseModel):
    """Analysis results for one page."""

    page_id: str
    embedding: list[float]
    topics: list[str] = Field(default_factory=list)
    quality_score: float = Field(ge=0.0, le=1.0)


def calculate_quality_score(content: str) -> float:
    """Deterministic 0..1 score from length, structure, readability and diversity.

    Sub-scores: word-count band (up to 0.3), headings and lists (up to 0.3),
    average sentence length (up to 0.2), unique-word ratio (up to 0.2).
    """
    words = content.split()
    word_count = len(words)
    if word_count == 0:
        return 0.0

    score = 0.0
    if word_count >= 1000:
        score += 0.3
    elif word_count >= 500:
        score += 0.2
    elif word_count >= 200:
        score += 0.1

    has_headings = _HEADING_RE.search(content) is not None
    has_lists = _LIST_RE.search(content) is not None
    if has_headings and has_lists:
        score += 0.3
    elif has_headings or has_lists:
        score += 0.15

    sentences = [s for s in _SENTENCE_SPLIT_RE.split(content) if s.strip()]
    if sentences:
        average = word_count / len(sentences)
        if 10 <= average <= 20:
            score += 0.2
        elif 5 <= average <= 25:
            score += 0.1

    diversity = len({w.lower() for w in words}) / word_count
    if diversity > 0.5:
        score += 0.2
    elif diversity > 0.3:
        score += 0.1

    return round(min(1.0, max(0.0, score)), 4)


def parse_topics(raw: str) -> list[str]:
    """Parse a JSON array of topic strings from model output.

    Raises:
        ValueError: If the output is not a JSON array.
    """
    data = json.loads(strip_json_fences(raw))
    if not isinstance(data, list):
        raise ValueError("Topic response is not a JSON array")
    topics: list[str] = []
    for item in data:
        topic = str(item).strip()
        if topic and topic not in topics:
            topics.append(topic)
    return topics[:MAX_TOPICS]


class AnalysisService:
    """Runs embedding, topic extraction and scoring for pages."""

    def __init__(
        self,
        embedder: EmbeddingClient,
        *,
        generate: TextGenerator = call_claude,
        model: str | None = None,
        timeout: int = 120,
    ) -> None:
        self._embedder = embedder
        self._generate = generate
        self._model = model
        self._timeout = timeout

    async def analyze_page(self, page_id: str, content: str) -> PageAnalysis:
        """Analyze one page. Embedding failures propagate; topic failures do not."""
        embedding = await self.generate_embedding(content)
        topics = await self.extract_topics(content)
        return PageAnalysis(
            page_id=page_id,
            embedding=embedding,
            topics=topics,
            quality_score=calculate_quality_score(content),
        )

    async def generate_embedding(self, text: str) -> list[float]:
        return await self._embedder.embed(text)

    async def generate_embeddings_batch(self, texts: list[str]) -> list[list[float]]:
        return await self._embedder.embed_batch(texts)

    async def extract_topics(self, content: str) -> list[str]:
        """Ask the model for 3-7 topics; any failure yields an empty list."""
        if not content.strip():
            return []
        user_prompt = f"Content:\n{content[:TOPIC_CONTENT_LIMIT]}\n\nTopics (JSON array):"
        try:
            raw = await asyncio.to_thread(
                self._generate,
                TOPICS_PROMPT,
                user_prompt,
                model=self._model,
                timeout=self._timeout,
                max_tokens=500,
                label="topics",
            )
            return parse_topics(raw)
        except (LLMError, ValueError) as exc:
            logger.warning("Topic extraction failed: %s", exc)
            return []
