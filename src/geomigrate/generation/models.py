"""Generation domain models: pure Pydantic v2 data types."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class DraftContentType(StrEnum):
    """The five draft shapes the generator can produce."""

    PILLAR_PAGE = "pillar_page"
    SUPPORTING_ARTICLE = "supporting_article"
    FAQ_PAGE = "faq_page"
    GLOSSARY = "glossary"
    COMPARISON = "comparison"


class GenerationConfig(BaseModel):
    """Parameters of one generate request (the generate job payload)."""

    content_type: DraftContentType = DraftContentType.PILLAR_PAGE
    source_page_ids: list[str] = Field(default_factory=list)
    title_suggestion: str | None = None
    additional_guidance: str | None = None


class GeneratedDraft(BaseModel):
    """Parsed generator output, before it is persisted as a Draft."""

    title: str
    slug: str
    content: str
    schema_recommendations: dict[str, Any] = Field(default_factory=dict)
