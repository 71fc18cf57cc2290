"""Extracted page content: pure Pydantic v2 data types."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel


class ContentKind(StrEnum):
    """Coarse label for what a legacy page is."""

    BLOG = "blog"
    PRODUCT = "product"
    FAQ = "faq"
    ABOUT = "about"
    LANDING = "landing"
    PAGE = "page"


class ExtractedContent(BaseModel):
    """Everything the extractor pulls out of one HTML document."""

    title: str = ""
    meta_description: str = ""
    plain_text: str = ""
    structured_markdown: str = ""
    word_count: int = 0
    content_type: ContentKind = ContentKind.PAGE
