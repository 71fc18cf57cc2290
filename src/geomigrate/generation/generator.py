"""Draft generation from a pillar and its selected source pages."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, assert_never

from geomigrate.generation.models import DraftContentType, GeneratedDraft, GenerationConfig
from geomigrate.generation.prompts import GEO_SYSTEM_PROMPT, build_user_prompt
from geomigrate.shared.llm import LLMError, TextGenerator, call_claude
from geomigrate.store.base import PillarNotFoundError
from geomigrate.store.retry import StoreCaller

logger = logging.getLogger(__name__)

PLACEHOLDER = "[PLACEHOLDER]"

_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)
_SCHEMA_RE = re.compile(r"<!--\s*Schema Recommendations:?\s*(.*?)-->", re.IGNORECASE | re.DOTALL)
_SLUG_RE = re.compile(r"[^a-z0-9]+")


class GenerationError(Exception):
    """Raised when a draft cannot be generated."""


def slugify(title: str) -> str:
    slug = _SLUG_RE.sub("-", title.lower()).strip("-")
    return slug or "draft"


def default_schema(content_type: DraftContentType, title: str) -> dict[str, Any]:
    """Minimal JSON-LD for a content type when the model gave none."""
    base: dict[str, Any] = {"@context": "https://schema.org"}
    match content_type:
        case DraftContentType.PILLAR_PAGE | DraftContentType.SUPPORTING_ARTICLE:
            return {
                **base,
                "@type": "Article",
                "headline": title,
                "author": {"@type": "Person", "name": PLACEHOLDER},
                "datePublished": PLACEHOLDER,
            }
        case DraftContentType.FAQ_PAGE:
            return {**base, "@type": "FAQPage", "mainEntity": []}
        case DraftContentType.GLOSSARY | DraftContentType.COMPARISON:
            return base
        case _:
            assert_never(content_type)


def parse_generated_text(
    text: str,
    content_type: DraftContentType,
    *,
    fallback_title: str,
    title_suggestion: str | None = None,
) -> GeneratedDraft:
    """Split model output into title, body, slug and schema recommendations.

    An explicit title suggestion wins over the leading ``# Title`` line,
    which in turn wins over ``fallback_title``. The heading line is removed
    from the body either way.
    """
    content = text.strip()
    title_match = _TITLE_RE.search(content)
    if title_match:
        content = _TITLE_RE.sub("", content, count=1).strip()
    title = (
        (title_suggestion or "").strip()
        or (title_match.group(1).strip() if title_match else "")
        or fallback_title
    )

    schema: dict[str, Any] | None = None
    schema_match = _SCHEMA_RE.search(content)
    if schema_match:
        try:
            parsed = json.loads(schema_match.group(1).strip())
        except json.JSONDecodeError:
            logger.debug("Unparseable schema recommendation block, using default")
        else:
            if isinstance(parsed, dict):
                schema = parsed
    if schema is None:
        schema = default_schema(content_type, title)

    return GeneratedDraft(
        title=title,
        slug=slugify(title),
        content=content,
        schema_recommendations=schema,
    )


class GenerationService:
    """Builds the GEO prompt, calls the model and parses the draft."""

    def __init__(
        self,
        db: StoreCaller,
        *,
        generate: TextGenerator = call_claude,
        model: str | None = None,
        timeout: int = 360,
    ) -> None:
        self._db = db
        self._generate = generate
        self._model = model
        self._timeout = timeout

    async def generate_draft(self, pillar_id: str, config: GenerationConfig) -> GeneratedDraft:
        """Generate one draft.

        Raises:
            PillarNotFoundError: If the pillar does not exist.
            GenerationError: If no source page exists or the model call fails.
        """
        store = self._db.store
        pillar = await self._db(store.get_pillar, pillar_id)
        if pillar is None:
            raise PillarNotFoundError(f"Pillar not found: {pillar_id}")

        found = await self._db(
            store.list_pages, pillar.project_id, page_ids=list(config.source_page_ids)
        )
        by_id = {page.id: page for page in found}
        sources = [by_id[pid] for pid in config.source_page_ids if pid in by_id]
        if not sources:
            raise GenerationError("No source pages found")

        user_prompt = build_user_prompt(
            pillar, sources, config.content_type, config.additional_guidance
        )
        logger.info(
            "Generating %s for pillar %s from %d source(s)",
            config.content_type.value,
            pillar_id,
            len(sources),
        )
        try:
            raw = await asyncio.to_thread(
                self._generate,
                GEO_SYSTEM_PROMPT,
                user_prompt,
                model=self._model,
                timeout=self._timeout,
                max_tokens=8192,
                label=f"generate {config.content_type.value}",
            )
        except LLMError as exc:
            raise GenerationError(str(exc)) from exc

        return parse_generated_text(
            raw,
            config.content_type,
            fallback_title=pillar.name,
            title_suggestion=config.title_suggestion,
        )
