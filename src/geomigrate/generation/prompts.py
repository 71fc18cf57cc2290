"""Prompts for generative-engine-optimized (GEO) draft generation."""

from __future__ import annotations

from typing import assert_never

from geomigrate.generation.models import DraftContentType
from geomigrate.store.models import Page, Pillar

GEO_SYSTEM_PROMPT = (
    "You are a content strategist who specializes in Generative Engine Optimization (GEO): "
    "rewriting legacy website content so that it reads well for people and is easy for "
    "AI answer engines to quote.\n\n"
    "Structure:\n"
    "- Open with what the reader will learn.\n"
    "- Use H2 headings phrased as the questions readers actually ask, each followed by a "
    "direct 2-3 sentence answer before any elaboration.\n"
    "- Keep paragraphs to 2-4 sentences. Add one \"Key Takeaway\" callout.\n"
    "- End with an FAQ section whose answers run 25-40 words.\n\n"
    "Authority:\n"
    "- Leave placeholders for author name, credentials and a \"Last Updated\" date.\n"
    "- Keep statistics and research cited in the sources; never invent facts.\n\n"
    "Avoid keyword stuffing, filler, hedging and marketing hyperbole.\n\n"
    "Output ONLY the Markdown document, starting with a single `# Title` line. "
    "Where the sources are too thin, mark the gap as [NEEDS: what is missing]. "
    "At the very end add an HTML comment of the form "
    "`<!-- Schema Recommendations: {JSON-LD object} -->`."
)

CONTENT_TYPE_PROMPTS: dict[DraftContentType, str] = {
    DraftContentType.PILLAR_PAGE: (
        "Write the definitive pillar page for this topic, covering every major aspect. "
        "Target 1500-2500 words with 4-6 FAQ questions. Point out subtopics that "
        "deserve their own supporting articles."
    ),
    DraftContentType.SUPPORTING_ARTICLE: (
        "Write a focused supporting article that goes deep on one subtopic instead of "
        "covering everything. Target 800-1200 words with 2-3 FAQ questions, and explain "
        "how the subtopic ties back to the pillar."
    ),
    DraftContentType.FAQ_PAGE: (
        "Write an FAQ page with 15-25 questions taken from or implied by the sources, "
        "grouped into logical categories. Each answer is 40-60 words: complete but concise."
    ),
    DraftContentType.GLOSSARY: (
        "Write a glossary titled \"[Topic] Glossary: Key Terms and Definitions\" with a "
        "1-2 sentence intro and a **Last Updated** placeholder. Group terms alphabetically "
        "under letter headings (## A, ## B, ...). Each term is an H3 with a **Definition** "
        "of 20-40 words, **Related terms** cross-references and an optional one-sentence "
        "**Example**. Include every key term, acronym and concept found in the sources "
        "(10-15 at least when available) and finish with a \"Quick Reference\" table of "
        "all terms with 10-15 word definitions."
    ),
    DraftContentType.COMPARISON: (
        "Write a balanced comparison of the options or approaches in the sources. Start "
        "with a quick comparison table, cover 3-4 key factors in detail and close with "
        "\"choose this if\" guidance for each option."
    ),
}


def content_type_instructions(content_type: DraftContentType) -> str:
    match content_type:
        case (
            DraftContentType.PILLAR_PAGE
            | DraftContentType.SUPPORTING_ARTICLE
            | DraftContentType.FAQ_PAGE
            | DraftContentType.GLOSSARY
            | DraftContentType.COMPARISON
        ):
            return CONTENT_TYPE_PROMPTS[content_type]
        case _:
            assert_never(content_type)


def _format_source(index: int, page: Page) -> str:
    content = page.structured_content or page.extracted_content or "No content available"
    return f"Source {index}: {page.title or page.url}\nURL: {page.url}\n\n{content}\n\n---\n\n"


def build_user_prompt(
    pillar: Pillar,
    sources: list[Page],
    content_type: DraftContentType,
    additional_guidance: str | None = None,
) -> str:
    """Assemble pillar context, type instructions, guidance and sources."""
    lines = [
        "## Pillar Context",
        "",
        f"**Name**: {pillar.name}",
        f"**Description**: {pillar.description}",
    ]
    if pillar.target_audience:
        lines.append(f"**Target Audience**: {pillar.target_audience}")
    lines.append(f"**Key Themes**: {', '.join(pillar.key_themes)}")
    if pillar.tone_notes:
        lines.append(f"**Tone Notes**: {pillar.tone_notes}")
    lines.append(f"**Primary Keywords**: {', '.join(pillar.primary_keywords)}")
    lines.extend(["", "## Content Type", "", content_type_instructions(content_type), ""])

    if additional_guidance:
        lines.extend(["## Additional Guidance", "", additional_guidance, ""])

    lines.extend(
        [
            "## Source Content",
            "",
            "Sources keep their original headings, lists and Q&A pairs; use that structure "
            "to inform the output.",
            "",
            "".join(_format_source(i, page) for i, page in enumerate(sources, start=1)),
            "## Task",
            "",
            f"Rewrite the sources above as a {content_type.value.replace('_', ' ')} "
            "following the GEO guidelines, keeping every valuable piece of information.",
        ]
    )
    return "\n".join(lines)
