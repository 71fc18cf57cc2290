"""HTML → plain text / structured Markdown extraction.

Pure functions: no network or filesystem access. The walker converts the
main-content subtree of a legacy page into Markdown blocks while
collecting the plain-text fragments used for word counts and analysis.
"""

from __future__ import annotations

import logging
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag
from bs4.element import Comment, Declaration, Doctype, NavigableString, ProcessingInstruction

from geomigrate.content.models import ContentKind, ExtractedContent

logger = logging.getLogger(__name__)

_STRIP_TAGS = ["script", "style", "noscript"]
_CHROME_TAGS = ["nav", "header", "footer", "aside"]
_HEADINGS = {"h1": 1, "h2": 2, "h3": 3, "h4": 4, "h5": 5, "h6": 6}
_INLINE_TAGS = frozenset(
    {
        "a", "abbr", "b", "bdi", "bdo", "br", "cite", "code", "data", "dfn", "em",
        "i", "kbd", "label", "mark", "q", "s", "samp", "small", "span", "strong",
        "sub", "sup", "time", "u", "var", "wbr",
    }
)
_SKIPPED_NODES = (Comment, Declaration, Doctype, ProcessingInstruction)


def _clean(text: str) -> str:
    return " ".join(text.split())


class _Walker:
    """Accumulates Markdown blocks and plain-text fragments for one root."""

    def __init__(self, base_url: str) -> None:
        self.base_url = base_url
        self.blocks: list[str] = []
        self.fragments: list[str] = []

    # ── Emitters ─────────────────────────────────────────────────

    def _emit(self, markdown: str, text: str) -> None:
        if not markdown.strip():
            return
        self.blocks.append(markdown)
        if text.strip():
            self.fragments.append(text)

    def _flush(self, buffer: list[str]) -> None:
        text = _clean(" ".join(buffer))
        buffer.clear()
        self._emit(text, text)

    # ── Tree walk ────────────────────────────────────────────────

    def walk(self, node: Tag) -> None:
        inline: list[str] = []
        for child in node.children:
            if isinstance(child, _SKIPPED_NODES):
                continue
            if isinstance(child, NavigableString):
                inline.append(str(child))
                continue
            if not isinstance(child, Tag):
                continue
            if child.name in _INLINE_TAGS and child.find("img") is None:
                inline.append(child.get_text(" "))
                continue
            self._flush(inline)
            self._block(child)
        self._flush(inline)

    def _block(self, tag: Tag) -> None:
        name = tag.name
        if name in _HEADINGS:
            text = _clean(tag.get_text(" "))
            self._emit(f"{'#' * _HEADINGS[name]} {text}" if text else "", text)
        elif name == "p":
            text = _clean(tag.get_text(" "))
            self._emit(text, text)
            for img in tag.find_all("img"):
                self._image(img)
        elif name in ("ul", "ol"):
            lines, texts = self._list(tag, 0)
            self._emit("\n".join(lines), " ".join(texts))
        elif name == "dl":
            self._definitions(tag)
        elif name == "blockquote":
            text = _clean(tag.get_text(" "))
            self._emit(f"> {text}" if text else "", text)
        elif name == "img":
            self._image(tag)
        elif name == "table":
            self._table(tag)
        elif name == "pre":
            code = tag.get_text().strip("\n")
            self._emit(f"```\n{code}\n```" if code.strip() else "", code)
        elif name == "hr":
            return
        else:
            # div, section, figure, span with images, unknown containers
            self.walk(tag)

    # ── Block renderers ──────────────────────────────────────────

    def _list(self, tag: Tag, depth: int) -> tuple[list[str], list[str]]:
        ordered = tag.name == "ol"
        lines: list[str] = []
        texts: list[str] = []
        indent = "  " * depth
        position = 0
        for li in tag.find_all("li", recursive=False):
            position += 1
            nested = li.find_all(["ul", "ol"], recursive=False)
            parts = [
                c.get_text(" ") if isinstance(c, Tag) else str(c)
                for c in li.children
                if not any(c is n for n in nested) and not isinstance(c, _SKIPPED_NODES)
            ]
            text = _clean(" ".join(parts))
            if text:
                marker = f"{position}." if ordered else "-"
                lines.append(f"{indent}{marker} {text}")
                texts.append(text)
            for sub in nested:
                sub_lines, sub_texts = self._list(sub, depth + 1)
                lines.extend(sub_lines)
                texts.extend(sub_texts)
        return lines, texts

    def _definitions(self, tag: Tag) -> None:
        for item in tag.find_all(["dt", "dd"]):
            text = _clean(item.get_text(" "))
            if not text:
                continue
            if item.name == "dt":
                self._emit(f"### {text}", text)
            else:
                self._emit(text, text)

    def _image(self, img: Tag) -> None:
        src = (img.get("src") or "").strip()
        if not src:
            return
        alt = _clean(img.get("alt") or "")
        self._emit(f"![{alt}]({urljoin(self.base_url, src)})", alt)

    def _table(self, tag: Tag) -> None:
        rows: list[list[str]] = []
        for tr in tag.find_all("tr"):
            cells = [
                _clean(cell.get_text(" ")).replace("|", "\\|")
                for cell in tr.find_all(["th", "td"], recursive=False)
            ]
            if cells:
                rows.append(cells)
        if not rows:
            return
        width = max(len(r) for r in rows)
        rows = [r + [""] * (width - len(r)) for r in rows]
        lines = [
            "| " + " | ".join(rows[0]) + " |",
            "| " + " | ".join(["---"] * width) + " |",
        ]
        lines.extend("| " + " | ".join(r) + " |" for r in rows[1:])
        text = " ".join(cell for row in rows for cell in row if cell)
        self._emit("\n".join(lines), text)


def _find_root(soup: BeautifulSoup) -> Tag:
    for candidate in (soup.find("main"), soup.find("article"), soup.find(attrs={"role": "main"})):
        if isinstance(candidate, Tag):
            return candidate
    body = soup.body or soup
    for chrome in body.find_all(_CHROME_TAGS):
        chrome.decompose()
    return body


def _meta_content(soup: BeautifulSoup, **attrs: str) -> str:
    tag = soup.find("meta", attrs=attrs)
    if isinstance(tag, Tag):
        return _clean(str(tag.get("content") or ""))
    return ""


def detect_content_type(url: str, text: str) -> ContentKind:
    """Coarse page label from URL path segments, then question density."""
    try:
        path = urlparse(url).path.lower()
    except ValueError:
        path = ""

    if "/blog/" in path or "/post/" in path:
        return ContentKind.BLOG
    if "/product/" in path or "/shop/" in path:
        return ContentKind.PRODUCT
    if "/faq" in path or "/help" in path:
        return ContentKind.FAQ
    if "/about" in path:
        return ContentKind.ABOUT
    if path in ("", "/"):
        return ContentKind.LANDING
    if text.count("?") > 3:
        return ContentKind.FAQ
    return ContentKind.PAGE


def extract_content(html: str, url: str) -> ExtractedContent:
    """Parse raw HTML into title, description, plain text and Markdown.

    Args:
        html: Raw page HTML.
        url: Source URL, used to absolutize image references and to
            label the content type.

    Returns:
        ExtractedContent whose ``word_count`` equals the number of
        whitespace-separated tokens in ``plain_text``.
    """
    soup = BeautifulSoup(html or "", "html.parser")

    title = ""
    if soup.title is not None:
        title = _clean(soup.title.get_text(" "))
    if not title:
        title = _meta_content(soup, property="og:title")

    description = _meta_content(soup, name="description") or _meta_content(
        soup, property="og:description"
    )

    for tag in soup.find_all(_STRIP_TAGS):
        tag.decompose()

    root = _find_root(soup)
    walker = _Walker(url)
    walker.walk(root)

    if not title:
        h1 = root.find("h1")
        if isinstance(h1, Tag):
            title = _clean(h1.get_text(" "))

    plain_text = _clean(" ".join(walker.fragments))
    return ExtractedContent(
        title=title,
        meta_description=description,
        plain_text=plain_text,
        structured_markdown="\n\n".join(walker.blocks),
        word_count=len(plain_text.split()),
        content_type=detect_content_type(url, plain_text),
    )
