"""Content domain: HTML to text/Markdown extraction."""

from geomigrate.content.extractor import detect_content_type, extract_content
from geomigrate.content.models import ContentKind, ExtractedContent

__all__ = [
    "ContentKind",
    "ExtractedContent",
    "detect_content_type",
    "extract_content",
]
