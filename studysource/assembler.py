"""
Final text assembly and per-document usage statistics.

Output contract (one block per page, blocks separated by a blank line):

    === Page n ===
    OCR_TEXT: <text>
    DIAGRAM_CAPTION_JSON: <json>
"""

from __future__ import annotations

from typing import List, Sequence

from .errors import EmptyDocumentError
from .models import PageMeta, ProcessingStats, TokenUsage

NO_TEXT_PLACEHOLDER = "[No OCR text found on this page.]"


def format_page_text(page: PageMeta) -> str:
    lines = [
        f"=== Page {page.page_number} ===",
        f"OCR_TEXT: {page.text or NO_TEXT_PLACEHOLDER}",
    ]
    if page.needs_vision and page.vision_summary:
        lines.append(f"DIAGRAM_CAPTION_JSON: {page.vision_summary}")
    return "\n".join(lines)


def assemble_document(pages: Sequence[PageMeta]) -> str:
    ordered = sorted(pages, key=lambda p: p.page_number)
    text = "\n\n".join(format_page_text(page) for page in ordered).strip()
    if not text:
        raise EmptyDocumentError("No text could be assembled from the document")
    return text


def aggregate_stats(pages: Sequence[PageMeta], usage: TokenUsage) -> ProcessingStats:
    # Duplicates that inherited a caption cost nothing and are not billed.
    captioned: List[PageMeta] = [
        page for page in pages
        if page.vision_summary and page.duplicate_of is None
    ]
    return ProcessingStats(
        total_pages=len(pages),
        ocr_pages=sum(1 for page in pages if page.ocr_applied),
        vision_pages=len(captioned),
        vision_images=sum(page.vision_image_count for page in captioned),
        vision_units=sum(page.image_count * page.image_area_ratio for page in captioned),
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        total_tokens=usage.total_tokens,
    )
