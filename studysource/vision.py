"""
Vision captioning orchestration: page budget, candidate selection,
per-page image collection and captioning, duplicate inheritance.
"""

from __future__ import annotations

import io
import logging
import math
import time
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

from PIL import Image

from shared import OperationTimeout, call_with_timeout

from .captioner import VisionCaptioner, build_image_data_url, crop_margins
from .models import PageMeta, TokenUsage
from .parser import PdfDocument
from .storage import ObjectStorage

logger = logging.getLogger(__name__)

VisionMultiplier = Union[float, int, str, None]


def compute_vision_page_budget(
    total_pages: int,
    vision_multiplier: VisionMultiplier,
    vision_pages_ratio: float = 0.2,
    vision_max_pages: int = 0,
) -> int:
    """
    Pages allowed a vision call for one document.

    vision_multiplier comes from the caller's plan: None, "disabled" or a
    non-positive number disables vision (budget 0). Otherwise the budget is
    proportional to the page count, at least 1, and capped by
    vision_max_pages when that is positive.
    """
    if vision_multiplier is None or isinstance(vision_multiplier, str):
        return 0
    if vision_multiplier <= 0 or total_pages <= 0:
        return 0

    budget = max(1, math.ceil(total_pages * vision_pages_ratio * vision_multiplier))
    if vision_max_pages > 0:
        budget = min(budget, vision_max_pages)
    return budget


def is_vision_candidate(page: PageMeta) -> bool:
    return (
        page.needs_vision
        and page.duplicate_of is None
        and (page.image_count > 0 or bool(page.page_image_key))
    )


def select_vision_pages(pages: Sequence[PageMeta], budget: int) -> Tuple[List[PageMeta], Set[int]]:
    """
    Keep the top-`budget` candidates by rank score (ties by page number).
    Candidates over budget lose needs_vision. Returns (pages, selected page numbers).
    """
    candidates = [page for page in pages if is_vision_candidate(page)]
    if len(candidates) > budget:
        ranked = sorted(candidates, key=lambda p: (-p.vision_rank_score, p.page_number))
        selected = {page.page_number for page in ranked[:max(0, budget)]}
    else:
        selected = {page.page_number for page in candidates}

    logger.info(f"Vision candidates: {len(candidates)}. Selected: {len(selected)}.")

    result = []
    for page in pages:
        if page.needs_vision and page.page_number not in selected:
            page = page.model_copy(update={"needs_vision": False, "needs_vision_reason": "vision-budget"})
        result.append(page)
    return result, selected


def inherit_duplicate_vision(pages: Sequence[PageMeta]) -> List[PageMeta]:
    """Duplicates copy needs_vision/vision_summary from their captioned original."""
    by_number: Dict[int, PageMeta] = {page.page_number: page for page in pages}
    result = []
    for page in pages:
        original = by_number.get(page.duplicate_of) if page.duplicate_of is not None else None
        if original is not None and original.vision_summary:
            page = page.model_copy(update={
                "needs_vision": original.needs_vision,
                "vision_summary": original.vision_summary,
            })
        result.append(page)
    return result


class VisionOrchestrator:
    """Runs the vision pass sequentially over the selected pages."""

    def __init__(
        self,
        config: dict,
        captioner: VisionCaptioner,
        storage: Optional[ObjectStorage] = None,
    ):
        self.config = config
        self.captioner = captioner
        self.storage = storage

        self.max_images = config.get("vision_max_images", 2)
        self.min_pixels = config.get("vision_min_image_pixels", 10000)
        self.max_image_width = config.get("vision_max_image_width", 1200)
        self.image_quality = config.get("vision_image_quality", 70)
        self.page_timeout = config.get("vision_page_timeout", 20)
        self.page_image_margin = config.get("page_image_margin", 0.03)

    def run(
        self,
        doc: PdfDocument,
        pages: Sequence[PageMeta],
        budget: int,
    ) -> Tuple[List[PageMeta], TokenUsage]:
        pages, selected = select_vision_pages(pages, budget)
        usage = TokenUsage()

        captioned: List[PageMeta] = []
        for page in pages:
            if page.page_number in selected:
                page, page_usage = self.caption_page(doc, page)
                usage = usage + page_usage
            captioned.append(page)

        result = inherit_duplicate_vision(captioned)

        total = sum(1 for page in result if page.vision_summary)
        direct = sum(1 for page in result if page.vision_summary and page.duplicate_of is None)
        logger.info(f"Vision captions generated for {total} page(s) ({direct} direct, {total - direct} reused).")
        return result, usage

    def caption_page(self, doc: PdfDocument, page: PageMeta) -> Tuple[PageMeta, TokenUsage]:
        logger.info(
            f"Vision processing page {page.page_number} (imageCount={page.image_count}, "
            f"imageAreaRatio={page.image_area_ratio:.2f}, vectorOps={page.vector_ops})"
        )
        images = self.collect_images(doc, page)
        data_url = build_image_data_url(
            images,
            max_images=self.max_images,
            max_width=self.max_image_width,
            quality=self.image_quality,
        )
        if not data_url:
            return page.model_copy(update={
                "needs_vision": False,
                "needs_vision_reason": "no-images-after-extract",
            }), TokenUsage()

        image_count = min(len(images), self.max_images) if self.max_images > 0 else len(images)
        t0 = time.time()
        result = self.captioner.describe(data_url, page.text, page.page_number, doc.page_count)
        logger.info(f"Vision call completed for page {page.page_number} in {(time.time() - t0) * 1000:.0f}ms")

        return page.model_copy(update={
            "vision_summary": result.summary,
            "vision_image_count": image_count if result.summary else 0,
        }), result.usage

    def collect_images(self, doc: PdfDocument, page: PageMeta) -> List[Image.Image]:
        """Embedded images first; the stored full-page raster is the fallback."""
        images: List[Image.Image] = []
        if page.image_count > 0:
            try:
                images = call_with_timeout(
                    doc.extract_page_images,
                    self.page_timeout,
                    f"extract images page {page.page_number}",
                    page.page_number,
                    self.max_images,
                    self.min_pixels,
                )
            except OperationTimeout as e:
                logger.warning(f"Image extraction timed out for page {page.page_number}: {e}")
            except Exception as e:
                logger.warning(f"Image extraction failed for page {page.page_number}: {e}")

        if not images and page.page_image_key:
            fallback = self.load_page_image(page.page_image_key)
            if fallback is not None:
                images = [fallback]

        logger.info(f"Vision image count for page {page.page_number}: {len(images)}")
        return images

    def load_page_image(self, key: str) -> Optional[Image.Image]:
        if self.storage is None:
            return None
        try:
            data = self.storage.get_object_buffer(key)
            with Image.open(io.BytesIO(data)) as img:
                image = img.convert("RGB")
        except Exception as e:
            logger.warning(f"Stored page image {key} unavailable: {e}")
            return None
        return crop_margins(image, self.page_image_margin)
