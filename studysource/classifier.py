"""
Vision-need classifier.

Decides per page whether an image/diagram is worth a vision call. The
decision is an ordered rule cascade: rules are evaluated top to bottom and
the first matching rule wins, so the order of VISION_RULES is the precedence.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from pydantic import BaseModel

from .models import PageMeta

logger = logging.getLogger(__name__)

CAPTION_CUE_RE = re.compile(
    r"\b(?:fig(?:ure)?s?\.?|diagrams?|charts?|tables?|graphs?|illustrations?)\b",
    re.IGNORECASE,
)
RANK_VECTOR_OPS_BONUS = 200


class ClassifierThresholds(BaseModel):
    """Thresholds for the cascade and the rank score. Built from config."""

    strong_text_char_threshold: int = 1200
    strong_text_alpha_ratio: float = 0.5
    text_wins_char_threshold: int = 300
    text_wins_alpha_ratio: float = 0.25
    diagram_text_threshold: int = 120
    diagram_medium_text_threshold: int = 300
    diagram_confidence_threshold: float = 0.65
    diagram_short_token_ratio: float = 0.45
    diagram_vector_ops_threshold: int = 50
    diagram_min_images: int = 2
    big_image_area_ratio: float = 0.6
    big_image_text_threshold: int = 80
    vision_image_area_ratio_threshold: float = 0.25

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "ClassifierThresholds":
        config = config or {}
        return cls(**{key: config[key] for key in cls.model_fields if key in config})


# =============================================================================
# Predicates
# =============================================================================

def has_caption_cue(text: str) -> bool:
    return bool(CAPTION_CUE_RE.search(text or ""))


def is_strong_text(native_text_chars: int, alpha_ratio: float, t: ClassifierThresholds) -> bool:
    return native_text_chars >= t.strong_text_char_threshold and alpha_ratio >= t.strong_text_alpha_ratio


def is_low_text(page: PageMeta, t: ClassifierThresholds) -> bool:
    """OCR text is short, low-confidence or looks garbled."""
    if page.ocr_text_len < t.diagram_text_threshold:
        return True
    if page.ocr_confidence is not None and page.ocr_confidence < t.diagram_confidence_threshold:
        return True
    if page.ocr_text_len < t.diagram_medium_text_threshold and page.short_token_ratio > t.diagram_short_token_ratio:
        return True
    return False


def _is_diagram_important(page: PageMeta, t: ClassifierThresholds) -> bool:
    return page.vector_ops >= t.diagram_vector_ops_threshold or page.image_count >= t.diagram_min_images


Predicate = Callable[[PageMeta, ClassifierThresholds, bool], bool]


@dataclass(frozen=True)
class VisionRule:
    reason: str
    needs_vision: bool
    predicate: Predicate


VISION_RULES: Tuple[VisionRule, ...] = (
    VisionRule("vision-disabled", False, lambda p, t, enabled: not enabled),
    VisionRule(
        "diagram-caption", True,
        lambda p, t, enabled: has_caption_cue(p.text) and bool(p.page_image_key),
    ),
    VisionRule(
        "image-big-override", True,
        lambda p, t, enabled: p.image_count > 0 and (
            p.image_area_ratio >= t.big_image_area_ratio
            or p.native_text_chars < t.big_image_text_threshold
        ),
    ),
    VisionRule(
        "text-strong", False,
        lambda p, t, enabled: is_strong_text(p.native_text_chars, p.alpha_ratio, t),
    ),
    VisionRule(
        "text-wins", False,
        lambda p, t, enabled: (
            p.native_text_chars >= t.text_wins_char_threshold
            and p.alpha_ratio >= t.text_wins_alpha_ratio
        ),
    ),
    VisionRule("no-images", False, lambda p, t, enabled: p.image_count == 0),
    VisionRule(
        "image-area-low", False,
        lambda p, t, enabled: p.image_area_ratio < t.vision_image_area_ratio_threshold,
    ),
    VisionRule("image-not-important", False, lambda p, t, enabled: not _is_diagram_important(p, t)),
    VisionRule(
        "native-text-high", False,
        lambda p, t, enabled: p.native_text_chars > t.strong_text_char_threshold,
    ),
    VisionRule("image-heavy-low-text", True, lambda p, t, enabled: is_low_text(p, t)),
    VisionRule("image-heavy-diagram", True, lambda p, t, enabled: True),
)


def classify_page(
    page: PageMeta,
    thresholds: ClassifierThresholds,
    vision_enabled: bool = True,
) -> Tuple[bool, str]:
    """Return (needs_vision, reason) from the first matching rule. Pure."""
    for rule in VISION_RULES:
        if rule.predicate(page, thresholds, vision_enabled):
            return rule.needs_vision, rule.reason
    raise AssertionError("the last vision rule always matches")


def vision_rank_score(page: PageMeta, t: ClassifierThresholds) -> float:
    """Priority of a page when vision candidates exceed the page budget."""
    score = 2 * page.image_area_ratio
    if has_caption_cue(page.text):
        score += 1
    if page.ocr_text_len < t.diagram_text_threshold:
        score += 1
    if page.ocr_confidence is not None and page.ocr_confidence < t.diagram_confidence_threshold:
        score += 0.5
    if page.ocr_text_len < t.diagram_medium_text_threshold and page.short_token_ratio > t.diagram_short_token_ratio:
        score += 0.5
    if page.image_area_ratio >= t.vision_image_area_ratio_threshold and page.vector_ops >= RANK_VECTOR_OPS_BONUS:
        score += 0.1
    return score


def classify_pages(
    pages,
    thresholds: ClassifierThresholds,
    vision_enabled: bool = True,
):
    """
    Classification stage. Duplicates bypass the cascade: they never get an
    independent decision and only inherit one after the vision pass.
    """
    result = []
    for page in pages:
        if page.duplicate_of is not None:
            needs_vision, reason = False, "duplicate"
        else:
            needs_vision, reason = classify_page(page, thresholds, vision_enabled)

        score = vision_rank_score(page, thresholds)
        logger.info(
            f"Page {page.page_number} decision: nativeTextChars={page.native_text_chars}, "
            f"alphaRatio={page.alpha_ratio:.2f}, imageCount={page.image_count}, "
            f"imageAreaRatio={page.image_area_ratio:.2f}, vectorOps={page.vector_ops}, "
            f"ocrChars={page.ocr_text_len}, needsVision={needs_vision} ({reason})"
        )
        result.append(page.model_copy(update={
            "needs_vision": needs_vision,
            "needs_vision_reason": reason,
            "vision_rank_score": score,
        }))
    return result
