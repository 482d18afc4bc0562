"""
Perceptual-hash page deduplication.

Only near-blank, OCR-only pages are eligible: visually similar diagram
pages can carry different content and must never be merged.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from .models import Hash64, PageMeta

logger = logging.getLogger(__name__)

HASH_COLS = 9
HASH_ROWS = 8
HASH_BITS = 64
DEDUP_MAX_VECTOR_OPS = 20


def compute_dhash(image: Image.Image) -> Hash64:
    """
    Difference hash over a 9x8 grid sampled at cell centres.
    Bit i (row-major over the 8x8 comparisons) is set when a cell is
    brighter than its right neighbour; bits 0-31 go to lo, 32-63 to hi.
    """
    rgb = np.asarray(image.convert("RGB"), dtype=np.float64)
    height, width = rgb.shape[:2]

    xs = np.minimum(width - 1, np.floor((np.arange(HASH_COLS) + 0.5) * width / HASH_COLS)).astype(int)
    ys = np.minimum(height - 1, np.floor((np.arange(HASH_ROWS) + 0.5) * height / HASH_ROWS)).astype(int)
    grid = rgb[np.ix_(ys, xs)]
    gray = np.floor(0.299 * grid[..., 0] + 0.587 * grid[..., 1] + 0.114 * grid[..., 2] + 0.5)

    bits = (gray[:, :-1] > gray[:, 1:]).flatten()
    value = 0
    for index, bit in enumerate(bits):
        if bit:
            value |= 1 << index

    return Hash64(hi=(value >> 32) & 0xFFFFFFFF, lo=value & 0xFFFFFFFF)


def popcount32(value: int) -> int:
    return bin(value & 0xFFFFFFFF).count("1")


def hamming_distance(a: Hash64, b: Hash64) -> int:
    return popcount32(a.hi ^ b.hi) + popcount32(a.lo ^ b.lo)


def similarity(a: Hash64, b: Hash64) -> float:
    return 1 - hamming_distance(a, b) / HASH_BITS


def is_safe_to_dedupe(
    page: PageMeta,
    diagram_text_threshold: int = 120,
    image_area_ratio_threshold: float = 0.25,
) -> bool:
    """A page may be merged only if it looks like a near-blank scan."""
    if page.native_text_chars >= diagram_text_threshold:
        return False
    if page.image_count > 0:
        return False
    if page.image_area_ratio >= image_area_ratio_threshold:
        return False
    if page.vector_ops >= DEDUP_MAX_VECTOR_OPS:
        return False
    return True


class DedupIndex:
    """Fingerprints of pages already kept, in insertion (page) order. Single writer."""

    def __init__(self, threshold: float = 0.95):
        self.threshold = threshold
        self._entries: List[Tuple[Hash64, int]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def find_duplicate(self, page_hash: Hash64) -> Optional[int]:
        """Earliest indexed page whose similarity reaches the threshold."""
        for indexed_hash, page_number in self._entries:
            if similarity(page_hash, indexed_hash) >= self.threshold:
                return page_number
        return None

    def add(self, page_hash: Hash64, page_number: int) -> None:
        self._entries.append((page_hash, page_number))


def apply_dedup(
    pages: Sequence[PageMeta],
    hashes: Dict[int, Hash64],
    threshold: float = 0.95,
    diagram_text_threshold: int = 120,
    image_area_ratio_threshold: float = 0.25,
) -> List[PageMeta]:
    """
    Mark duplicate pages in ascending page order.
    Returns a new page list; pages without a hash or not eligible pass through.
    """
    index = DedupIndex(threshold)
    result: List[PageMeta] = []

    for page in sorted(pages, key=lambda p: p.page_number):
        page_hash = hashes.get(page.page_number)
        eligible = is_safe_to_dedupe(page, diagram_text_threshold, image_area_ratio_threshold)
        if page_hash is None or not eligible:
            result.append(page)
            continue

        original = index.find_duplicate(page_hash)
        if original is None:
            index.add(page_hash, page.page_number)
            result.append(page)
            continue

        logger.info(f"Page {page.page_number} is a duplicate of page {original}")
        result.append(page.model_copy(update={
            "duplicate_of": original,
            "needs_vision": False,
            "needs_vision_reason": "duplicate",
        }))

    return result
