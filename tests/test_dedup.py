"""
Perceptual hash and page dedup tests.
"""

from __future__ import annotations

import pytest
from PIL import Image

from studysource.dedup import (
    DedupIndex,
    apply_dedup,
    compute_dhash,
    hamming_distance,
    is_safe_to_dedupe,
    popcount32,
    similarity,
)
from studysource.models import Hash64, PageMeta


def _columns(scale: int = 1) -> Image.Image:
    """Alternating black/white columns aligned with the 9x8 sampling grid."""
    img = Image.new("RGB", (9, 8), color="white")
    for x in range(0, 9, 2):
        for y in range(8):
            img.putpixel((x, y), (0, 0, 0))
    return img.resize((9 * scale, 8 * scale), Image.Resampling.NEAREST)


def test_blank_image_hash_is_zero():
    h = compute_dhash(Image.new("RGB", (300, 400), color="white"))
    assert h == Hash64(hi=0, lo=0)


def test_hash_halves_are_32_bit():
    h = compute_dhash(_columns(20))
    assert 0 <= h.hi <= 0xFFFFFFFF
    assert 0 <= h.lo <= 0xFFFFFFFF
    assert (h.hi, h.lo) != (0, 0)


def test_hash_stable_under_resize():
    assert compute_dhash(_columns(1)) == compute_dhash(_columns(10)) == compute_dhash(_columns(40))


def test_left_brighter_sets_bit():
    # Bright left column, dark right: the first comparison of every row is set
    img = Image.new("RGB", (9, 8), color="black")
    for y in range(8):
        img.putpixel((0, y), (255, 255, 255))
    h = compute_dhash(img)
    for row in range(8):
        bit = row * 8
        half = h.lo if bit < 32 else h.hi
        assert half >> (bit % 32) & 1


def test_popcount_and_hamming():
    assert popcount32(0) == 0
    assert popcount32(0xFFFFFFFF) == 32
    a = Hash64(hi=0b1011, lo=0)
    b = Hash64(hi=0, lo=0b1)
    assert hamming_distance(a, b) == 4
    assert hamming_distance(a, b) == hamming_distance(b, a)
    assert hamming_distance(a, a) == 0


def test_similarity_decreases_with_distance():
    base = Hash64(0, 0)
    sims = [similarity(base, Hash64(0, (1 << n) - 1)) for n in range(0, 33, 4)]
    assert sims[0] == 1.0
    assert all(x > y for x, y in zip(sims, sims[1:]))
    assert similarity(base, Hash64(0xFFFFFFFF, 0xFFFFFFFF)) == 0.0


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({}, True),
        ({"native_text_chars": 120}, False),
        ({"image_count": 1}, False),
        ({"image_area_ratio": 0.3}, False),
        ({"vector_ops": 20}, False),
        ({"vector_ops": 19, "native_text_chars": 119}, True),
    ],
)
def test_is_safe_to_dedupe(overrides, expected):
    page = PageMeta(page_number=1, **overrides)
    assert is_safe_to_dedupe(page) is expected


def test_index_returns_earliest_match():
    index = DedupIndex(threshold=0.95)
    index.add(Hash64(0, 0b1), 2)
    index.add(Hash64(0, 0), 4)
    assert index.find_duplicate(Hash64(0, 0)) == 2
    assert index.find_duplicate(Hash64(0xFFFF, 0)) is None
    assert len(index) == 2


def test_apply_dedup_marks_later_pages():
    blank = Hash64(0, 0)
    pages = [PageMeta(page_number=n) for n in (3, 1, 2)]
    hashes = {1: blank, 2: Hash64(0xFFFFFFFF, 0xFFFFFFFF), 3: blank}

    result = apply_dedup(pages, hashes)

    assert [p.page_number for p in result] == [1, 2, 3]
    assert result[0].duplicate_of is None
    assert result[1].duplicate_of is None
    assert result[2].duplicate_of == 1
    assert result[2].needs_vision is False
    assert result[2].needs_vision_reason == "duplicate"
    for page in result:
        assert page.duplicate_of is None or page.duplicate_of < page.page_number


def test_apply_dedup_skips_ineligible_and_unhashed_pages():
    blank = Hash64(0, 0)
    pages = [
        PageMeta(page_number=1),
        PageMeta(page_number=2, image_count=1, image_area_ratio=0.1),
        PageMeta(page_number=3),
    ]
    result = apply_dedup(pages, {1: blank, 2: blank})
    assert all(p.duplicate_of is None for p in result)


def test_duplicate_must_point_backwards():
    with pytest.raises(ValueError):
        PageMeta(page_number=2, duplicate_of=2)
