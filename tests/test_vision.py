"""
Vision budget, candidate selection, captioner degradation and inheritance.
"""

from __future__ import annotations

import base64
import io
import json

import pytest
from PIL import Image

from conftest import FakeOpenAI
from studysource.captioner import (
    VisionCaptioner,
    build_image_data_url,
    composite_vertical,
    crop_margins,
)
from studysource.models import PageMeta
from studysource.storage import LocalObjectStorage
from studysource.vision import (
    VisionOrchestrator,
    compute_vision_page_budget,
    inherit_duplicate_vision,
    select_vision_pages,
)

DATA_URL = "data:image/jpeg;base64,AAAA"


def _candidate(n: int, score: float, **overrides) -> PageMeta:
    values = dict(
        page_number=n,
        needs_vision=True,
        needs_vision_reason="image-heavy-diagram",
        vision_rank_score=score,
        image_count=1,
        image_area_ratio=0.5,
    )
    values.update(overrides)
    return PageMeta(**values)


def _decode(data_url: str) -> Image.Image:
    prefix = "data:image/jpeg;base64,"
    assert data_url.startswith(prefix)
    return Image.open(io.BytesIO(base64.b64decode(data_url[len(prefix):])))


# =============================================================================
# Budget & selection
# =============================================================================

@pytest.mark.parametrize(
    "total, multiplier, max_pages, expected",
    [
        (10, None, 0, 0),
        (10, "disabled", 0, 0),
        (10, 0, 0, 0),
        (10, -1, 0, 0),
        (10, 1, 0, 2),
        (10, 1.5, 0, 3),
        (3, 1, 0, 1),
        (100, 2, 0, 40),
        (100, 2, 25, 25),
        (0, 1, 0, 0),
    ],
)
def test_vision_page_budget(total, multiplier, max_pages, expected):
    assert compute_vision_page_budget(total, multiplier, vision_pages_ratio=0.2, vision_max_pages=max_pages) == expected


def test_selection_keeps_top_scores():
    pages = [
        _candidate(1, 1.0),
        _candidate(2, 3.0),
        _candidate(3, 2.0),
        _candidate(4, 3.0),
        PageMeta(page_number=5, needs_vision=False, needs_vision_reason="text-strong"),
    ]
    result, selected = select_vision_pages(pages, budget=2)

    assert selected == {2, 4}
    by_number = {p.page_number: p for p in result}
    assert by_number[1].needs_vision is False
    assert by_number[1].needs_vision_reason == "vision-budget"
    assert by_number[3].needs_vision_reason == "vision-budget"
    assert by_number[5].needs_vision_reason == "text-strong"
    assert [p.page_number for p in result] == [1, 2, 3, 4, 5]


def test_selection_ties_break_by_page_number():
    pages = [_candidate(n, 1.0) for n in (4, 2, 3)]
    _, selected = select_vision_pages(pages, budget=1)
    assert selected == {2}


def test_selection_under_budget_keeps_all():
    pages = [_candidate(1, 1.0), _candidate(2, 0.5)]
    result, selected = select_vision_pages(pages, budget=5)
    assert selected == {1, 2}
    assert all(p.needs_vision for p in result)


def test_pages_without_any_image_are_not_candidates():
    pages = [_candidate(1, 5.0, image_count=0, image_area_ratio=0.0)]
    result, selected = select_vision_pages(pages, budget=3)
    assert selected == set()
    assert result[0].needs_vision_reason == "vision-budget"


# =============================================================================
# Inheritance
# =============================================================================

def test_duplicate_inherits_caption():
    pages = [
        PageMeta(page_number=3, needs_vision=True, vision_summary='{"labels":["A"],"relationships":[]}'),
        PageMeta(page_number=7, duplicate_of=3, needs_vision=False, needs_vision_reason="duplicate"),
        PageMeta(page_number=8, duplicate_of=1),
        PageMeta(page_number=1),
    ]
    result = inherit_duplicate_vision(pages)

    assert result[1].needs_vision is True
    assert result[1].vision_summary == pages[0].vision_summary
    assert result[1].needs_vision_reason == "duplicate"
    # Original without a summary: nothing to copy
    assert result[2].vision_summary is None
    assert pages[1].vision_summary is None


# =============================================================================
# Image preparation
# =============================================================================

def test_composite_stacks_with_padding():
    a = Image.new("RGB", (100, 50), "red")
    b = Image.new("RGB", (60, 40), "blue")
    combined = composite_vertical([a, b], padding=12)
    assert combined.size == (100, 50 + 12 + 40)
    assert combined.getpixel((99, 60)) == (255, 255, 255)


def test_crop_margins():
    img = Image.new("RGB", (200, 100))
    assert crop_margins(img, 0.05).size == (180, 90)
    assert crop_margins(img, 0).size == (200, 100)


def test_data_url_scales_and_limits_images():
    images = [
        Image.new("RGB", (3000, 1000), "white"),
        Image.new("RGB", (500, 500), "black"),
        Image.new("RGB", (100, 100), "gray"),
    ]
    url = build_image_data_url(images, max_images=2, max_width=1200)
    decoded = _decode(url)
    assert decoded.width == 1200
    assert decoded.height == 400 + 12 + 500
    assert build_image_data_url([]) is None


# =============================================================================
# Captioner
# =============================================================================

def test_describe_normalizes_caption():
    client = FakeOpenAI(content='```json\n{"labels": ["Nucleus"], "relationships": [{"from": "Nucleus", "to": "Cell", "label": "inside"}], "extra": 1}\n```')
    captioner = VisionCaptioner(api_key="k", client=client, max_tokens=350)

    result = captioner.describe(DATA_URL, "Figure 1", page_number=2, total_pages=5)

    assert json.loads(result.summary) == {
        "labels": ["Nucleus"],
        "relationships": [{"from": "Nucleus", "to": "Cell", "label": "inside"}],
    }
    assert result.usage.total_tokens == 120
    request = client.completions.requests[0]
    assert request["max_tokens"] == 350
    assert request["response_format"] == {"type": "json_object"}
    assert request["messages"][0]["role"] == "system"
    user_content = request["messages"][1]["content"]
    assert user_content[1]["image_url"]["url"] == DATA_URL
    assert "page 2 of 5" in user_content[0]["text"]


def test_describe_without_key_makes_no_call():
    captioner = VisionCaptioner(api_key="")
    result = captioner.describe(DATA_URL, "", 1, 1)
    assert result.summary is None
    assert result.usage.total_tokens == 0


def test_describe_timeout_degrades():
    client = FakeOpenAI(delay=1.0)
    captioner = VisionCaptioner(api_key="k", client=client, request_timeout=0.05)
    result = captioner.describe(DATA_URL, "", 1, 1)
    assert result.summary is None
    assert result.usage.total_tokens == 0


def test_describe_api_error_degrades():
    captioner = VisionCaptioner(api_key="k", client=FakeOpenAI(error=RuntimeError("503")))
    result = captioner.describe(DATA_URL, "", 1, 1)
    assert result.summary is None
    assert result.usage.total_tokens == 0


@pytest.mark.parametrize("content", ["", "not json", "[1, 2]", '{"labels": "A"}'])
def test_describe_rejects_bad_payloads(content):
    captioner = VisionCaptioner(api_key="k", client=FakeOpenAI(content=content))
    result = captioner.describe(DATA_URL, "", 1, 1)
    assert result.summary is None
    assert result.usage.total_tokens == 0


# =============================================================================
# Orchestrator
# =============================================================================

class _NoImagesDoc:
    page_count = 4

    def extract_page_images(self, page_number, max_images, min_pixels):
        return []


def test_orchestrator_falls_back_to_stored_page_image(tmp_path, fake_openai):
    Image.new("RGB", (400, 300), "white").save(tmp_path / "p1.png")
    storage = LocalObjectStorage(str(tmp_path))
    orchestrator = VisionOrchestrator({}, VisionCaptioner(api_key="k", client=fake_openai), storage)

    pages = [
        _candidate(1, 2.0, page_image_key="p1.png"),
        _candidate(2, 1.0),
        _candidate(3, 0.5, page_image_key="missing.png"),
        PageMeta(page_number=4, duplicate_of=1, needs_vision_reason="duplicate"),
    ]
    result, usage = orchestrator.run(_NoImagesDoc(), pages, budget=10)
    by_number = {p.page_number: p for p in result}

    assert fake_openai.call_count == 1
    assert by_number[1].vision_summary is not None
    assert by_number[1].vision_image_count == 1
    assert by_number[2].needs_vision is False
    assert by_number[2].needs_vision_reason == "no-images-after-extract"
    assert by_number[3].needs_vision_reason == "no-images-after-extract"
    assert by_number[4].vision_summary == by_number[1].vision_summary
    assert usage.total_tokens == 120


def test_orchestrator_survives_extraction_timeout(fake_openai):
    class SlowDoc:
        page_count = 1

        def extract_page_images(self, page_number, max_images, min_pixels):
            import time
            time.sleep(1.0)
            return [Image.new("RGB", (200, 200))]

    orchestrator = VisionOrchestrator(
        {"vision_page_timeout": 0.05},
        VisionCaptioner(api_key="k", client=fake_openai),
    )
    result, usage = orchestrator.run(SlowDoc(), [_candidate(1, 1.0)], budget=1)

    assert result[0].needs_vision_reason == "no-images-after-extract"
    assert fake_openai.call_count == 0
    assert usage.total_tokens == 0


def test_extraction_timeout_falls_back_to_stored_page_image(tmp_path, fake_openai):
    class SlowDoc:
        page_count = 1

        def extract_page_images(self, page_number, max_images, min_pixels):
            import time
            time.sleep(1.0)
            return [Image.new("RGB", (200, 200))]

    Image.new("RGB", (400, 300), "white").save(tmp_path / "p1.png")
    orchestrator = VisionOrchestrator(
        {"vision_page_timeout": 0.05},
        VisionCaptioner(api_key="k", client=fake_openai),
        LocalObjectStorage(str(tmp_path)),
    )
    result, usage = orchestrator.run(SlowDoc(), [_candidate(1, 1.0, page_image_key="p1.png")], budget=1)

    assert fake_openai.call_count == 1
    assert result[0].vision_summary is not None
    assert result[0].vision_image_count == 1
    assert usage.total_tokens == 120
