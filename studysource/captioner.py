"""
Vision captioning with gpt-4o-mini.
One strict-JSON call per page: structural labels and entity relationships only.
"""

from __future__ import annotations

import base64
import io
import json
import logging
import re
import time
from typing import Any, List, Optional

from PIL import Image
from pydantic import ValidationError

from shared import OperationTimeout, call_with_timeout

from .models import DiagramCaption, TokenUsage, VisionResult

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a JSON-only assistant."

VISION_PROMPT = """=== STRICT JSON OUTPUT MODE ===
Return ONLY a valid JSON object. No extra text.

You are analyzing images extracted from page {page_number} of {total_pages} in a student's PDF notes.
Identify the structure of the diagram or visual. Do not transcribe running text.

Required JSON format:
{{
  "labels": [string],
  "relationships": [{{"from": string, "to": string, "label": string}}]
}}

Rules:
- labels: the visible node, axis, legend and part names.
- relationships: arrows, connections and containment between labelled entities.
- If unsure, use empty arrays but keep keys.
{text_hint}"""

MAX_TEXT_HINT_CHARS = 1500
COMPOSITE_PADDING = 12
_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


# =============================================================================
# Image preparation
# =============================================================================

def scale_to_width(image: Image.Image, max_width: int) -> Image.Image:
    if image.width <= max_width:
        return image
    ratio = max_width / image.width
    new_size = (max_width, max(1, round(image.height * ratio)))
    return image.resize(new_size, Image.Resampling.LANCZOS)


def crop_margins(image: Image.Image, margin: float) -> Image.Image:
    """Trim a fraction of the width/height from every side (scanner borders)."""
    if margin <= 0:
        return image
    dx = int(image.width * margin)
    dy = int(image.height * margin)
    if image.width - 2 * dx < 1 or image.height - 2 * dy < 1:
        return image
    return image.crop((dx, dy, image.width - dx, image.height - dy))


def composite_vertical(images: List[Image.Image], padding: int = COMPOSITE_PADDING) -> Image.Image:
    """Stack images top to bottom on a white canvas."""
    if len(images) == 1:
        return images[0]

    width = max(img.width for img in images)
    height = sum(img.height for img in images) + padding * (len(images) - 1)
    combined = Image.new("RGB", (width, height), color=(255, 255, 255))

    offset_y = 0
    for img in images:
        combined.paste(img.convert("RGB"), (0, offset_y))
        offset_y += img.height + padding
    return combined


def build_image_data_url(
    images: List[Image.Image],
    max_images: int = 2,
    max_width: int = 1200,
    quality: int = 70,
) -> Optional[str]:
    """Largest images first, scaled, stacked and encoded as a base64 JPEG data URL."""
    if not images:
        return None

    limit = max_images if max_images > 0 else len(images)
    selected = sorted(images, key=lambda img: img.width * img.height, reverse=True)[:limit]
    combined = composite_vertical([scale_to_width(img.convert("RGB"), max_width) for img in selected])

    buf = io.BytesIO()
    combined.convert("RGB").save(buf, format="JPEG", quality=quality)
    encoded = base64.b64encode(buf.getvalue()).decode("utf-8")
    return f"data:image/jpeg;base64,{encoded}"


# =============================================================================
# Captioner
# =============================================================================

class VisionCaptioner:
    """
    Generate structured diagram captions with a vision model.
    One client instance is created lazily and reused for sequential calls.
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        request_timeout: float = 45,
        max_tokens: int = 350,
        client: Any = None,
    ):
        self.api_key = api_key
        self.model = model
        self.request_timeout = request_timeout
        self.max_tokens = max_tokens
        self._client = client

    @classmethod
    def from_config(cls, config: dict, client: Any = None) -> "VisionCaptioner":
        return cls(
            api_key=config.get("openai_api_key", ""),
            model=config.get("model_vision", "gpt-4o-mini"),
            request_timeout=config.get("vision_request_timeout", 45),
            max_tokens=config.get("vision_max_tokens", 350),
            client=client,
        )

    @property
    def available(self) -> bool:
        return self._client is not None or bool(self.api_key)

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                from openai import OpenAI
            except ImportError:
                raise ImportError("openai not installed. Run: pip install openai")
            # No SDK retries: retry policy belongs to the job orchestrator.
            self._client = OpenAI(api_key=self.api_key, timeout=self.request_timeout, max_retries=0)
        return self._client

    def build_prompt(self, page_text: str, page_number: int, total_pages: int) -> str:
        hint = (page_text or "").strip()[:MAX_TEXT_HINT_CHARS]
        text_hint = (
            f"Extracted text (may be incomplete): {hint}" if hint
            else "Extracted text was minimal or empty."
        )
        return VISION_PROMPT.format(page_number=page_number, total_pages=total_pages, text_hint=text_hint)

    def describe(
        self,
        image_data_url: str,
        page_text: str,
        page_number: int,
        total_pages: int,
    ) -> VisionResult:
        """
        Caption one page. Never raises: missing key, timeout, API errors and
        empty or malformed responses all return summary=None with zero usage.
        """
        if not self.available:
            logger.warning(f"OpenAI API key missing. Skipping vision for page {page_number}.")
            return VisionResult()

        prompt = self.build_prompt(page_text, page_number, total_pages)
        t0 = time.time()
        try:
            response = call_with_timeout(
                self._call_vision_api,
                self.request_timeout,
                f"vision request page {page_number}",
                prompt,
                image_data_url,
            )
        except OperationTimeout as e:
            logger.error(f"Vision request timed out for page {page_number}: {e}")
            return VisionResult()
        except Exception as e:
            logger.error(f"Vision analysis failed for page {page_number}: {e}")
            return VisionResult()

        logger.debug(f"Vision call for page {page_number} completed in {time.time() - t0:.1f}s")

        usage = self._extract_usage(response)
        content = self._extract_content(response)
        if not content:
            logger.warning(f"Vision response was empty for page {page_number}.")
            return VisionResult()

        summary = self._normalize_caption(content)
        if summary is None:
            logger.warning(f"Vision response for page {page_number} was not valid caption JSON.")
            return VisionResult()
        return VisionResult(summary=summary, usage=usage)

    def _call_vision_api(self, prompt: str, image_data_url: str) -> Any:
        return self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": image_data_url}},
                    ],
                },
            ],
            max_tokens=self.max_tokens,
            response_format={"type": "json_object"},
            timeout=self.request_timeout,
        )

    @staticmethod
    def _extract_content(response: Any) -> str:
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            return ""
        return (content or "").strip()

    @staticmethod
    def _extract_usage(response: Any) -> TokenUsage:
        usage = getattr(response, "usage", None)
        if usage is None:
            return TokenUsage()
        input_tokens = getattr(usage, "prompt_tokens", 0) or 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0
        total_tokens = getattr(usage, "total_tokens", 0) or input_tokens + output_tokens
        return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total_tokens)

    @staticmethod
    def _normalize_caption(content: str) -> Optional[str]:
        """Validate the model output and re-serialize it compactly."""
        cleaned = _FENCE_RE.sub("", content.strip())
        try:
            caption = DiagramCaption.model_validate(json.loads(cleaned))
        except (json.JSONDecodeError, ValidationError, TypeError):
            return None
        return caption.to_json()
