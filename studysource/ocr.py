"""
OCR module: page rasterization plus Tesseract with TSV quality signals.
The engine is an external binary; if it is missing OCR degrades to empty text.
"""

from __future__ import annotations

import io
import logging
import os
import tempfile
import threading
import uuid
from dataclasses import dataclass
from typing import List, Optional

import pytesseract
from PIL import Image

from .dedup import compute_dhash
from .models import Hash64, OCRResult
from .parser import PdfDocument

logger = logging.getLogger(__name__)

NO_TEXT_CONFIDENCE: Optional[float] = None
SHORT_TOKEN_MAX_LEN = 2
WORD_LEVEL = 5


# =============================================================================
# Text helpers
# =============================================================================

def compute_short_token_ratio(text: str) -> float:
    """Fraction of whitespace tokens that are at most two characters long."""
    tokens = (text or "").split()
    if not tokens:
        return 0.0
    short = sum(1 for token in tokens if len(token) <= SHORT_TOKEN_MAX_LEN)
    return short / len(tokens)


def parse_tesseract_tsv(tsv: str) -> OCRResult:
    """
    Parse `tesseract ... tsv` output.

    Columns: level page_num block_num par_num line_num word_num left top
    width height conf text. Only word rows (level 5) with text are used;
    words sharing a line number are joined with spaces, lines with newlines.
    Confidence is the mean non-negative word confidence scaled to 0-1.
    """
    rows = [row for row in (tsv or "").splitlines() if row]
    if len(rows) <= 1:
        return OCRResult(applied=True)

    lines: List[List[str]] = []
    confidences: List[float] = []
    current_line: Optional[int] = None

    for row in rows[1:]:
        parts = row.split("\t")
        if len(parts) < 12:
            continue

        text = parts[11].strip()
        try:
            level = int(parts[0])
        except ValueError:
            continue
        if level != WORD_LEVEL or not text:
            continue

        try:
            line_num: Optional[int] = int(parts[4])
        except ValueError:
            line_num = None
        if line_num != current_line or not lines:
            lines.append([])
            current_line = line_num
        lines[-1].append(text)

        try:
            conf = float(parts[10])
        except ValueError:
            continue
        if conf >= 0:
            confidences.append(conf)

    joined = "\n".join(" ".join(words) for words in lines)
    text = " ".join(joined.split())
    confidence = sum(confidences) / len(confidences) / 100 if confidences else NO_TEXT_CONFIDENCE

    return OCRResult(
        text=text,
        confidence=confidence,
        short_token_ratio=compute_short_token_ratio(text),
        word_count=len(text.split()),
        applied=True,
    )


# =============================================================================
# Engine availability (checked once per process)
# =============================================================================

_tesseract_checked = False
_tesseract_available = False
_tesseract_lock = threading.Lock()


def ensure_tesseract_available() -> bool:
    """Return True if the tesseract binary can be executed. Cached after the first call."""
    global _tesseract_checked, _tesseract_available

    with _tesseract_lock:
        if _tesseract_checked:
            return _tesseract_available

        _tesseract_checked = True
        try:
            version = pytesseract.get_tesseract_version()
            logger.info(f"Tesseract available: {version}")
            _tesseract_available = True
        except (pytesseract.TesseractNotFoundError, OSError) as e:
            logger.warning(f"Tesseract not available: {e}")
            _tesseract_available = False

        return _tesseract_available


def reset_tesseract_check() -> None:
    """Forget the cached availability result."""
    global _tesseract_checked, _tesseract_available
    with _tesseract_lock:
        _tesseract_checked = False
        _tesseract_available = False


# =============================================================================
# Renderer
# =============================================================================

@dataclass
class RenderedPage:
    """JPEG raster of a page plus the fingerprint of its raw pixels."""

    jpeg: bytes
    width: int
    height: int
    hash: Hash64


class PageRenderer:
    """Rasterize pages for OCR, capping the output width."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        self.dpi = self.config.get("ocr_dpi", 150)
        self.max_width = self.config.get("ocr_max_width", 1400)
        self.jpeg_quality = self.config.get("ocr_jpeg_quality", 75)

    def resolution_for(self, page_width_pts: float) -> float:
        """DPI to render at: target DPI unless that exceeds the max width."""
        scale = self.dpi / 72
        if page_width_pts * scale > self.max_width:
            scale = self.max_width / page_width_pts
        return scale * 72

    def render(self, doc: PdfDocument, page_number: int) -> RenderedPage:
        resolution = self.resolution_for(doc.page_width(page_number))
        image = doc.render(page_number, resolution)
        return self.encode(image)

    def encode(self, image: Image.Image) -> RenderedPage:
        rgb = image.convert("RGB")
        page_hash = compute_dhash(rgb)

        buf = io.BytesIO()
        rgb.save(buf, format="JPEG", quality=self.jpeg_quality)
        return RenderedPage(jpeg=buf.getvalue(), width=rgb.width, height=rgb.height, hash=page_hash)


# =============================================================================
# OCR Runner
# =============================================================================

class OCRRunner:
    """
    Tesseract wrapper. Each call gets its own temporary directory that is
    removed on every exit path.
    """

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        self.lang = self.config.get("ocr_language", "eng")
        self.dpi = self.config.get("ocr_dpi", 150)
        self.timeout = self.config.get("ocr_timeout", 60)

    @property
    def tesseract_config(self) -> str:
        # --oem 1: LSTM only, --psm 6: single uniform block of text
        return f"--oem 1 --psm 6 -c user_defined_dpi={self.dpi}"

    def run(self, jpeg: bytes) -> OCRResult:
        """Run OCR on a JPEG raster. Never raises; failures yield an empty result."""
        if not ensure_tesseract_available():
            return OCRResult.empty()

        with tempfile.TemporaryDirectory(prefix="ocr-") as temp_dir:
            input_path = os.path.join(temp_dir, f"{uuid.uuid4()}.jpg")
            try:
                with open(input_path, "wb") as f:
                    f.write(jpeg)
                tsv = pytesseract.image_to_data(
                    input_path,
                    lang=self.lang,
                    config=self.tesseract_config,
                    timeout=self.timeout,
                )
            except (pytesseract.TesseractError, RuntimeError, OSError) as e:
                # pytesseract signals its own timeout with RuntimeError
                logger.warning(f"OCR failed: {e}")
                return OCRResult.empty()

        return parse_tesseract_tsv(tsv)
