"""
PDF access layer: PyPDF2 for native text and operator streams, pdfplumber for rasters.
Extracts per-page text and media statistics without rendering.
"""

from __future__ import annotations

import io
import logging
import re
import threading
from typing import Any, List, Literal, Set, Tuple

import pdfplumber
from PIL import Image
from PyPDF2 import PdfReader
from PyPDF2.generic import ContentStream, DictionaryObject, IndirectObject

from shared import OperationTimeout, call_with_timeout

from .errors import PdfOpenError
from .models import PageMedia

logger = logging.getLogger(__name__)

# Operator families counted as vector drawing.
# A run of consecutive path-construction operators counts once (one path).
PATH_CONSTRUCTION_OPS = {b"m", b"l", b"c", b"v", b"y", b"h", b"re"}
PATH_PAINT_OPS = {b"S", b"s", b"f", b"F", b"f*", b"B", b"B*", b"b", b"b*", b"sh"}
XOBJECT_OP = b"Do"
INLINE_IMAGE_OP = b"INLINE IMAGE"

MAX_FORM_DEPTH = 8
MAX_IMAGE_RESOLUTION = 300

DocType = Literal["slides", "text"]


def normalize_text(text: str) -> str:
    """Collapse all whitespace runs to single spaces."""
    return re.sub(r"\s+", " ", text or "").strip()


def compute_alpha_ratio(text: str) -> float:
    """Ratio of letters to non-whitespace characters (0 when there are none)."""
    compact = re.sub(r"\s+", "", text or "")
    if not compact:
        return 0.0
    letters = sum(1 for c in compact if c.isalpha())
    return letters / len(compact)


class _MediaTally:
    """Mutable counters for one page walk."""

    def __init__(self) -> None:
        self.image_count = 0
        self.image_area = 0
        self.vector_ops = 0
        self.seen_images: Set[Tuple[Any, ...]] = set()
        # Set once an object lookup times out; its helper thread may still be reading.
        self.resolution_abandoned = False


class PdfDocument:
    """
    One opened PDF. Library objects are not thread-safe, so every access
    goes through a per-document lock; callers may still fan out page work
    across threads and overlap it with OCR subprocesses.
    """

    def __init__(self, data: bytes, object_timeout: float = 6.0):
        self.object_timeout = object_timeout
        self._lock = threading.RLock()
        try:
            self._reader = PdfReader(io.BytesIO(data))
            self.page_count = len(self._reader.pages)
            self._plumber = pdfplumber.open(io.BytesIO(data))
        except Exception as e:
            raise PdfOpenError(f"Failed to open PDF: {e}") from e

    def __enter__(self) -> "PdfDocument":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._plumber.close()

    # -------------------------------------------------------------------------
    # Native text
    # -------------------------------------------------------------------------

    def extract_text(self, page_number: int) -> str:
        """Concatenated native text of a page, whitespace-normalized."""
        with self._lock:
            page = self._reader.pages[page_number - 1]
            try:
                raw = page.extract_text() or ""
            except Exception as e:
                logger.warning(f"Native text extraction failed on page {page_number}: {e}")
                raw = ""
        return normalize_text(raw)

    # -------------------------------------------------------------------------
    # Operator-stream statistics
    # -------------------------------------------------------------------------

    def page_area(self, page_number: int) -> float:
        with self._lock:
            box = self._reader.pages[page_number - 1].mediabox
            return max(1.0, abs(float(box.width) * float(box.height)))

    def analyze_media(self, page_number: int) -> PageMedia:
        """
        Walk the page's operator list once and tally vector drawing ops,
        painted images and their pixel area relative to the page area.
        """
        with self._lock:
            page = self._reader.pages[page_number - 1]
            tally = _MediaTally()

            try:
                contents = page.get_contents()
            except Exception as e:
                logger.warning(f"Unreadable content stream on page {page_number}: {e}")
                contents = None

            if contents is not None:
                try:
                    stream = contents if isinstance(contents, ContentStream) else ContentStream(contents, self._reader)
                    resources = _resolve(page.get("/Resources"))
                    self._walk(stream.operations, resources, tally, page_number, depth=0)
                except Exception as e:
                    # Partial tallies are kept; a broken stream is not fatal.
                    logger.warning(f"Operator walk aborted on page {page_number}: {e}")

            area = self.page_area(page_number)

        return PageMedia(
            image_count=tally.image_count,
            image_area_ratio=min(1.0, tally.image_area / area),
            vector_ops=tally.vector_ops,
        )

    def _walk(self, operations, resources, tally: _MediaTally, page_number: int, depth: int) -> None:
        in_path = False

        for operands, operator in operations:
            if operator in PATH_CONSTRUCTION_OPS:
                if not in_path:
                    tally.vector_ops += 1
                    in_path = True
                continue
            in_path = False

            if operator in PATH_PAINT_OPS:
                tally.vector_ops += 1
            elif operator == INLINE_IMAGE_OP:
                self._tally_inline_image(operands, tally)
            elif operator == XOBJECT_OP and operands:
                self._tally_xobject(operands[0], resources, tally, page_number, depth)

    def _tally_inline_image(self, operands, tally: _MediaTally) -> None:
        settings = operands.get("settings", {}) if isinstance(operands, dict) else {}
        width = _as_int(settings.get("/W", settings.get("/Width")))
        height = _as_int(settings.get("/H", settings.get("/Height")))
        if width and height:
            tally.image_count += 1
            tally.image_area += width * height

    def _tally_xobject(self, name, resources, tally: _MediaTally, page_number: int, depth: int) -> None:
        if tally.resolution_abandoned:
            return
        xobjects = _resolve(resources.get("/XObject")) if resources else None
        if not xobjects or name not in xobjects:
            return

        raw = xobjects.raw_get(name)
        if isinstance(raw, IndirectObject):
            key: Tuple[Any, ...] = ("obj", raw.idnum, raw.generation)
        else:
            key = ("name", depth, str(name))

        try:
            xobj = call_with_timeout(_resolve, self.object_timeout, f"pdf obj {name}", raw)
        except OperationTimeout as e:
            logger.warning(f"PDF object {name} on page {page_number} timed out, skipping remaining XObjects: {e}")
            tally.resolution_abandoned = True
            return
        except Exception as e:
            logger.warning(f"PDF object {name} on page {page_number} unresolvable: {e}")
            return

        if not isinstance(xobj, DictionaryObject):
            logger.warning(f"PDF object {name} on page {page_number} is missing or not a dictionary")
            return

        subtype = xobj.get("/Subtype")
        if subtype == "/Image":
            if key in tally.seen_images:
                return
            tally.seen_images.add(key)
            width = _as_int(xobj.get("/Width"))
            height = _as_int(xobj.get("/Height"))
            if width and height:
                tally.image_count += 1
                tally.image_area += width * height
        elif subtype == "/Form":
            tally.vector_ops += 1
            if depth >= MAX_FORM_DEPTH:
                return
            try:
                form_resources = _resolve(xobj.get("/Resources")) or resources
                form_stream = ContentStream(xobj, self._reader)
                self._walk(form_stream.operations, form_resources, tally, page_number, depth + 1)
            except Exception as e:
                logger.warning(f"Form XObject {name} on page {page_number} unreadable: {e}")

    # -------------------------------------------------------------------------
    # Rasters
    # -------------------------------------------------------------------------

    def page_width(self, page_number: int) -> float:
        with self._lock:
            return float(self._plumber.pages[page_number - 1].width)

    def render(self, page_number: int, resolution: float) -> Image.Image:
        """Render a full page to an RGB image at the given DPI."""
        with self._lock:
            page = self._plumber.pages[page_number - 1]
            return page.to_image(resolution=resolution).original.convert("RGB")

    def extract_page_images(
        self,
        page_number: int,
        max_images: int = 2,
        min_pixels: int = 10000,
    ) -> List[Image.Image]:
        """
        Embedded images of a page whose source pixel area is at least
        min_pixels, largest first, rendered from their on-page bounding box.
        max_images <= 0 means no limit.
        """
        with self._lock:
            page = self._plumber.pages[page_number - 1]
            px0, ptop, px1, pbottom = page.bbox

            candidates = []
            seen = set()
            for img in page.images:
                src_w, src_h = (img.get("srcsize") or (0, 0))[:2]
                src_w, src_h = int(src_w or 0), int(src_h or 0)
                if src_w * src_h < min_pixels:
                    continue

                stream = img.get("stream")
                key = getattr(stream, "objid", None) or img.get("name")
                if key is not None and key in seen:
                    continue
                seen.add(key)

                bbox = (
                    max(px0, float(img["x0"])),
                    max(ptop, float(img["top"])),
                    min(px1, float(img["x1"])),
                    min(pbottom, float(img["bottom"])),
                )
                if bbox[2] - bbox[0] < 1 or bbox[3] - bbox[1] < 1:
                    continue
                candidates.append((src_w * src_h, src_w, bbox))

            candidates.sort(key=lambda c: c[0], reverse=True)
            if max_images > 0:
                candidates = candidates[:max_images]

            images = []
            for _, src_w, bbox in candidates:
                resolution = min(MAX_IMAGE_RESOLUTION, max(72.0, 72.0 * src_w / (bbox[2] - bbox[0])))
                try:
                    rendered = page.crop(bbox).to_image(resolution=resolution).original
                except Exception as e:
                    logger.warning(f"Could not render image {bbox} on page {page_number}: {e}")
                    continue
                images.append(rendered.convert("RGB"))

        return images


def classify_document(
    doc: PdfDocument,
    sample_pages: int = 3,
    text_threshold: int = 200,
    image_ratio: float = 0.7,
) -> DocType:
    """
    Sample the first pages: if enough of them are text-poor the whole
    document is treated as a slide deck.
    """
    sample_count = min(sample_pages, doc.page_count)
    if sample_count <= 0:
        return "text"

    image_pages = sum(
        1 for page_number in range(1, sample_count + 1)
        if len(doc.extract_text(page_number)) < text_threshold
    )
    return "slides" if image_pages / sample_count >= image_ratio else "text"


def _resolve(obj: Any) -> Any:
    if obj is None:
        return None
    return obj.get_object() if hasattr(obj, "get_object") else obj


def _as_int(value: Any) -> int:
    try:
        return int(_resolve(value) or 0)
    except (TypeError, ValueError):
        return 0
