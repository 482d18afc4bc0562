"""
Build small PDFs of student notes for manual runs and tests.
Usage: python scripts/create_test_pdf.py [output.pdf]
"""

import io
import sys
from typing import Callable, List, Optional, Sequence, Union

from PIL import Image, ImageDraw
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

PageDrawer = Callable[[canvas.Canvas], None]

FILLER_SENTENCE = "Mitochondria release energy for the cell through aerobic respiration and oxidation. "


def filler_text(chars: int, sentence: str = FILLER_SENTENCE) -> str:
    """Prose of roughly `chars` characters."""
    repeats = chars // len(sentence) + 1
    return (sentence * repeats)[:chars].strip()


def make_chart_image(width: int = 400, height: int = 200) -> Image.Image:
    """Simple bar chart drawn with PIL."""
    img = Image.new("RGB", (width, height), color="white")
    d = ImageDraw.Draw(img)
    d.rectangle([width // 8, height // 4, width * 7 // 8, height - 10], outline="black", width=2)
    # Bars - (x0, y0, x1, y1) where y0 < y1 (top < bottom)
    d.rectangle([width // 8 + 10, height * 7 // 10, width // 8 + 30, height - 10], fill="blue")
    d.rectangle([width // 8 + 50, height * 13 // 20, width // 8 + 70, height - 10], fill="green")
    d.rectangle([width // 8 + 90, height // 2, width // 8 + 110, height - 10], fill="red")
    d.text((width // 3, 10), "Growth", fill="black")
    return img


def text_page(text: str, font_size: int = 11, chars_per_line: int = 80) -> PageDrawer:
    def draw(c: canvas.Canvas) -> None:
        c.setFont("Helvetica", font_size)
        y = letter[1] - 60
        for start in range(0, len(text), chars_per_line):
            c.drawString(50, y, text[start:start + chars_per_line])
            y -= font_size + 3
    return draw


def image_page(
    image: Image.Image,
    box: Sequence[float] = (50, 300, 400, 200),
    caption: str = "",
) -> PageDrawer:
    """Page with one embedded raster image at box (x, y, width, height) in points."""
    def draw(c: canvas.Canvas) -> None:
        x, y, w, h = box
        c.drawImage(ImageReader(image), x, y, width=w, height=h)
        if caption:
            c.setFont("Helvetica", 11)
            c.drawString(x, y - 20, caption)
    return draw


def lines_page(count: int) -> PageDrawer:
    """Vector-only page: `count` stroked line segments."""
    def draw(c: canvas.Canvas) -> None:
        for i in range(count):
            c.line(50, 100 + i * 10, 300, 100 + i * 10)
    return draw


def blank_page() -> PageDrawer:
    def draw(c: canvas.Canvas) -> None:
        pass
    return draw


def build_pdf(pages: List[PageDrawer], filename: Optional[str] = None) -> Union[bytes, str]:
    """
    Render one PDF page per drawer. Returns the PDF bytes, or the filename
    when one is given.
    """
    target = filename or io.BytesIO()
    c = canvas.Canvas(target, pagesize=letter)
    for draw in pages:
        draw(c)
        c.showPage()
    c.save()
    if filename:
        return filename
    return target.getvalue()


def create_test_pdf(filename: str = "data/test_input/study_notes.pdf") -> str:
    """Four-page sample: prose, a captioned chart, and two identical blank scans."""
    import os
    os.makedirs(os.path.dirname(filename) or ".", exist_ok=True)

    build_pdf(
        [
            text_page(filler_text(1500)),
            image_page(make_chart_image(800, 600), box=(50, 250, 500, 375), caption="Figure 1: Monthly growth"),
            blank_page(),
            blank_page(),
        ],
        filename,
    )
    print(f"Test PDF created at: {filename}")
    return filename


if __name__ == "__main__":
    create_test_pdf(*sys.argv[1:2])
