"""
Pydantic models for studysource data structures.
All data contracts defined here - single source of truth for schemas.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# =============================================================================
# Page Metadata (Core Data Unit)
# =============================================================================

class PageMeta(BaseModel):
    """
    Per-page signals and decisions for one pipeline invocation.

    Frozen: each pipeline stage returns successor copies built with
    model_copy(update=...) instead of mutating the previous snapshot.
    """

    model_config = ConfigDict(frozen=True)

    page_number: int = Field(ge=1)
    text: str = ""

    # Text signals
    native_text_chars: int = 0
    alpha_ratio: float = 0.0
    ocr_text_len: int = 0
    ocr_confidence: Optional[float] = None  # 0-1, None when OCR gave no words
    ocr_applied: bool = False
    short_token_ratio: float = 0.0

    # Media signals
    image_count: int = 0
    image_area_ratio: float = Field(default=0.0, ge=0.0, le=1.0)
    vector_ops: int = 0

    # Vision decision
    needs_vision: bool = False
    needs_vision_reason: str = "pending"
    vision_rank_score: float = 0.0
    vision_summary: Optional[str] = None  # JSON payload
    vision_image_count: int = 0

    duplicate_of: Optional[int] = None
    page_image_key: Optional[str] = None

    @model_validator(mode="after")
    def duplicate_points_backwards(self) -> "PageMeta":
        if self.duplicate_of is not None and self.duplicate_of >= self.page_number:
            raise ValueError(
                f"duplicate_of={self.duplicate_of} must be smaller than page_number={self.page_number}"
            )
        return self


@dataclass(frozen=True)
class Hash64:
    """64-bit perceptual fingerprint stored as two unsigned 32-bit halves."""

    hi: int
    lo: int


class PageMedia(BaseModel):
    """Operator-stream statistics for one page."""

    image_count: int = 0
    image_area_ratio: float = 0.0
    vector_ops: int = 0


# =============================================================================
# OCR Result
# =============================================================================

class OCRResult(BaseModel):
    """Result from Tesseract OCR processing."""

    text: str = ""
    confidence: Optional[float] = None  # Mean word confidence 0-1
    short_token_ratio: float = 0.0  # Tokens of <= 2 chars / all tokens
    word_count: int = 0
    applied: bool = False  # False when the engine did not run

    @classmethod
    def empty(cls) -> "OCRResult":
        return cls()


# =============================================================================
# Vision Models
# =============================================================================

class TokenUsage(BaseModel):
    """Token counters reported by the vision endpoint."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class Relationship(BaseModel):
    """Directed edge between two labelled diagram entities."""

    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")
    label: str = ""


class DiagramCaption(BaseModel):
    """Structured diagram caption returned by the vision model."""

    labels: List[str] = Field(default_factory=list)
    relationships: List[Relationship] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class VisionResult(BaseModel):
    """Outcome of one vision call. summary is None on any degraded path."""

    summary: Optional[str] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)
    image_count: int = 0


# =============================================================================
# Processing Stats (Usage Accounting)
# =============================================================================

class ProcessingStats(BaseModel):
    """Per-document counters handed to the usage/billing collaborator."""

    total_pages: int = 0
    ocr_pages: int = 0
    vision_pages: int = 0
    vision_images: int = 0
    vision_units: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)


# =============================================================================
# Source File & Document Result
# =============================================================================

class PageImageRef(BaseModel):
    """Pre-stored full-page raster for one page of an uploaded file."""

    page_number: int = Field(ge=1)
    storage_key: str


class SourceFile(BaseModel):
    """Snapshot of an uploaded file as handed over by the job orchestrator."""

    file_id: str = ""
    file_name: str
    extension: str = "pdf"
    storage_key: Optional[str] = None
    text_content: Optional[str] = None
    page_image_keys: List[PageImageRef] = Field(default_factory=list)

    def page_image_map(self) -> dict[int, str]:
        return {ref.page_number: ref.storage_key for ref in self.page_image_keys}


class DocumentResult(BaseModel):
    """Final text document plus statistics for one source file."""

    text: str
    stats: ProcessingStats = Field(default_factory=ProcessingStats)
    pages: List[PageMeta] = Field(default_factory=list)
    doc_type: Literal["slides", "text"] = "text"
