"""studysource - PDF study-source ingestion: native text, OCR, dedup, vision captions."""

from .errors import (
    DocumentProcessingError,
    EmptyDocumentError,
    MissingStorageKeyError,
    PdfOpenError,
    UnsupportedFileTypeError,
)
from .models import DocumentResult, PageImageRef, PageMeta, ProcessingStats, SourceFile
from .pipeline import DocumentProcessor
from .storage import LocalObjectStorage, S3ObjectStorage, create_storage
from .vision import compute_vision_page_budget

__all__ = [
    "DocumentProcessingError",
    "EmptyDocumentError",
    "MissingStorageKeyError",
    "PdfOpenError",
    "UnsupportedFileTypeError",
    "DocumentResult",
    "PageImageRef",
    "PageMeta",
    "ProcessingStats",
    "SourceFile",
    "DocumentProcessor",
    "LocalObjectStorage",
    "S3ObjectStorage",
    "create_storage",
    "compute_vision_page_budget",
]
