"""Hard-failure exceptions. These abort the document job and reach the caller."""

from __future__ import annotations


class DocumentProcessingError(RuntimeError):
    """Base class for errors that fail a whole document."""
    pass


class MissingStorageKeyError(DocumentProcessingError):
    """Raised when a source file has no storage key or the key does not exist."""
    pass


class UnsupportedFileTypeError(DocumentProcessingError):
    """Raised for source files that are not PDFs."""
    pass


class PdfOpenError(DocumentProcessingError):
    """Raised when the PDF bytes cannot be parsed at all."""
    pass


class EmptyDocumentError(DocumentProcessingError):
    """Raised when no text could be assembled from any page."""
    pass
