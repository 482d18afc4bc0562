"""
Document pipeline - orchestrates PDF → Pages → OCR → Vision → Text flow.
Handles stage ordering, bounded fan-out and stage telemetry.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from shared import run_bounded

from .assembler import aggregate_stats, assemble_document
from .captioner import VisionCaptioner
from .classifier import ClassifierThresholds, classify_pages, is_strong_text
from .dedup import apply_dedup
from .errors import MissingStorageKeyError, UnsupportedFileTypeError
from .models import DocumentResult, PageMeta, ProcessingStats, SourceFile, TokenUsage
from .ocr import OCRRunner, PageRenderer, RenderedPage, compute_short_token_ratio
from .parser import DocType, PdfDocument, classify_document, compute_alpha_ratio
from .storage import ObjectStorage
from .vision import VisionOrchestrator

logger = logging.getLogger(__name__)

StageCallback = Callable[[str, int, int], None]

STAGES = ("classify_document", "analyze_pages", "dedup", "ocr", "classify", "vision", "assemble")


class DocumentProcessor:
    """
    Full study-source pipeline for one uploaded file.
    Collaborators (OCR runner, renderer, captioner) can be injected for tests.
    """

    def __init__(
        self,
        config: dict,
        storage: Optional[ObjectStorage] = None,
        ocr_runner: Optional[OCRRunner] = None,
        renderer: Optional[PageRenderer] = None,
        captioner: Optional[VisionCaptioner] = None,
    ):
        self.config = config
        self.storage = storage

        self.thresholds = ClassifierThresholds.from_config(config)
        self.renderer = renderer or PageRenderer(config)
        self.ocr_runner = ocr_runner or OCRRunner(config)
        self.captioner = captioner or VisionCaptioner.from_config(config)
        self.vision = VisionOrchestrator(config, self.captioner, storage)

        self.concurrency = config.get("analysis_concurrency", 4)
        self.object_timeout = config.get("pdf_object_timeout", 6)
        self.vision_enabled = config.get("vision_enabled", True)
        self.vision_max_pages = config.get("vision_max_pages", 0)
        self.dedup_enabled = config.get("dedup_enabled", True)
        self.dedup_similarity = config.get("dedup_similarity", 0.95)
        self.native_text_ocr_threshold = config.get("native_text_ocr_threshold", 180)
        self.slides_ocr_threshold = config.get("slides_ocr_threshold", 60)

    # =========================================================================
    # Entry points
    # =========================================================================

    def build_study_source(self, file: SourceFile, vision_page_budget: Optional[int] = None) -> DocumentResult:
        """
        Produce the study text for one source file.

        Raises:
            MissingStorageKeyError: no storage key on a file without text content
            UnsupportedFileTypeError: the file is not a PDF
            PdfOpenError: the PDF cannot be parsed
            EmptyDocumentError: nothing could be assembled
        """
        text_content = (file.text_content or "").strip()
        if text_content:
            return DocumentResult(text=text_content, stats=ProcessingStats())

        if not file.storage_key:
            raise MissingStorageKeyError(f"Missing storage key for {file.file_name}")

        extension = (file.extension or "").lower().lstrip(".")
        if extension != "pdf":
            raise UnsupportedFileTypeError(f"Unsupported file type for {file.file_name}: {file.extension}")

        if self.storage is None:
            raise MissingStorageKeyError(f"No storage configured to fetch {file.storage_key}")

        data = self.storage.get_object_buffer(file.storage_key)
        return self.process_pdf(
            data,
            vision_page_budget=vision_page_budget,
            page_image_keys=file.page_image_map(),
            label=file.file_name,
        )

    def process_pdf(
        self,
        data: bytes,
        vision_page_budget: Optional[int] = None,
        page_image_keys: Optional[Dict[int, str]] = None,
        label: str = "document",
        stage_callback: Optional[StageCallback] = None,
    ) -> DocumentResult:
        """
        Run every stage over the PDF bytes.

        vision_page_budget: None means no per-document cap beyond
        vision_max_pages; 0 disables vision for this document.
        """
        page_image_keys = page_image_keys or {}
        stage_total = len(STAGES)

        def _stage(name: str) -> None:
            if stage_callback:
                stage_callback(name, STAGES.index(name) + 1, stage_total)

        t_start = time.time()
        with PdfDocument(data, object_timeout=self.object_timeout) as doc:
            _stage("classify_document")
            doc_type = classify_document(
                doc,
                sample_pages=self.config.get("slides_sample_pages", 3),
                text_threshold=self.config.get("slides_text_threshold", 200),
                image_ratio=self.config.get("slides_image_ratio", 0.7),
            )
            logger.info(f"{label} classified as {doc_type} ({doc.page_count} pages).")
            ocr_threshold = self.ocr_threshold(doc_type)

            _stage("analyze_pages")
            t0 = time.time()
            analyzed = run_bounded(
                lambda n: self._analyze_page(doc, n, ocr_threshold, page_image_keys.get(n)),
                range(1, doc.page_count + 1),
                max_workers=self.concurrency,
                thread_name_prefix="analyze",
            )
            pages = [page for page, _ in analyzed]
            rendered: Dict[int, RenderedPage] = {
                page.page_number: raster for page, raster in analyzed if raster is not None
            }
            logger.info(f"Analyzed {len(pages)} pages in {time.time() - t0:.1f}s ({len(rendered)} rendered for OCR)")

            _stage("dedup")
            if self.dedup_enabled:
                pages = apply_dedup(
                    pages,
                    {n: raster.hash for n, raster in rendered.items()},
                    threshold=self.dedup_similarity,
                    diagram_text_threshold=self.thresholds.diagram_text_threshold,
                    image_area_ratio_threshold=self.thresholds.vision_image_area_ratio_threshold,
                )

            _stage("ocr")
            t0 = time.time()
            pages = self._run_ocr(pages, rendered)
            pages = self._inherit_duplicate_text(pages)
            logger.info(f"OCR stage finished in {time.time() - t0:.1f}s")

            _stage("classify")
            budget = self.resolve_budget(vision_page_budget, doc.page_count)
            vision_enabled = bool(self.vision_enabled) and budget > 0
            pages = classify_pages(pages, self.thresholds, vision_enabled)

            duplicate_count = sum(1 for page in pages if page.duplicate_of is not None)
            vision_count = sum(1 for page in pages if page.needs_vision)
            logger.info(f"OCR completed. Vision duplicates: {duplicate_count}. Vision needed: {vision_count}.")

            _stage("vision")
            usage = TokenUsage()
            if vision_enabled:
                pages, usage = self.vision.run(doc, pages, budget)

        _stage("assemble")
        text = assemble_document(pages)
        stats = aggregate_stats(pages, usage)
        logger.info(
            f"Processed {label}: {stats.total_pages} pages, {stats.ocr_pages} OCR, "
            f"{stats.vision_pages} vision, {stats.total_tokens} tokens in {time.time() - t_start:.1f}s"
        )
        return DocumentResult(text=text, stats=stats, pages=pages, doc_type=doc_type)

    @staticmethod
    def count_pages(data: bytes) -> int:
        """Page count without running any stage (used to size the vision budget)."""
        with PdfDocument(data) as doc:
            return doc.page_count

    # =========================================================================
    # Decisions
    # =========================================================================

    def ocr_threshold(self, doc_type: DocType) -> int:
        return self.slides_ocr_threshold if doc_type == "slides" else self.native_text_ocr_threshold

    def should_run_ocr(self, native_text_chars: int, alpha_ratio: float, ocr_threshold: int) -> bool:
        if is_strong_text(native_text_chars, alpha_ratio, self.thresholds):
            return False
        return native_text_chars < ocr_threshold

    def resolve_budget(self, vision_page_budget: Optional[int], total_pages: int) -> int:
        if vision_page_budget is None:
            return self.vision_max_pages if self.vision_max_pages > 0 else total_pages
        return max(0, vision_page_budget)

    # =========================================================================
    # Stages
    # =========================================================================

    def _analyze_page(
        self,
        doc: PdfDocument,
        page_number: int,
        ocr_threshold: int,
        page_image_key: Optional[str],
    ) -> Tuple[PageMeta, Optional[RenderedPage]]:
        text = doc.extract_text(page_number)
        alpha_ratio = compute_alpha_ratio(text)
        media = doc.analyze_media(page_number)

        raster = None
        if self.should_run_ocr(len(text), alpha_ratio, ocr_threshold):
            try:
                raster = self.renderer.render(doc, page_number)
            except Exception as e:
                logger.warning(f"Render failed for page {page_number}, keeping native text: {e}")

        page = PageMeta(
            page_number=page_number,
            text=text,
            native_text_chars=len(text),
            alpha_ratio=alpha_ratio,
            ocr_text_len=len(text),
            short_token_ratio=compute_short_token_ratio(text),
            image_count=media.image_count,
            image_area_ratio=media.image_area_ratio,
            vector_ops=media.vector_ops,
            page_image_key=page_image_key,
        )
        return page, raster

    def _run_ocr(self, pages: List[PageMeta], rendered: Dict[int, RenderedPage]) -> List[PageMeta]:
        targets = [
            page for page in pages
            if page.page_number in rendered and page.duplicate_of is None
        ]
        results = run_bounded(
            lambda page: self.ocr_runner.run(rendered[page.page_number].jpeg),
            targets,
            max_workers=self.concurrency,
            thread_name_prefix="ocr",
        )
        by_number = {page.page_number: result for page, result in zip(targets, results)}

        updated = []
        for page in pages:
            ocr = by_number.get(page.page_number)
            if ocr is not None:
                text = ocr.text or page.text
                page = page.model_copy(update={
                    "text": text,
                    "ocr_text_len": len(text),
                    "ocr_confidence": ocr.confidence,
                    "ocr_applied": ocr.applied,
                    "short_token_ratio": ocr.short_token_ratio if ocr.text else compute_short_token_ratio(text),
                })
            updated.append(page)
        return updated

    @staticmethod
    def _inherit_duplicate_text(pages: List[PageMeta]) -> List[PageMeta]:
        """Duplicates reuse the original's OCR output; they were never OCR'd themselves."""
        by_number = {page.page_number: page for page in pages}
        result = []
        for page in pages:
            original = by_number.get(page.duplicate_of) if page.duplicate_of is not None else None
            if original is not None:
                page = page.model_copy(update={
                    "text": original.text,
                    "ocr_text_len": original.ocr_text_len,
                    "ocr_confidence": original.ocr_confidence,
                    "short_token_ratio": original.short_token_ratio,
                    "ocr_applied": False,
                })
            result.append(page)
        return result
