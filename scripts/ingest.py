#!/usr/bin/env python3
"""
CLI script for building study sources from PDFs.
Usage: python scripts/ingest.py <pdf file or folder>
"""

import argparse
import logging
import os
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from dotenv import load_dotenv
from tqdm import tqdm

from shared import load_config
from studysource import (
    DocumentProcessingError,
    DocumentProcessor,
    LocalObjectStorage,
    SourceFile,
    compute_vision_page_budget,
)


def parse_multiplier(value: str):
    if value.lower() == "disabled":
        return "disabled"
    try:
        return float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a number or 'disabled', got {value!r}")


def collect_pdfs(path: Path):
    if path.is_file():
        return [path]
    return sorted(path.glob("**/*.pdf"))


def output_paths(out_dir: Path, pdf_path: Path):
    """Text and stats files for one PDF; dotted stems keep every part."""
    stem = out_dir / pdf_path.stem
    return Path(f"{stem}.txt"), Path(f"{stem}.stats.json")


def main():
    parser = argparse.ArgumentParser(
        description="Convert PDF notes into study-source text documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/ingest.py ./notes
  python scripts/ingest.py lecture.pdf --out data/study --vision-multiplier 1.5
  python scripts/ingest.py ./notes --vision-multiplier disabled
        """,
    )
    parser.add_argument(
        "input",
        help="PDF file or folder containing PDF files",
    )
    parser.add_argument(
        "--config",
        default="config/master_config.yaml",
        help="Path to configuration file (default: config/master_config.yaml)",
    )
    parser.add_argument(
        "--out",
        default="data/study_sources",
        help="Output directory for .txt and .stats.json files",
    )
    parser.add_argument(
        "--vision-multiplier",
        type=parse_multiplier,
        default=1.0,
        help="Plan multiplier for the vision page budget, or 'disabled' (default: 1.0)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    # Setup logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Silence noisy HTTP/PDF loggers (even in verbose mode)
    # These write base64-encoded images and bloat logs
    for name in ("httpx", "httpcore", "openai", "urllib3", "pdfminer"):
        logging.getLogger(name).setLevel(logging.WARNING)

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: {args.input} does not exist")
        sys.exit(1)

    if not os.path.exists(args.config):
        print(f"Error: Config file not found: {args.config}")
        sys.exit(1)

    # .env takes priority over system environment variables
    env_path = os.path.join(PROJECT_ROOT, ".env")
    if os.path.exists(env_path):
        load_dotenv(env_path, override=True)
        logging.info(f"Loaded environment from: {env_path}")

    config = load_config(args.config, force_reload=True)

    if not config.get("openai_api_key"):
        print("⚠️  OPENAI_API_KEY not set. Vision captions will be skipped.")

    pdf_files = collect_pdfs(input_path)
    if not pdf_files:
        print(f"Error: no PDF files found in {args.input}")
        sys.exit(1)

    root = input_path if input_path.is_dir() else input_path.parent
    processor = DocumentProcessor(config, storage=LocalObjectStorage(str(root)))

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)

    print(f"\n📄 Processing {len(pdf_files)} PDF(s) from: {args.input}")
    print(f"📁 Output: {out_dir}/")
    print()

    results = []
    failures = 0
    for pdf_path in tqdm(pdf_files, desc="Building study sources", unit="file"):
        key = str(pdf_path.relative_to(root))
        try:
            with open(pdf_path, "rb") as f:
                data = f.read()
            total_pages = DocumentProcessor.count_pages(data)
            budget = compute_vision_page_budget(
                total_pages,
                args.vision_multiplier,
                vision_pages_ratio=config.get("vision_pages_ratio", 0.2),
                vision_max_pages=config.get("vision_max_pages", 0),
            )
            result = processor.build_study_source(
                SourceFile(file_id=key, file_name=pdf_path.name, storage_key=key),
                vision_page_budget=budget,
            )
        except DocumentProcessingError as e:
            failures += 1
            logging.error(f"Failed to process {pdf_path}: {e}")
            continue

        text_path, stats_path = output_paths(out_dir, pdf_path)
        text_path.write_text(result.text, encoding="utf-8")
        stats_path.write_text(result.stats.to_json(), encoding="utf-8")
        results.append((pdf_path, budget, result))

    # Summary
    print("\n" + "=" * 50)
    print("📊 Study Source Summary")
    print("=" * 50)

    for pdf_path, budget, result in results:
        stats = result.stats
        print(f"\n📄 {pdf_path.name} ({result.doc_type})")
        print(f"   Pages: {stats.total_pages} (OCR={stats.ocr_pages})")
        print(f"   Vision: {stats.vision_pages}/{budget} pages, {stats.vision_images} images, "
              f"{stats.vision_units:.2f} units")
        if stats.total_tokens:
            print(f"   Tokens: {stats.total_tokens} (in={stats.input_tokens}, out={stats.output_tokens})")

    print("\n" + "-" * 50)
    print(f"✅ Total: {len(results)} documents written to {out_dir}/")
    if failures:
        print(f"❌ Failed: {failures}")
        sys.exit(1)


if __name__ == "__main__":
    main()
