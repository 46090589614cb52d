#!/usr/bin/env python3
"""Run the extraction cascade over invoice files from the command line.

Files are processed one after another and each result is printed as JSON.
A supplier that needs training is reported with its raw text so it can be
annotated.

Usage:
    python scripts/extract_invoice.py invoices/medis.pdf invoices/scan.png
    python scripts/extract_invoice.py --supplier "Transpharm" --no-vision invoice.pdf

Requirements:
    - Tesseract installed (or APP_OCR_PROVIDER=paddleocr)
    - Ollama running for the AI text tier, APP_GEMINI_API_KEY for vision
"""

import asyncio
import json
import logging
import mimetypes
from pathlib import Path

from invoice_pipeline.extraction.schema import InvoiceDocument
from invoice_pipeline.matching.catalog import InMemoryProductCatalog
from invoice_pipeline.orchestrator.service import ExtractionOrchestrator, create_orchestrator
from invoice_pipeline.shared.config import Settings
from invoice_pipeline.shared.errors import AcquisitionError

logger = logging.getLogger(__name__)


def load_document(path: Path, supplier_hint: str | None) -> InvoiceDocument:
    file_type, _ = mimetypes.guess_type(path.name)
    return InvoiceDocument(
        file_name=path.name,
        file_type=file_type or "application/octet-stream",
        file_bytes=path.read_bytes(),
        supplier_hint=supplier_hint,
    )


async def extract_files(
    orchestrator: ExtractionOrchestrator, paths: list[Path], supplier_hint: str | None
) -> list[dict]:
    """Process files sequentially, collecting one JSON-ready dict per file."""
    results = []
    for path in paths:
        logger.info(f"Processing {path}")
        try:
            result = await orchestrator.process_file(load_document(path, supplier_hint))
        except AcquisitionError as e:
            logger.error(f"Could not read {path}: {e}")
            results.append({"file": str(path), "error": str(e)})
            continue
        results.append({"file": str(path), **result.model_dump(mode="json")})
    return results


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Extract invoice line items")
    parser.add_argument("files", type=Path, nargs="+", help="Invoice images or PDFs")
    parser.add_argument("--supplier", default=None, help="Supplier name hint")
    parser.add_argument("--no-vision", action="store_true", help="Skip the vision model tier")
    parser.add_argument(
        "--catalog",
        type=Path,
        default=None,
        help="JSON file with a list of catalog items for product matching",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Write results to this JSON file instead of stdout",
    )
    args = parser.parse_args()

    settings = Settings()
    if args.no_vision:
        settings = settings.model_copy(update={"vision_enabled": False})
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    catalog_items = json.loads(args.catalog.read_text()) if args.catalog else []
    orchestrator = create_orchestrator(settings, catalog=InMemoryProductCatalog(catalog_items))
    output = asyncio.run(extract_files(orchestrator, args.files, args.supplier))

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(output, indent=2))
        logger.info(f"Saved {len(output)} results to {args.output}")
    else:
        print(json.dumps(output, indent=2))
