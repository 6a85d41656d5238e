"""PDF text extraction with pypdf and optional Docling OCR."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger
from pypdf import PdfReader

from safetykg.utils.config import PDFConfig


class PDFParser:
    """Extract page text from PDFs.

    With ``ocr_enabled`` the file goes through Docling's OCR pipeline instead.
    Docling is imported lazily because it pulls in heavy optional dependencies.
    """

    def __init__(self, config: Optional[PDFConfig] = None) -> None:
        self.config = config or PDFConfig()
        self.converter = None  # initialized lazily

    def parse_file(self, path: Path | str) -> tuple[str, int]:
        """Return (text, page_count).

        Raises:
            FileNotFoundError: If the PDF file doesn't exist
        """
        pdf_path = Path(path)
        if not pdf_path.exists():
            raise FileNotFoundError(f"PDF file not found: {pdf_path}")

        if self.config.ocr_enabled:
            return self._parse_with_ocr(pdf_path)

        reader = PdfReader(str(pdf_path))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
        text = "\n\n".join(p for p in pages if p)
        logger.info(f"Extracted {len(text)} chars from {len(pages)} pages of {pdf_path.name}")
        return text, len(pages)

    def _parse_with_ocr(self, pdf_path: Path) -> tuple[str, int]:
        self._ensure_converter()
        result = self.converter.convert(str(pdf_path))
        text = result.document.export_to_markdown()
        page_count = len(getattr(result.document, "pages", {}) or {})
        logger.success(f"OCR parsed {pdf_path.name}: {len(text)} chars")
        return text, page_count

    def _ensure_converter(self) -> None:
        """Initialize Docling converter lazily."""
        if self.converter is not None:
            return

        from docling.datamodel.base_models import InputFormat
        from docling.datamodel.pipeline_options import PdfPipelineOptions
        from docling.document_converter import DocumentConverter, PdfFormatOption

        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_ocr = True

        self.converter = DocumentConverter(
            format_options={InputFormat.PDF: PdfFormatOption(pipeline_options=pipeline_options)}
        )
