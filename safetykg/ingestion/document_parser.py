"""Format dispatch for uploaded documents."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from safetykg.errors import ParseError, UnsupportedFileTypeError
from safetykg.ingestion.excel_parser import ExcelParser
from safetykg.ingestion.models import FileType, ParsedDocument, Row
from safetykg.ingestion.pdf_parser import PDFParser
from safetykg.ingestion.text_file_parser import TextFileParser
from safetykg.ingestion.word_parser import WordParser
from safetykg.utils.config import IngestionConfig

EXTENSION_TYPES: Dict[str, FileType] = {
    ".xlsx": "excel",
    ".xls": "excel",
    ".docx": "word",
    ".doc": "word",
    ".pdf": "pdf",
    ".txt": "txt",
}


class DocumentParser:
    """Convert an uploaded file into a :class:`ParsedDocument`.

    Example:
        >>> parser = DocumentParser()
        >>> doc = parser.parse("风险清单.xlsx", parser.detect_file_type("风险清单.xlsx"))
        >>> doc.structured_rows[0]
    """

    def __init__(self, config: Optional[IngestionConfig] = None) -> None:
        self.config = config or IngestionConfig()
        self.excel_parser = ExcelParser(
            scan_rows=self.config.header_scan_rows, max_rows=self.config.excel_max_rows
        )
        self.word_parser = WordParser()
        self.pdf_parser = PDFParser(self.config.pdf)
        self.text_parser = TextFileParser(self.config.txt_encodings)

    @staticmethod
    def detect_file_type(filename: str) -> Optional[FileType]:
        """Map a filename's extension to a supported type, or None."""
        return EXTENSION_TYPES.get(Path(filename).suffix.lower())

    def parse(
        self,
        file_path: Path | str,
        file_type: Optional[str] = None,
        *,
        file_id: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> ParsedDocument:
        """Parse one file.

        Args:
            file_path: Location of the stored upload
            file_type: One of excel/word/pdf/txt; detected from the name when omitted
            file_id: Upload id, carried on errors for the caller
            filename: Display name; defaults to the path's name

        Raises:
            ParseError: If the file is missing, unsupported or unreadable
        """
        path = Path(file_path)
        display_name = filename or path.name
        resolved_type = file_type or self.detect_file_type(display_name)

        if resolved_type not in EXTENSION_TYPES.values():
            raise UnsupportedFileTypeError(
                f"不支持的文件类型: {display_name}", filename=display_name, file_id=file_id
            )
        if not path.exists():
            raise ParseError(f"文件不存在: {display_name}", filename=display_name, file_id=file_id)

        logger.info(f"Parsing {resolved_type} document: {display_name}")
        try:
            document = self._dispatch(path, resolved_type)
        except ParseError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ParseError(
                f"文档解析失败: {display_name}: {exc}",
                filename=display_name,
                file_id=file_id,
                cause=exc,
            ) from exc

        document.filename = display_name
        document.file_id = file_id
        document.preview = document.text[: self.config.preview_chars]
        logger.success(f"Parsed {display_name}: {len(document.text)} chars")
        return document

    def _dispatch(self, path: Path, file_type: str) -> ParsedDocument:
        if file_type == "excel":
            sheets = self.excel_parser.parse_file(path)
            rows: List[Row] = [row for sheet in sheets for row in sheet.rows]
            return ParsedDocument(
                type="excel",
                text="\n".join(sheet.text for sheet in sheets),
                structured_rows=rows,
                sheets=sheets,
                metadata={"sheet_count": len(sheets), "row_count": len(rows)},
            )
        if file_type == "word":
            text, used_fallback = self.word_parser.parse_file(path)
            return ParsedDocument(type="word", text=text, metadata={"raw_fallback": used_fallback})
        if file_type == "pdf":
            text, page_count = self.pdf_parser.parse_file(path)
            return ParsedDocument(type="pdf", text=text, metadata={"page_count": page_count})
        text, encoding = self.text_parser.parse_file(path)
        return ParsedDocument(type="txt", text=text, metadata={"encoding": encoding})
