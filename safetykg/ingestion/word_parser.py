"""Word document text extraction."""

from __future__ import annotations

import re
from pathlib import Path
from typing import List

from docx import Document
from loguru import logger

from safetykg.ingestion.text_file_parser import normalize_newlines

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")


def strip_control_chars(text: str) -> str:
    return _CONTROL_CHARS.sub("", text)


class WordParser:
    """Read `.docx` paragraphs and tables with python-docx.

    Legacy `.doc` files and corrupt archives fall back to decoding the raw
    bytes and stripping control characters, which keeps most of the text.
    """

    def parse_file(self, path: Path | str) -> tuple[str, bool]:
        """Return (text, used_fallback)."""
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        try:
            return self._read_docx(file_path), False
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Structured Word read failed for {file_path.name}, using raw text: {exc}")
            raw = file_path.read_bytes().decode("utf-8", errors="replace")
            return normalize_newlines(strip_control_chars(raw)).strip(), True

    def _read_docx(self, file_path: Path) -> str:
        document = Document(str(file_path))
        blocks: List[str] = [p.text.strip() for p in document.paragraphs if p.text.strip()]
        for table in document.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                if any(cells):
                    blocks.append(" | ".join(cells))
        return "\n\n".join(blocks)
