"""Plain-text reading with encoding detection for Chinese documents."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

from loguru import logger

DEFAULT_ENCODINGS = ("utf-8", "gbk", "gb2312", "gb18030", "latin-1")
REPLACEMENT_CHAR = "�"


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def decode_text_bytes(
    data: bytes,
    encodings: Sequence[str] = DEFAULT_ENCODINGS,
    *,
    min_clean_ratio: float = 0.95,
) -> tuple[str, str]:
    """Decode ``data`` with the first acceptable encoding.

    An encoding is accepted when the decoded text has no replacement characters
    or more than ``min_clean_ratio`` of its characters are not replacements.

    Returns:
        Tuple of (text with normalized newlines, encoding used)
    """
    if not data:
        return "", encodings[0] if encodings else "utf-8"

    for encoding in encodings:
        try:
            text = data.decode(encoding, errors="replace")
        except LookupError:
            logger.warning(f"Unknown text encoding skipped: {encoding}")
            continue
        bad = text.count(REPLACEMENT_CHAR)
        if bad == 0 or (len(text) - bad) / len(text) > min_clean_ratio:
            return normalize_newlines(text), encoding

    logger.warning("No encoding decoded cleanly, falling back to lossy utf-8")
    return normalize_newlines(data.decode("utf-8", errors="replace")), "utf-8"


class TextFileParser:
    """Read `.txt` files trying a fixed list of encodings in order."""

    def __init__(self, encodings: Sequence[str] = DEFAULT_ENCODINGS) -> None:
        self.encodings = tuple(encodings)

    def parse_file(self, path: Path | str) -> tuple[str, str]:
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        text, encoding = decode_text_bytes(file_path.read_bytes(), self.encodings)
        logger.debug(f"Decoded {file_path.name} as {encoding} ({len(text)} chars)")
        return text, encoding
