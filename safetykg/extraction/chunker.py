"""Paragraph-boundary chunking for extraction prompts."""

import re
from typing import List

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


def split_into_chunks(text: str, max_chars: int = 4000) -> List[str]:
    """Pack whole paragraphs into chunks of at most ``max_chars`` characters.

    Paragraphs are never split, so a single paragraph longer than the budget
    becomes a chunk of its own.
    """
    paragraphs = [p.strip() for p in _PARAGRAPH_BREAK.split(text or "") if p.strip()]
    chunks: List[str] = []
    current = ""
    for paragraph in paragraphs:
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if current and len(candidate) > max_chars:
            chunks.append(current)
            current = paragraph
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks
