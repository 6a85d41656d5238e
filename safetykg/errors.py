"""Exception taxonomy for the knowledge-graph pipeline.

Each stage raises one of these; the pipeline records the message on the
build task and decides whether the failure is terminal for that task.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class SafetyKGError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ParseError(SafetyKGError):
    """A single document could not be read."""

    def __init__(
        self,
        message: str,
        *,
        filename: str,
        file_id: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, {"filename": filename, "file_id": file_id})
        self.filename = filename
        self.file_id = file_id
        self.cause = cause


class UnsupportedFileTypeError(ParseError):
    """The file extension is not one of the supported document formats."""


class ExtractionError(SafetyKGError):
    """Base class for knowledge extraction failures."""


class LLMUnavailableError(ExtractionError):
    """The chat endpoint is not configured or kept failing after retries."""


class ExtractionDecodeError(ExtractionError):
    """Model output for a chunk could not be decoded as JSON."""

    def __init__(
        self,
        message: str,
        *,
        chunk_index: int,
        chunk_count: int,
        raw_preview: str,
        raw_length: int,
        parse_error: str = "",
    ):
        super().__init__(
            message,
            {
                "parse_error": parse_error or message,
                "raw_preview": raw_preview,
                "raw_length": raw_length,
                "chunk_index": chunk_index,
                "chunk_count": chunk_count,
            },
        )
        self.chunk_index = chunk_index
        self.chunk_count = chunk_count
        self.raw_preview = raw_preview
        self.raw_length = raw_length
        self.parse_error = parse_error or message


class ExtractionValidationError(ExtractionError):
    """Decoded extraction result is empty or missing required fields."""

    def __init__(self, errors: List[str]):
        super().__init__("；".join(errors), {"errors": list(errors)})
        self.errors = list(errors)


class AlignmentPreconditionError(SafetyKGError):
    """Alignment was requested for a task without draft entities."""


class EmbeddingProviderError(SafetyKGError):
    """The embedding endpoint failed; alignment degrades instead of failing."""


class GraphErrorCategory(str, Enum):
    """Categories used to report graph backend failures."""

    AUTH = "auth"
    UNAVAILABLE = "unavailable"
    MISSING_CAPABILITY = "missing_capability"
    UNKNOWN = "unknown"


class GraphBackendError(SafetyKGError):
    """Categorized Neo4j failure."""

    def __init__(
        self,
        message: str,
        category: GraphErrorCategory = GraphErrorCategory.UNKNOWN,
        *,
        status_code: Optional[int] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, {"category": category.value})
        self.category = category
        self.status_code = status_code or (
            500 if category == GraphErrorCategory.UNKNOWN else 503
        )
        self.cause = cause


class TaskNotFoundError(SafetyKGError):
    """No build task with the given id."""


class InvalidTaskTransitionError(SafetyKGError):
    """A build task was asked to move to a state it cannot reach."""


class OntologyNotFoundError(SafetyKGError):
    """No ontology with the given id."""
