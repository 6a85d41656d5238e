"""Extraction package exports."""

from safetykg.extraction.llm_extractor import LLMExtractor, merge_chunk_results
from safetykg.extraction.models import ExtractionResult
from safetykg.extraction.risk_register import RiskRegisterExtractor
from safetykg.extraction.service import ExtractionService

__all__ = [
    "ExtractionResult",
    "ExtractionService",
    "LLMExtractor",
    "RiskRegisterExtractor",
    "merge_chunk_results",
]
