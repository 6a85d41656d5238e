"""Document parsing for uploaded files."""

from safetykg.ingestion.document_parser import DocumentParser
from safetykg.ingestion.models import ParsedDocument, SheetData

__all__ = ["DocumentParser", "ParsedDocument", "SheetData"]
