"""Parsed document representation shared by the format readers."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

FileType = Literal["excel", "word", "pdf", "txt"]

CellValue = str | int | float | bool | None
Row = Dict[str, CellValue]


class SheetData(BaseModel):
    """One spreadsheet sheet after header detection."""

    model_config = ConfigDict(extra="forbid")

    name: str
    headers: List[str] = Field(default_factory=list)
    header_row_index: int = 0
    rows: List[Row] = Field(default_factory=list)
    text: str = ""


class ParsedDocument(BaseModel):
    """Normalized text (and optional tabular rows) for one uploaded file."""

    model_config = ConfigDict(extra="forbid")

    type: FileType
    text: str = ""
    preview: str = ""
    structured_rows: Optional[List[Row]] = None
    sheets: List[SheetData] = Field(default_factory=list)
    filename: str = ""
    file_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_tabular(self) -> bool:
        return self.type == "excel" and bool(self.sheets)
