"""Spreadsheet reading with header-row detection.

Risk registers rarely start at row one: there is usually a title row, a
blank line or two, a header row and sometimes a second header row that splits
a merged cell (e.g. ``风险等级评价`` over ``L``/``E``/``C``). Each candidate row
among the first few is scored and the best one is used as the header.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from loguru import logger

from safetykg.ingestion.models import CellValue, Row, SheetData

RISK_REGISTER_KEYWORDS = (
    "风险单元",
    "作业活动",
    "危险",
    "触发因素",
    "后果",
    "控制措施",
    "风险等级",
    "风险值",
    "部门",
    "危险源",
    "风险点",
)

HEADER_KEYWORDS = (
    "序号",
    "编号",
    "名称",
    "类型",
    "类别",
    "描述",
    "说明",
    "内容",
    "备注",
    "日期",
    "时间",
    "负责人",
    "措施",
    "等级",
)

SUB_HEADER_KEYWORDS = frozenset(
    {
        "L",
        "E",
        "C",
        "D",
        "S",
        "R",
        "可能性",
        "严重性",
        "暴露频率",
        "风险值",
        "等级",
        "级别",
        "工程技术",
        "管理措施",
        "培训教育",
        "个体防护",
        "应急处置",
    }
)

LONG_CELL_CHARS = 40
_NUMBER_RE = re.compile(r"^[+-]?\d+(\.\d+)?$")


def clean_cell(value: Any) -> CellValue:
    """Normalize a raw spreadsheet cell; empty cells become None."""
    if value is None:
        return None
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NaT:
        return None
    if isinstance(value, (pd.Timestamp, datetime)):
        if (value.hour, value.minute, value.second) == (0, 0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    return text or None


def _cell_text(value: CellValue) -> str:
    return "" if value is None else str(value).strip()


def _is_number(text: str) -> bool:
    return bool(_NUMBER_RE.match(text.strip()))


def score_header_row(cells: Sequence[CellValue]) -> int:
    """Score how much a row looks like a header row."""
    values = [_cell_text(c) for c in cells if _cell_text(c)]
    if not values:
        return 0

    score = 2 * len(values) + len(set(values))
    for value in values:
        if any(keyword in value for keyword in RISK_REGISTER_KEYWORDS):
            score += 4
        elif any(keyword in value for keyword in HEADER_KEYWORDS):
            score += 2

    if _is_number(values[0]):
        score -= 6
    score -= 4 * sum(1 for value in values if len(value) > LONG_CELL_CHARS)
    return score


def detect_header_row(rows: Sequence[Sequence[CellValue]], scan_rows: int = 30) -> int:
    """Index of the best-scoring row among the first ``scan_rows``; ties go to the earliest."""
    best_index = 0
    best_score: Optional[int] = None
    for index, row in enumerate(rows[: max(1, scan_rows)]):
        if not any(_cell_text(c) for c in row):
            continue
        score = score_header_row(row)
        if best_score is None or score > best_score:
            best_index, best_score = index, score
    return best_index


def is_sub_header(row: Sequence[CellValue], header: Sequence[CellValue]) -> bool:
    """Whether ``row`` is a second header line under ``header``."""
    non_empty = [(i, _cell_text(c)) for i, c in enumerate(row) if _cell_text(c)]
    if not non_empty:
        return False
    texts = [text for _, text in non_empty]
    if any(_is_number(text) for text in texts):
        return False
    if 2 * sum(1 for text in texts if text in SUB_HEADER_KEYWORDS) >= len(texts):
        return True
    return all(i >= len(header) or not _cell_text(header[i]) for i, _ in non_empty)


def build_headers(
    header: Sequence[CellValue], width: int, sub_header: Optional[Sequence[CellValue]] = None
) -> List[str]:
    headers: List[str] = []
    seen: Dict[str, int] = {}
    parent = ""
    for i in range(width):
        main = _cell_text(header[i]) if i < len(header) else ""
        sub = _cell_text(sub_header[i]) if sub_header is not None and i < len(sub_header) else ""
        if main:
            parent = main
        if main and sub:
            name = f"{main}-{sub}"
        elif main:
            name = main
        elif sub:
            name = f"{parent}-{sub}" if parent else sub
        else:
            name = f"列{i + 1}"

        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        headers.append(name)
    return headers


def sheet_to_text(sheet: SheetData, max_rows: int = 2000) -> str:
    """Render one sheet as the line-per-row text fed to the model."""
    lines = [
        f"[Sheet: {sheet.name}]",
        f"表头: {', '.join(sheet.headers)}",
        f"数据行数: {len(sheet.rows)}",
        "",
    ]
    for index, row in enumerate(sheet.rows[:max_rows], start=1):
        cells = " | ".join(f"{key}: {value}" for key, value in row.items())
        lines.append(f"[行{index}] {cells}")
        lines.append("")
    if len(sheet.rows) > max_rows:
        lines.append(f"... 还有 {len(sheet.rows) - max_rows} 行数据 ...")
        lines.append("")
    return "\n".join(lines)


def rows_to_sheet(
    name: str,
    raw_rows: Sequence[Sequence[Any]],
    *,
    scan_rows: int = 30,
    max_rows: int = 2000,
) -> Optional[SheetData]:
    """Turn raw cell rows into a :class:`SheetData`; None for an empty sheet."""
    rows = [[clean_cell(v) for v in row] for row in raw_rows]
    if not any(_cell_text(c) for row in rows for c in row):
        return None

    header_index = detect_header_row(rows, scan_rows)
    header = rows[header_index]
    data_start = header_index + 1

    sub_header = None
    if data_start < len(rows) and is_sub_header(rows[data_start], header):
        sub_header = rows[data_start]
        data_start += 1

    data_rows = [row for row in rows[data_start:] if any(_cell_text(c) for c in row)]

    width = 0
    header_rows = [header] if sub_header is None else [header, sub_header]
    for row in header_rows + data_rows:
        filled = [i for i, c in enumerate(row) if _cell_text(c)]
        if filled:
            width = max(width, filled[-1] + 1)

    headers = build_headers(header, width, sub_header)
    records: List[Row] = []
    for row in data_rows:
        record: Row = {}
        for i, value in enumerate(row[:width]):
            if _cell_text(value):
                record[headers[i]] = value
        if record:
            records.append(record)

    sheet = SheetData(name=name, headers=headers, header_row_index=header_index, rows=records)
    sheet.text = sheet_to_text(sheet, max_rows)
    logger.debug(
        f"Sheet '{name}': header row {header_index + 1}, "
        f"{len(headers)} columns, {len(records)} rows"
    )
    return sheet


class ExcelParser:
    """Read `.xlsx`/`.xls` workbooks via pandas (openpyxl / xlrd engines)."""

    def __init__(self, scan_rows: int = 30, max_rows: int = 2000) -> None:
        self.scan_rows = scan_rows
        self.max_rows = max_rows

    def parse_file(self, path: Path | str) -> List[SheetData]:
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        frames: Dict[str, pd.DataFrame] = pd.read_excel(
            file_path, sheet_name=None, header=None, dtype=object
        )
        sheets: List[SheetData] = []
        for name, frame in frames.items():
            raw_rows = frame.astype(object).where(frame.notna(), None).values.tolist()
            sheet = rows_to_sheet(
                str(name), raw_rows, scan_rows=self.scan_rows, max_rows=self.max_rows
            )
            if sheet is not None:
                sheets.append(sheet)
        logger.info(f"Parsed workbook {file_path.name}: {len(sheets)} non-empty sheets")
        return sheets
