"""Rule-based extraction for risk-register spreadsheets.

Chat models do poorly on long tabular input, so when a workbook has the
standard risk-register columns every row is mapped mechanically onto the
unit → activity → risk item → consequence chain instead.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger

from safetykg.extraction.models import (
    ExtractedEntity,
    ExtractedEntityType,
    ExtractedRelation,
    ExtractedRelationType,
    ExtractionResult,
)
from safetykg.ingestion.models import ParsedDocument, Row, SheetData

UNIT = "风险单元"
ACTIVITY = "作业活动"
RISK_ITEM = "风险项"
CONSEQUENCE = "后果"
CONTROL = "控制措施"
DEPARTMENT = "部门"

REQUIRED_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "unit": ("风险单元",),
    "activity": ("作业活动",),
    "hazard": ("危险发生的触发因素和过程描述",),
    "consequence": ("可能导致的后果",),
}

OPTIONAL_COLUMNS: Dict[str, Tuple[str, ...]] = {
    "control": ("现有控制措施", "控制措施"),
    "department": ("涉及单位或部门", "责任部门", "责任单位"),
    "level": ("风险等级",),
    "value": ("风险值",),
}

ENTITY_TYPE_DESCRIPTIONS = {
    UNIT: "开展作业的场所或单元",
    ACTIVITY: "在风险单元内开展的作业活动",
    RISK_ITEM: "危险发生的触发因素和过程",
    CONSEQUENCE: "风险可能导致的事故或伤害",
    CONTROL: "现有的风险控制措施",
    DEPARTMENT: "涉及或负责的单位、部门",
}

RELATION_TYPES = (
    ("contains", UNIT, ACTIVITY, "风险单元包含作业活动"),
    ("has-risk", ACTIVITY, RISK_ITEM, "作业活动存在风险项"),
    ("causes", RISK_ITEM, CONSEQUENCE, "风险项可能导致后果"),
    ("mitigates", CONTROL, RISK_ITEM, "控制措施管控风险项"),
    ("involves", ACTIVITY, DEPARTMENT, "作业活动涉及部门"),
)

_LIST_SPLIT = re.compile(r"[、，,；;/\n]+")
_NUMBERED_ITEM = re.compile(r"(?:^|\s)\(?\d+[.、)）]\s*")


def _normalize_header(header: str) -> str:
    return re.sub(r"\s+", "", header)


def match_columns(headers: Sequence[str]) -> Optional[Dict[str, str]]:
    """Map roles to header names; None unless every required column is present."""
    normalized = [(_normalize_header(h), h) for h in headers]
    mapping: Dict[str, str] = {}
    for role, names in {**REQUIRED_COLUMNS, **OPTIONAL_COLUMNS}.items():
        for name in names:
            found = next((orig for norm, orig in normalized if name in norm), None)
            if found is not None and found not in mapping.values():
                mapping[role] = found
                break
    if not all(role in mapping for role in REQUIRED_COLUMNS):
        return None
    return mapping


def split_list(value: str) -> List[str]:
    return [part.strip() for part in _LIST_SPLIT.split(value) if part.strip()]


def split_measures(value: str) -> List[str]:
    """Split a control-measure cell on line breaks and numbered items."""
    parts: List[str] = []
    for line in re.split(r"[\n；;]+", value):
        parts.extend(p.strip(" 。.") for p in _NUMBERED_ITEM.split(line) if p.strip(" 。."))
    return parts


class RiskRegisterExtractor:
    """Map risk-register rows onto a fixed entity and relation vocabulary."""

    def __init__(self, confidence: float = 1.0, max_context_chars: int = 200) -> None:
        self.confidence = confidence
        self.max_context_chars = max_context_chars

    def is_applicable(self, documents: Iterable[ParsedDocument]) -> bool:
        return any(self._matching_sheets(doc) for doc in documents)

    def extract_documents(self, documents: Iterable[ParsedDocument]) -> Optional[ExtractionResult]:
        """Run over all matching sheets; None when no sheet has the layout."""
        builder = _ResultBuilder(self.confidence)
        matched = 0
        for document in documents:
            for sheet, columns in self._matching_sheets(document):
                matched += 1
                for row_number, row in enumerate(sheet.rows, start=1):
                    self._map_row(builder, row, columns, self._context(sheet, row_number, row))

        if not matched:
            return None

        result = builder.build()
        logger.info(
            f"Risk-register fallback extracted {len(result.entities)} entities and "
            f"{len(result.relations)} relations from {matched} sheets"
        )
        return result

    def _matching_sheets(self, document: ParsedDocument) -> List[Tuple[SheetData, Dict[str, str]]]:
        if not document.is_tabular:
            return []
        matches = []
        for sheet in document.sheets:
            columns = match_columns(sheet.headers)
            if columns is not None:
                matches.append((sheet, columns))
        return matches

    def _context(self, sheet: SheetData, row_number: int, row: Row) -> str:
        cells = " | ".join(f"{k}: {v}" for k, v in row.items())
        return f"[{sheet.name} 行{row_number}] {cells}"[: self.max_context_chars]

    def _map_row(
        self, builder: "_ResultBuilder", row: Row, columns: Dict[str, str], context: str
    ) -> None:
        def cell(role: str) -> str:
            header = columns.get(role)
            value = row.get(header) if header else None
            return "" if value is None else str(value).strip()

        unit, activity, hazard = cell("unit"), cell("activity"), cell("hazard")
        if not hazard and not activity:
            return

        if unit:
            builder.entity(unit, UNIT, context)
        if activity:
            builder.entity(activity, ACTIVITY, context)
            if unit:
                builder.relation(unit, "contains", activity, context)

        if not hazard:
            return

        risk_properties = {"description": hazard}
        for role, key in (("level", "风险等级"), ("value", "风险值")):
            if cell(role):
                risk_properties[key] = row.get(columns[role])
        builder.entity(hazard, RISK_ITEM, context, risk_properties)
        if activity:
            builder.relation(activity, "has-risk", hazard, context)

        for consequence in split_list(cell("consequence")):
            builder.entity(consequence, CONSEQUENCE, context)
            builder.relation(hazard, "causes", consequence, context)

        for measure in split_measures(cell("control")):
            builder.entity(measure, CONTROL, context)
            builder.relation(measure, "mitigates", hazard, context)

        if activity:
            for department in split_list(cell("department")):
                builder.entity(department, DEPARTMENT, context)
                builder.relation(activity, "involves", department, context)


class _ResultBuilder:
    def __init__(self, confidence: float) -> None:
        self.confidence = confidence
        self.entities: Dict[Tuple[str, str], ExtractedEntity] = {}
        self.relations: Dict[Tuple[str, str, str], ExtractedRelation] = {}

    def entity(self, name: str, entity_type: str, context: str, properties: Optional[dict] = None) -> None:
        key = (entity_type, name)
        existing = self.entities.get(key)
        if existing is None:
            self.entities[key] = ExtractedEntity(
                name=name,
                type=entity_type,
                properties=dict(properties or {}),
                context=context,
                confidence=self.confidence,
            )
        elif properties:
            for prop, value in properties.items():
                existing.properties.setdefault(prop, value)

    def relation(self, source: str, relation_type: str, target: str, context: str) -> None:
        self.relations.setdefault(
            (source, relation_type, target),
            ExtractedRelation(
                source=source,
                target=target,
                type=relation_type,
                context=context,
                confidence=self.confidence,
            ),
        )

    def build(self) -> ExtractionResult:
        return ExtractionResult(
            entity_types=[
                ExtractedEntityType(name=name, description=description)
                for name, description in ENTITY_TYPE_DESCRIPTIONS.items()
            ],
            entities=list(self.entities.values()),
            relation_types=[
                ExtractedRelationType(
                    name=name, source_type=source, target_type=target, description=description
                )
                for name, source, target, description in RELATION_TYPES
            ],
            relations=list(self.relations.values()),
        )
