"""Extraction stage: parsed documents -> draft ontology, entities and relations."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from safetykg.errors import (
    ExtractionDecodeError,
    ExtractionValidationError,
    LLMUnavailableError,
)
from safetykg.extraction.llm_extractor import LLMExtractor
from safetykg.extraction.models import ExtractionResult
from safetykg.extraction.risk_register import RiskRegisterExtractor
from safetykg.ingestion.models import ParsedDocument
from safetykg.storage.repositories import OntologyRepository, TaskRepository
from safetykg.storage.schemas import (
    BuildTask,
    DraftEntity,
    DraftOntology,
    DraftRelation,
    EntityTypeDef,
    NewSuggestion,
    OntologyLibrary,
    RelationTypeDef,
    TaskStatus,
    utcnow,
)
from safetykg.utils.config import ExtractionConfig

STAGE_EXTRACTING = "正在提取知识..."
STAGE_ALIGNING = "正在进行实体对齐..."
STAGE_DECODE_FAILED = "知识抽取失败"
STAGE_NO_RESULT = "知识抽取未得到有效结果"


def combine_documents(documents: Sequence[ParsedDocument]) -> str:
    """Join document texts with a file banner, separated by horizontal rules."""
    parts = [
        f"[文件: {doc.filename or doc.file_id or '未命名'}]\n{doc.text}"
        for doc in documents
        if doc.text and doc.text.strip()
    ]
    return "\n\n---\n\n".join(parts)


def validate_extraction(result: ExtractionResult) -> List[str]:
    """Human-readable problems that make a result unusable; empty when valid."""
    errors: List[str] = []
    if not result.entities:
        errors.append("未提取到任何实体")
    for index, entity in enumerate(result.entities):
        if not entity.name:
            errors.append(f"实体[{index}]缺少名称")
        if not entity.type:
            errors.append(f"实体[{index}]缺少类型")
    for index, relation in enumerate(result.relations):
        if not relation.source:
            errors.append(f"关系[{index}]缺少源实体")
        if not relation.target:
            errors.append(f"关系[{index}]缺少目标实体")
        if not relation.type:
            errors.append(f"关系[{index}]缺少关系类型")
    return errors


class ExtractionService:
    """Drive the extracting stage of a build task.

    The LLM path runs first. When it yields no entities (or the model is not
    reachable) and a spreadsheet has the risk-register layout, the rule-based
    extractor is used instead. The result must pass :func:`validate_extraction`
    before any draft is written to the task.
    """

    def __init__(
        self,
        tasks: TaskRepository,
        ontologies: OntologyRepository,
        llm_extractor: Optional[LLMExtractor],
        config: Optional[ExtractionConfig] = None,
        *,
        risk_register: Optional[RiskRegisterExtractor] = None,
        clock: Any = None,
    ) -> None:
        self.tasks = tasks
        self.ontologies = ontologies
        self.llm_extractor = llm_extractor
        self.config = config or ExtractionConfig()
        self.risk_register = risk_register or RiskRegisterExtractor()
        self._clock = clock or time.time

    def extract_from_documents(
        self,
        task_id: str,
        documents: Sequence[ParsedDocument],
        *,
        ontology_mode: str = "auto",
        ontology_id: Optional[str] = None,
    ) -> Dict[str, int]:
        """Extract drafts for ``task_id`` and advance it to ``aligning``.

        Raises:
            ExtractionDecodeError: Model output for a chunk was not decodable
            ExtractionValidationError: No usable entities were produced
        """
        task = self.tasks.require(task_id)
        task.transition_to(TaskStatus.EXTRACTING, progress=30, stage_message=STAGE_EXTRACTING)
        self.tasks.save(task)

        started_at = utcnow()
        text = combine_documents(documents)
        ontology = self._resolve_ontology(ontology_mode, ontology_id)

        meta: Dict[str, Any] = {
            "model": self.llm_extractor.model if self.llm_extractor else None,
            "file_count": len(documents),
            "input_chars": len(text),
            "chunk_count": 0,
            "fallback": False,
            "started_at": started_at.isoformat(),
        }

        result = ExtractionResult()
        llm_error: Optional[LLMUnavailableError] = None
        if self.llm_extractor is not None and self.config.enable_llm:
            try:
                result, run_meta = self.llm_extractor.extract(text, ontology=ontology)
                meta.update(run_meta)
            except LLMUnavailableError as exc:
                logger.warning(f"LLM extraction unavailable for task {task_id}: {exc}")
                llm_error = exc
            except ExtractionDecodeError as exc:
                self._fail_decode(task, exc, meta)
                raise
        else:
            llm_error = LLMUnavailableError("LLM extraction is disabled")

        if not result.entities and self.config.enable_risk_register_fallback:
            fallback = self.risk_register.extract_documents(documents)
            if fallback is not None:
                result = fallback
                meta["fallback"] = True
                meta["fallback_extractor"] = "risk_register"

        errors = validate_extraction(result)
        if errors:
            if llm_error is not None and not meta["fallback"]:
                errors.insert(0, f"模型调用失败: {llm_error.message}")
            self._fail_validation(task, errors, meta)
            raise ExtractionValidationError(errors)

        self._write_drafts(task, result, meta)
        return {
            "entity_count": len(task.draft_entities),
            "relation_count": len(task.draft_relations),
        }

    def _resolve_ontology(self, mode: str, ontology_id: Optional[str]) -> Optional[OntologyLibrary]:
        if mode == "existing" and ontology_id:
            return self.ontologies.require(ontology_id)
        if ontology_id:
            return self.ontologies.get(ontology_id)
        return self.ontologies.get_default() if mode == "existing" else None

    def _fail_decode(self, task: BuildTask, exc: ExtractionDecodeError, meta: Dict[str, Any]) -> None:
        task.extraction_debug = dict(exc.details)
        task.extraction_meta = {**meta, "finished_at": utcnow().isoformat()}
        task.fail(exc.message, stage_message=STAGE_DECODE_FAILED)
        self.tasks.save(task)
        logger.error(f"Task {task.id} failed to decode model output: {exc.parse_error}")

    def _fail_validation(self, task: BuildTask, errors: List[str], meta: Dict[str, Any]) -> None:
        task.draft_ontology = DraftOntology()
        task.draft_entities = []
        task.draft_relations = []
        task.extraction_meta = {
            **meta,
            "entity_count": 0,
            "relation_count": 0,
            "finished_at": utcnow().isoformat(),
        }
        task.fail("；".join(errors), stage_message=STAGE_NO_RESULT, progress=40)
        self.tasks.save(task)
        logger.warning(f"Task {task.id} extraction produced no valid result: {errors[:3]}")

    def _write_drafts(self, task: BuildTask, result: ExtractionResult, meta: Dict[str, Any]) -> None:
        stamp = int(self._clock() * 1000)
        default_confidence = self.config.default_confidence

        task.draft_ontology = DraftOntology(
            entity_types=[
                EntityTypeDef(name=et.name, description=et.description)
                for et in result.entity_types
                if et.name
            ],
            relation_types=[
                RelationTypeDef(
                    name=rt.name,
                    source_type=rt.source_type,
                    target_type=rt.target_type,
                    description=rt.description,
                )
                for rt in result.relation_types
                if rt.name
            ],
        )
        task.draft_entities = [
            DraftEntity(
                id=f"entity_{stamp}_{index}",
                name=entity.name,
                type=entity.type,
                properties=entity.properties,
                source_context=entity.context,
                confidence=default_confidence if entity.confidence is None else entity.confidence,
                alignment_suggestion=NewSuggestion(),
            )
            for index, entity in enumerate(result.entities)
        ]
        task.draft_relations = [
            DraftRelation(
                id=f"relation_{stamp}_{index}",
                source=relation.source,
                target=relation.target,
                relation_type=relation.type,
                properties=relation.properties,
                confidence=default_confidence if relation.confidence is None else relation.confidence,
                source_context=relation.context,
            )
            for index, relation in enumerate(result.relations)
        ]
        task.extraction_debug = None
        task.extraction_meta = {
            **meta,
            "entity_count": len(task.draft_entities),
            "relation_count": len(task.draft_relations),
            "finished_at": utcnow().isoformat(),
        }
        task.transition_to(TaskStatus.ALIGNING, progress=60, stage_message=STAGE_ALIGNING)
        self.tasks.save(task)
        logger.success(
            f"Task {task.id}: extracted {len(task.draft_entities)} entities and "
            f"{len(task.draft_relations)} relations"
            + (" (risk-register fallback)" if meta.get("fallback") else "")
        )
