"""Alignment stage: classify each draft entity as new, merge or candidate."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from safetykg.errors import AlignmentPreconditionError, EmbeddingProviderError
from safetykg.storage.repositories import TaskRepository
from safetykg.storage.schemas import (
    AlignmentSuggestion,
    CandidateSuggestion,
    DraftEntity,
    MergeSuggestion,
    NewSuggestion,
    SimilarEntity,
    TaskStatus,
)
from safetykg.utils.config import AlignmentConfig
from safetykg.utils.embeddings import EmbeddingGenerator

STAGE_NO_ENTITIES = "未抽取到实体，无法对齐"
ERROR_NO_ENTITIES = "未提取到任何实体，无法对齐"
STAGE_DEGRADED = "正在进行实体对齐...（Embedding 不可用，已降级）"
STAGE_DONE = "对齐完成，等待用户确认"
DEGRADED_SUFFIX = "（Embedding 已降级）"


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity; 0.0 for mismatched lengths or zero vectors."""
    return EmbeddingGenerator.cosine_similarity(a, b)


def embedding_text(entity: DraftEntity) -> str:
    return f"{entity.name} {entity.type} {entity.description} {entity.source_context}".strip()


def property_similarity(first: DraftEntity, second: DraftEntity) -> float:
    """Share of identical property values, relative to the larger property set."""
    if not first.properties or not second.properties:
        return 0.0
    common = set(first.properties) & set(second.properties)
    matching = [key for key in common if first.properties[key] == second.properties[key]]
    return len(matching) / max(len(first.properties), len(second.properties))


def merge_entities(
    first: DraftEntity,
    second: DraftEntity,
    strategy: Literal["union", "intersection"] = "union",
) -> DraftEntity:
    """Collapse ``second`` into ``first``; ``first`` keeps its id and wins conflicts."""
    if strategy == "union":
        properties = {**second.properties, **first.properties}
    elif strategy == "intersection":
        properties = {k: v for k, v in first.properties.items() if k in second.properties}
    else:
        raise ValueError(f"Unknown merge strategy: {strategy}")

    return first.model_copy(
        update={
            "name": first.name or second.name,
            "type": first.type or second.type,
            "properties": properties,
            "confidence": max(first.confidence, second.confidence),
        }
    )


class AlignmentService:
    """Embed draft entities and suggest merges among same-type peers.

    Only entities of the same task are compared. Matching against nodes that
    already exist in the graph is not done here.
    """

    def __init__(
        self,
        tasks: TaskRepository,
        embedder: Optional[EmbeddingGenerator],
        config: Optional[AlignmentConfig] = None,
    ) -> None:
        self.tasks = tasks
        self.embedder = embedder
        self.config = config or AlignmentConfig()

    def align_entities(self, task_id: str) -> Dict[str, Any]:
        """Write an alignment suggestion onto every draft entity of the task.

        Raises:
            AlignmentPreconditionError: If the task has no draft entities
        """
        task = self.tasks.require(task_id)
        if not task.draft_entities:
            task.fail(ERROR_NO_ENTITIES, stage_message=STAGE_NO_ENTITIES, progress=70)
            self.tasks.save(task)
            raise AlignmentPreconditionError(ERROR_NO_ENTITIES, {"task_id": task_id})

        vectors, degraded = self._embed_entities([embedding_text(e) for e in task.draft_entities])
        if degraded:
            task.set_stage(STAGE_DEGRADED)
            self.tasks.save(task)

        suggestions = self.classify(task.draft_entities, vectors)
        task.draft_entities = [
            entity.model_copy(update={"alignment_suggestion": suggestion})
            for entity, suggestion in zip(task.draft_entities, suggestions)
        ]
        task.transition_to(
            TaskStatus.CONFIRMING,
            progress=90,
            stage_message=STAGE_DONE + (DEGRADED_SUFFIX if degraded else ""),
        )
        self.tasks.save(task)

        counts = {"new": 0, "merge": 0, "candidate": 0}
        for suggestion in suggestions:
            counts[suggestion.type] += 1
        summary = {
            "entity_count": len(suggestions),
            "new_count": counts["new"],
            "merge_count": counts["merge"],
            "candidate_count": counts["candidate"],
            "degraded": degraded,
        }
        logger.success(f"Task {task_id} aligned: {summary}")
        return summary

    def classify(
        self, entities: Sequence[DraftEntity], vectors: Sequence[np.ndarray]
    ) -> List[AlignmentSuggestion]:
        """Suggestion per entity, comparing only against same-type peers."""
        by_type: Dict[str, List[int]] = defaultdict(list)
        for index, entity in enumerate(entities):
            by_type[entity.type].append(index)

        suggestions: List[AlignmentSuggestion] = []
        for index, entity in enumerate(entities):
            candidates = self._find_candidates(index, by_type[entity.type], entities, vectors)
            suggestions.append(self._decide(entity, candidates))
        return suggestions

    def _find_candidates(
        self,
        index: int,
        peer_indices: Sequence[int],
        entities: Sequence[DraftEntity],
        vectors: Sequence[np.ndarray],
    ) -> List[SimilarEntity]:
        candidates: List[SimilarEntity] = []
        for peer in peer_indices:
            if peer == index:
                continue
            similarity = cosine_similarity(vectors[index], vectors[peer])
            if similarity >= self.config.candidate_threshold:
                candidates.append(
                    SimilarEntity(
                        id=entities[peer].id, name=entities[peer].name, similarity=similarity
                    )
                )
        candidates.sort(key=lambda c: c.similarity, reverse=True)
        return candidates[: self.config.max_candidates]

    def _decide(self, entity: DraftEntity, candidates: List[SimilarEntity]) -> AlignmentSuggestion:
        if not candidates:
            return NewSuggestion()
        best = candidates[0]
        # Same literal name merges regardless of score; this can over-merge
        # distinct entities that share a name.
        if best.similarity >= self.config.auto_merge_threshold or best.name == entity.name:
            return MergeSuggestion(target_entity=best)
        return CandidateSuggestion(candidates=candidates)

    def _embed_entities(self, texts: List[str]) -> Tuple[List[np.ndarray], bool]:
        """Embed in batches; failed batches become zero vectors."""
        vectors: List[np.ndarray] = []
        degraded = False
        dimension = self.config.default_dimension
        batch_size = max(1, self.config.batch_size)

        for start in range(0, len(texts), batch_size):
            batch = texts[start : start + batch_size]
            try:
                if self.embedder is None:
                    raise EmbeddingProviderError("No embedding provider configured")
                embedded = self.embedder.generate(batch)
                if len(embedded) != len(batch):
                    raise EmbeddingProviderError(
                        f"Expected {len(batch)} embeddings, got {len(embedded)}"
                    )
            except EmbeddingProviderError as exc:
                logger.warning(
                    f"Embedding batch {start // batch_size + 1} failed, using zero vectors: {exc}"
                )
                degraded = True
                embedded = [np.zeros(dimension, dtype=np.float32) for _ in batch]
            else:
                dimension = len(embedded[0]) if embedded else dimension
            vectors.extend(np.asarray(v, dtype=np.float32) for v in embedded)

        return vectors, degraded
