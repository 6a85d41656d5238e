"""Chunked LLM knowledge extraction.

The combined document text is split at paragraph boundaries, each chunk is
sent with the same system prompt, and the decoded chunk results are merged
and deduplicated into a single :class:`ExtractionResult`.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from safetykg.errors import ExtractionDecodeError, LLMUnavailableError
from safetykg.extraction.chunker import split_into_chunks
from safetykg.extraction.json_decode import ModelJSONError, decode_model_json
from safetykg.extraction.models import ExtractionResult
from safetykg.extraction.prompts import PromptLibrary
from safetykg.storage.schemas import OntologyLibrary
from safetykg.utils.config import ExtractionConfig
from safetykg.utils.llm_client import ChatClient

RAW_PREVIEW_CHARS = 2000


def merge_chunk_results(
    results: Iterable[ExtractionResult], default_confidence: float = 0.8
) -> ExtractionResult:
    """Concatenate chunk results and deduplicate.

    - entity types by name (last definition wins)
    - relation types by (name, source type, target type) (last wins)
    - entities by (name, type), keeping the highest confidence
    - relations by (source, type, target), keeping the first
    """
    entity_types: Dict[str, Any] = {}
    relation_types: Dict[Tuple[str, str, str], Any] = {}
    entities: Dict[Tuple[str, str], Any] = {}
    relations: Dict[Tuple[str, str, str], Any] = {}

    for result in results:
        for entity_type in result.entity_types:
            entity_types[entity_type.name] = entity_type
        for relation_type in result.relation_types:
            key = (relation_type.name, relation_type.source_type, relation_type.target_type)
            relation_types[key] = relation_type
        for entity in result.entities:
            if entity.confidence is None:
                entity = entity.model_copy(update={"confidence": default_confidence})
            key = (entity.name, entity.type)
            existing = entities.get(key)
            if existing is None or entity.confidence > existing.confidence:
                entities[key] = entity
        for relation in result.relations:
            relations.setdefault((relation.source, relation.type, relation.target), relation)

    return ExtractionResult(
        entity_types=list(entity_types.values()),
        entities=list(entities.values()),
        relation_types=list(relation_types.values()),
        relations=list(relations.values()),
    )


class LLMExtractor:
    """Run the extraction prompt over every chunk of a text."""

    def __init__(
        self,
        chat_client: ChatClient,
        config: Optional[ExtractionConfig] = None,
        prompts: Optional[PromptLibrary] = None,
        *,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config or ExtractionConfig()
        self.chat_client = chat_client
        self.prompts = prompts or PromptLibrary(self.config.prompt_template)
        self._sleep = sleep_fn or time.sleep

        logger.info(
            "Initialized LLMExtractor",
            provider=chat_client.config.provider,
            model=chat_client.model,
            chunk_max_chars=self.config.chunk_max_chars,
        )

    @property
    def model(self) -> str:
        return self.chat_client.model

    def extract(
        self, text: str, *, ontology: Optional[OntologyLibrary] = None
    ) -> Tuple[ExtractionResult, Dict[str, Any]]:
        """Extract from ``text``; returns the merged result and run metadata.

        Raises:
            LLMUnavailableError: If the model cannot be reached for a chunk
            ExtractionDecodeError: If a chunk's response is not decodable JSON
        """
        chunks = split_into_chunks(text, self.config.chunk_max_chars)
        meta: Dict[str, Any] = {
            "model": self.model,
            "input_chars": len(text),
            "chunk_count": len(chunks),
        }
        if not chunks:
            return ExtractionResult(), meta

        system = self.prompts.system_prompt(ontology)
        results: List[ExtractionResult] = []
        for index, chunk in enumerate(chunks):
            user = self.prompts.user_message(chunk, index, len(chunks))
            content = self._call_with_retry(system, user, index, len(chunks))
            results.append(self._decode(content, index, len(chunks)))
            logger.debug(
                f"Chunk {index + 1}/{len(chunks)}: {len(results[-1].entities)} entities, "
                f"{len(results[-1].relations)} relations"
            )

        merged = merge_chunk_results(results, self.config.default_confidence)
        logger.info(
            f"LLM extraction finished: {len(merged.entities)} entities, "
            f"{len(merged.relations)} relations from {len(chunks)} chunks"
        )
        return merged, meta

    def _call_with_retry(self, system: str, user: str, index: int, count: int) -> str:
        attempts = max(1, self.chat_client.config.retry_attempts)
        delay = self.chat_client.config.retry_delay_seconds
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        last_error: str = "empty response"

        for attempt in range(1, attempts + 1):
            try:
                content = self.chat_client.complete(messages)
            except LLMUnavailableError:
                raise
            except Exception as exc:  # noqa: BLE001
                last_error = str(exc)
                logger.warning(
                    "LLM request failed",
                    chunk=index + 1,
                    attempt=attempt,
                    max_attempts=attempts,
                    error=last_error,
                )
            else:
                if content and content.strip():
                    return content
                last_error = "empty response"
                logger.warning(
                    "LLM returned empty content", chunk=index + 1, attempt=attempt
                )
            if attempt < attempts:
                self._sleep(delay)

        raise LLMUnavailableError(
            f"第 {index + 1}/{count} 个文档片段调用模型失败: {last_error}",
            {"chunk_index": index, "chunk_count": count, "attempts": attempts},
        )

    def _decode(self, content: str, index: int, count: int) -> ExtractionResult:
        try:
            data = decode_model_json(content)
        except ModelJSONError as exc:
            logger.error(f"Failed to decode chunk {index + 1}/{count}: {exc}")
            raise ExtractionDecodeError(
                f"模型输出无法解析为 JSON (片段 {index + 1}/{count}): {exc}",
                chunk_index=index,
                chunk_count=count,
                raw_preview=content[:RAW_PREVIEW_CHARS],
                raw_length=len(content),
                parse_error=str(exc),
            ) from exc
        return ExtractionResult.model_validate(data)
