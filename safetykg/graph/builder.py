"""Write confirmed drafts into the graph and serve graph reads."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from loguru import logger

from safetykg.errors import GraphBackendError, GraphErrorCategory
from safetykg.storage.graph_store import GraphStore
from safetykg.storage.neo4j_manager import categorize_neo4j_error
from safetykg.storage.repositories import FileRepository, TaskRepository
from safetykg.storage.schemas import (
    DraftEntity,
    DraftRelation,
    FileStatus,
    MergeSuggestion,
    TaskStatus,
    UserModifications,
    apply_field_updates,
    utcnow,
)
from safetykg.storage.upsert_strategies import EntityWrite, RelationWrite
from safetykg.utils.config import GraphConfig

STAGE_BUILDING = "正在写入图数据库..."
STAGE_DONE = "构建完成"
STAGE_FAILED = "图谱构建失败"
ERROR_INVALID_MODIFICATIONS = "修改内容无效"


def apply_modifications(
    entities: Sequence[DraftEntity],
    relations: Sequence[DraftRelation],
    modifications: Optional[UserModifications],
) -> Tuple[List[DraftEntity], List[DraftRelation]]:
    """Apply reviewer edits to copies of the drafts.

    Order: deletions, entity edits, relation edits, additions. The stored
    drafts are never mutated.
    """
    entity_list = [entity.model_copy(deep=True) for entity in entities]
    relation_list = [relation.model_copy(deep=True) for relation in relations]
    if modifications is None or modifications.is_empty():
        return entity_list, relation_list

    deleted_entities = set(modifications.deleted_entity_ids)
    deleted_relations = set(modifications.deleted_relation_ids)
    entity_list = [e for e in entity_list if e.id not in deleted_entities]
    relation_list = [r for r in relation_list if r.id not in deleted_relations]

    entity_edits = {edit.entity_id: edit.new_value for edit in modifications.modified_entities}
    entity_list = [
        apply_field_updates(e, entity_edits[e.id]) if e.id in entity_edits else e
        for e in entity_list
    ]
    relation_edits = {
        edit.relation_id: edit.new_value for edit in modifications.modified_relations
    }
    relation_list = [
        apply_field_updates(r, relation_edits[r.id]) if r.id in relation_edits else r
        for r in relation_list
    ]

    stamp = int(time.time() * 1000)
    for index, added in enumerate(modifications.added_entities):
        entity = added.model_copy(deep=True)
        if not entity.id:
            entity.id = f"entity_added_{stamp}_{index}"
        entity_list.append(entity)
    for index, added in enumerate(modifications.added_relations):
        relation = added.model_copy(deep=True)
        if not relation.id:
            relation.id = f"relation_added_{stamp}_{index}"
        relation_list.append(relation)

    return entity_list, relation_list


def resolve_node_keys(entities: Sequence[DraftEntity]) -> Dict[str, str]:
    """Graph node id for each entity, following merge chains.

    A merge target that also merges elsewhere is followed to the end of the
    chain. Targets outside the batch are used as given. A cycle collapses
    onto its member that comes first in draft order.
    """
    by_id = {entity.id: entity for entity in entities}
    order = {entity.id: index for index, entity in enumerate(entities)}
    keys: Dict[str, str] = {}

    for entity in entities:
        path = [entity.id]
        current = entity
        while isinstance(current.alignment_suggestion, MergeSuggestion):
            target = current.alignment_suggestion.target_entity.id
            if target in path:
                cycle = path[path.index(target) :]
                keys[entity.id] = min(cycle, key=lambda member: order[member])
                break
            path.append(target)
            if target not in by_id:
                keys[entity.id] = target
                break
            current = by_id[target]
        else:
            keys[entity.id] = current.id
    return keys


class GraphBuilder:
    """Build confirmed tasks into the graph and answer graph queries."""

    def __init__(
        self,
        store: GraphStore,
        tasks: TaskRepository,
        files: Optional[FileRepository] = None,
        config: Optional[GraphConfig] = None,
    ) -> None:
        self.store = store
        self.tasks = tasks
        self.files = files
        self.config = config or GraphConfig()

    def build_graph(
        self,
        task_id: str,
        modifications: Union[UserModifications, Dict[str, Any], None] = None,
    ) -> Dict[str, Any]:
        """Write a confirming task's drafts (after reviewer edits) to the graph.

        Raises:
            TaskNotFoundError: Unknown task
            InvalidTaskTransitionError: Task is not awaiting confirmation
            ValueError: An edit produces an invalid entity or relation; the task is marked failed
            GraphBackendError: Write failed (any backend exception is categorized); the task is marked failed first
        """
        if isinstance(modifications, dict):
            modifications = UserModifications.model_validate(modifications)

        task = self.tasks.require(task_id)
        task.transition_to(TaskStatus.BUILDING, progress=95, stage_message=STAGE_BUILDING)
        task.user_modifications = modifications
        task.confirmed_at = utcnow()
        self.tasks.save(task)

        try:
            entities, relations = apply_modifications(
                task.draft_entities, task.draft_relations, modifications
            )
        except ValueError as exc:
            logger.error(f"Invalid modifications for task {task_id}: {exc}")
            self._fail(task_id, f"{ERROR_INVALID_MODIFICATIONS}: {exc}")
            raise

        try:
            self.store.connect()
            entity_stats, lookup = self._write_entities(entities, task.file_ids)
            relation_stats = self._write_relations(relations, lookup)
        except Exception as exc:
            error = categorize_neo4j_error(exc)
            logger.error(f"Graph build for task {task_id} failed: {error.message}")
            self._fail(task_id, error.message)
            if error is exc:
                raise
            raise error from exc

        stats = {**entity_stats, **relation_stats}
        task = self.tasks.require(task_id)
        task.build_stats = stats
        task.transition_to(TaskStatus.COMPLETED, progress=100, stage_message=STAGE_DONE)
        self.tasks.save(task)

        if self.files is not None:
            for file_id in task.file_ids:
                self.files.set_status(file_id, FileStatus.COMPLETED)

        logger.success(f"Task {task_id} built: {stats}")
        return {
            "entity_count": stats["entity_count"],
            "relation_count": stats["relation_count"],
            "stats": stats,
        }

    def _fail(self, task_id: str, message: str) -> None:
        task = self.tasks.require(task_id)
        task.fail(message, stage_message=STAGE_FAILED)
        self.tasks.save(task)

    def _write_entities(
        self, entities: Sequence[DraftEntity], file_ids: Sequence[str]
    ) -> Tuple[Dict[str, int], Dict[str, str]]:
        keys = resolve_node_keys(entities)
        created = updated = merged = 0
        lookup: Dict[str, str] = {}

        for entity in entities:
            node_id = keys[entity.id]
            write = EntityWrite(
                node_id=node_id,
                name=entity.name,
                type=entity.type,
                properties=dict(entity.properties),
                file_ids=list(file_ids),
            )
            if self.store.upsert_entity(write):
                created += 1
            else:
                updated += 1
            if isinstance(entity.alignment_suggestion, MergeSuggestion):
                merged += 1
            lookup.setdefault(entity.name, node_id)
            lookup.setdefault(entity.id, node_id)

        stats = {
            "entity_count": len(entities),
            "merged_count": merged,
            "new_entities": created,
            "updated_entities": updated,
        }
        return stats, lookup

    def _write_relations(
        self, relations: Sequence[DraftRelation], lookup: Dict[str, str]
    ) -> Dict[str, int]:
        written = skipped = failed = 0
        for relation in relations:
            source = lookup.get(relation.source)
            target = lookup.get(relation.target)
            if source is None or target is None:
                logger.warning(
                    f"Skipping relation {relation.source} -[{relation.relation_type}]-> "
                    f"{relation.target}: endpoint not found"
                )
                skipped += 1
                continue
            write = RelationWrite(
                source_id=source,
                target_id=target,
                type=relation.relation_type,
                properties=dict(relation.properties),
                confidence=relation.confidence,
            )
            try:
                self.store.upsert_relation(write)
            except GraphBackendError as exc:
                if exc.category != GraphErrorCategory.UNKNOWN:
                    raise
                logger.error(f"Failed to write relation {relation.id}: {exc.message}")
                failed += 1
                continue
            written += 1
        return {"relation_count": written, "skipped_relations": skipped, "failed_relations": failed}

    def query_graph(
        self,
        keyword: Optional[str] = None,
        entity_type: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """Entities matching ``keyword``/``entity_type`` plus the edges among them."""
        if limit is None:
            limit = self.config.default_query_limit
        limit = max(1, min(int(limit), self.config.max_query_limit))
        offset = max(0, int(offset))

        nodes = self.store.find_entities(keyword or None, entity_type or None, limit, offset)
        edges: List[Dict[str, Any]] = []
        try:
            edges = self.store.relations_among([node["id"] for node in nodes])
        except GraphBackendError as exc:
            logger.warning(f"Could not load edges for graph query: {exc.message}")
        return {"nodes": nodes, "edges": edges}

    def get_entity_network(self, entity_id: str, depth: int = 1) -> Optional[Dict[str, Any]]:
        depth = max(1, min(int(depth), self.config.max_network_depth))
        return self.store.entity_network(entity_id, depth)

    def get_graph_stats(self) -> Dict[str, Any]:
        return self.store.stats()

    def search_entities(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), self.config.max_query_limit))
        return self.store.find_entities(query, None, limit, 0, name_only=True)

    def delete_task_data(self, file_ids: Sequence[str]) -> Dict[str, int]:
        """Remove the files' references; nodes no file supports anymore are deleted."""
        result = self.store.remove_file_references(list(file_ids))
        logger.info(f"Removed graph references for {len(file_ids)} files: {result}")
        return result

    def incremental_update(
        self,
        file_id: str,
        entities: Sequence[Union[DraftEntity, Dict[str, Any]]],
        relations: Sequence[Union[DraftRelation, Dict[str, Any]]] = (),
    ) -> Dict[str, int]:
        """Upsert entities and relations for one file outside the task flow.

        Entities with the same name and type as an entity already attributed
        to the file update that node.
        """
        drafts = [DraftEntity.model_validate(e) if isinstance(e, dict) else e for e in entities]
        links = [DraftRelation.model_validate(r) if isinstance(r, dict) else r for r in relations]

        self.store.connect()
        existing = {
            (node["name"], node["type"]): node["id"]
            for node in self.store.entities_for_file(file_id)
        }

        created = updated = 0
        lookup: Dict[str, str] = {}
        stamp = int(time.time() * 1000)
        for index, entity in enumerate(drafts):
            node_id = existing.get((entity.name, entity.type)) or entity.id
            node_id = node_id or f"entity_{stamp}_{index}"
            write = EntityWrite(
                node_id=node_id,
                name=entity.name,
                type=entity.type,
                properties=dict(entity.properties),
                file_ids=[file_id],
            )
            if self.store.upsert_entity(write):
                created += 1
            else:
                updated += 1
            lookup.setdefault(entity.name, node_id)
            if entity.id:
                lookup.setdefault(entity.id, node_id)

        relation_stats = self._write_relations(links, lookup)
        return {"created": created, "updated": updated, **relation_stats}
