from __future__ import annotations

from typing import List
from unittest.mock import MagicMock

import pytest
from neo4j.exceptions import ServiceUnavailable
from pydantic import ValidationError

from safetykg.errors import GraphBackendError, GraphErrorCategory, InvalidTaskTransitionError
from safetykg.graph.builder import (
    ERROR_INVALID_MODIFICATIONS,
    STAGE_DONE,
    STAGE_FAILED,
    GraphBuilder,
    apply_modifications,
    resolve_node_keys,
)
from safetykg.storage.document_store import InMemoryDocumentStore
from safetykg.storage.graph_store import InMemoryGraphStore, Neo4jGraphStore
from safetykg.storage.neo4j_manager import MSG_UNAVAILABLE, Neo4jManager
from safetykg.storage.repositories import FileRepository, TaskRepository
from safetykg.storage.schemas import (
    BuildTask,
    DraftEntity,
    DraftRelation,
    FileRef,
    FileStatus,
    FileUpload,
    MergeSuggestion,
    SimilarEntity,
    TaskStatus,
    UserModifications,
)
from safetykg.storage.upsert_strategies import RelationWrite
from safetykg.utils.config import DatabaseConfig, GraphConfig


def _merge_into(target_id: str, name: str = "x") -> MergeSuggestion:
    return MergeSuggestion(target_entity=SimilarEntity(id=target_id, name=name, similarity=0.95))


def _entity(entity_id: str, name: str, entity_type: str = "设备", merge_to: str | None = None) -> DraftEntity:
    entity = DraftEntity(id=entity_id, name=name, type=entity_type, properties={"description": name})
    if merge_to is not None:
        entity.alignment_suggestion = _merge_into(merge_to)
    return entity


def _relation(relation_id: str, source: str, target: str, rel_type: str = "causes") -> DraftRelation:
    return DraftRelation(id=relation_id, source=source, target=target, relation_type=rel_type)


DRAFT_ENTITIES = [
    _entity("e0", "水泵", merge_to="e1"),
    _entity("e1", "给水泵", merge_to="e0"),
    _entity("e2", "机械伤害", "后果"),
]
DRAFT_RELATIONS = [
    _relation("r0", "水泵", "机械伤害"),
    _relation("r1", "给水泵", "机械伤害"),
    _relation("r2", "未知设备", "机械伤害"),
]


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def tasks(store: InMemoryDocumentStore) -> TaskRepository:
    return TaskRepository(store)


@pytest.fixture
def files(store: InMemoryDocumentStore) -> FileRepository:
    repo = FileRepository(store)
    repo.save(
        FileUpload(
            id="file_a",
            filename="file_a.xlsx",
            original_name="清单.xlsx",
            file_type="excel",
            file_path="/tmp/file_a.xlsx",
            status=FileStatus.PROCESSING,
        )
    )
    return repo


def _confirming(tasks: TaskRepository) -> BuildTask:
    return tasks.save(
        BuildTask(
            status=TaskStatus.CONFIRMING,
            progress=90,
            files=[FileRef(file_id="file_a", filename="清单.xlsx")],
            draft_entities=DRAFT_ENTITIES,
            draft_relations=DRAFT_RELATIONS,
        )
    )


@pytest.fixture
def confirming_task(tasks: TaskRepository) -> BuildTask:
    return _confirming(tasks)


class TestApplyModifications:
    def test_no_modifications_returns_copies(self) -> None:
        entities, relations = apply_modifications(DRAFT_ENTITIES, DRAFT_RELATIONS, None)

        entities[0].name = "改名"
        assert DRAFT_ENTITIES[0].name == "水泵"
        assert len(relations) == 3

    def test_edits_apply_in_order(self) -> None:
        modifications = UserModifications.model_validate(
            {
                "deletedEntityIds": ["e2"],
                "deletedRelationIds": ["r2"],
                "modifiedEntities": [{"entityId": "e0", "newValue": {"name": "离心泵", "id": "hijack"}}],
                "modifiedRelations": [{"relationId": "r0", "newValue": {"relationType": "has-risk"}}],
                "addedEntities": [{"name": "防护罩", "type": "控制措施"}, {"id": "keep", "name": "围栏", "type": "控制措施"}],
                "addedRelations": [{"source": "防护罩", "target": "离心泵", "relationType": "mitigates"}],
            }
        )

        entities, relations = apply_modifications(DRAFT_ENTITIES, DRAFT_RELATIONS, modifications)

        assert [e.name for e in entities] == ["离心泵", "给水泵", "防护罩", "围栏"]
        assert entities[0].id == "e0"
        assert entities[2].id.startswith("entity_added_")
        assert entities[3].id == "keep"
        assert [r.relation_type for r in relations] == ["has-risk", "causes", "mitigates"]
        assert relations[2].id.startswith("relation_added_")
        assert DRAFT_ENTITIES[0].name == "水泵"


class TestResolveNodeKeys:
    def test_chain_follows_to_end(self) -> None:
        entities = [_entity("a", "a", merge_to="b"), _entity("b", "b", merge_to="c"), _entity("c", "c")]

        assert resolve_node_keys(entities) == {"a": "c", "b": "c", "c": "c"}

    def test_cycle_collapses_to_first_member(self) -> None:
        entities = [_entity("x", "x"), _entity("b", "b", merge_to="c"), _entity("c", "c", merge_to="b")]

        assert resolve_node_keys(entities) == {"x": "x", "b": "b", "c": "b"}

    def test_tail_into_cycle(self) -> None:
        entities = [
            _entity("t", "t", merge_to="p"),
            _entity("p", "p", merge_to="q"),
            _entity("q", "q", merge_to="p"),
        ]

        assert resolve_node_keys(entities) == {"t": "p", "p": "p", "q": "p"}

    def test_self_merge_and_external_target(self) -> None:
        entities = [_entity("s", "s", merge_to="s"), _entity("d", "d", merge_to="node_existing")]

        assert resolve_node_keys(entities) == {"s": "s", "d": "node_existing"}


class TestBuildGraph:
    def test_build_writes_merged_nodes(
        self, tasks: TaskRepository, files: FileRepository, confirming_task: BuildTask
    ) -> None:
        graph = InMemoryGraphStore()
        builder = GraphBuilder(graph, tasks, files)

        result = builder.build_graph(confirming_task.id)

        assert result["stats"] == {
            "entity_count": 3,
            "merged_count": 2,
            "new_entities": 2,
            "updated_entities": 1,
            "relation_count": 2,
            "skipped_relations": 1,
            "failed_relations": 0,
        }
        assert result["entity_count"] == 3
        assert result["relation_count"] == 2

        stored = tasks.require(confirming_task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.progress == 100
        assert stored.stage_message == STAGE_DONE
        assert stored.confirmed_at is not None
        assert stored.build_stats == result["stats"]
        assert files.get("file_a").status == FileStatus.COMPLETED

        stats = graph.stats()
        assert stats["entity_count"] == 2
        assert stats["relation_count"] == 1
        network = graph.entity_network("e0", 1)
        assert network["center"]["name"] == "水泵"
        assert network["center"]["sourceFiles"] == ["file_a"]
        assert network["center"]["version"] == 2

    def test_build_applies_modifications_without_touching_drafts(
        self, tasks: TaskRepository, confirming_task: BuildTask
    ) -> None:
        graph = InMemoryGraphStore()
        modifications = {
            "deletedEntityIds": ["e2"],
            "modifiedEntities": [{"entityId": "e0", "newValue": {"name": "离心泵"}}],
            "addedEntities": [{"name": "防护罩", "type": "控制措施"}],
            "addedRelations": [{"source": "防护罩", "target": "离心泵", "relationType": "mitigates"}],
        }

        result = GraphBuilder(graph, tasks).build_graph(confirming_task.id, modifications)

        assert result["stats"]["relation_count"] == 1
        assert result["stats"]["skipped_relations"] == 3
        stored = tasks.require(confirming_task.id)
        assert [e.name for e in stored.draft_entities] == ["水泵", "给水泵", "机械伤害"]
        assert stored.user_modifications.deleted_entity_ids == ["e2"]
        assert {n["name"] for n in graph.find_entities(None, None, 10)} == {"离心泵", "防护罩"}

    def test_only_confirming_tasks_build(self, tasks: TaskRepository) -> None:
        task = tasks.save(BuildTask(status=TaskStatus.ALIGNING, draft_entities=DRAFT_ENTITIES))
        graph = InMemoryGraphStore()

        with pytest.raises(InvalidTaskTransitionError):
            GraphBuilder(graph, tasks).build_graph(task.id)

        assert graph.stats()["entity_count"] == 0
        assert tasks.require(task.id).status == TaskStatus.ALIGNING

    def test_backend_failure_marks_task_failed(
        self, tasks: TaskRepository, confirming_task: BuildTask
    ) -> None:
        class DownStore(InMemoryGraphStore):
            def upsert_entity(self, write):
                raise GraphBackendError("Neo4j 服务不可用", GraphErrorCategory.UNAVAILABLE)

        with pytest.raises(GraphBackendError):
            GraphBuilder(DownStore(), tasks).build_graph(confirming_task.id)

        stored = tasks.require(confirming_task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.stage_message == STAGE_FAILED
        assert stored.error_message == "Neo4j 服务不可用"
        assert stored.confirmed_at is not None

    def test_unknown_relation_errors_are_counted(
        self, tasks: TaskRepository, confirming_task: BuildTask
    ) -> None:
        class FlakyRelations(InMemoryGraphStore):
            def upsert_relation(self, write: RelationWrite) -> bool:
                raise GraphBackendError("constraint violated", GraphErrorCategory.UNKNOWN)

        result = GraphBuilder(FlakyRelations(), tasks).build_graph(confirming_task.id)

        assert result["stats"]["failed_relations"] == 2
        assert result["stats"]["relation_count"] == 0
        assert tasks.require(confirming_task.id).status == TaskStatus.COMPLETED

    def test_categorized_relation_errors_abort(
        self, tasks: TaskRepository, confirming_task: BuildTask
    ) -> None:
        class AuthRelations(InMemoryGraphStore):
            def upsert_relation(self, write: RelationWrite) -> bool:
                raise GraphBackendError("认证失败", GraphErrorCategory.AUTH)

        with pytest.raises(GraphBackendError):
            GraphBuilder(AuthRelations(), tasks).build_graph(confirming_task.id)

        assert tasks.require(confirming_task.id).status == TaskStatus.FAILED

    def test_outage_during_schema_setup_fails_task(
        self, tasks: TaskRepository, confirming_task: BuildTask
    ) -> None:
        driver = MagicMock()
        driver.session.return_value.run.side_effect = ServiceUnavailable("Connection refused")
        manager = Neo4jManager(DatabaseConfig(), driver=driver)

        with pytest.raises(GraphBackendError) as excinfo:
            GraphBuilder(Neo4jGraphStore(manager), tasks).build_graph(confirming_task.id)

        assert excinfo.value.category == GraphErrorCategory.UNAVAILABLE
        stored = tasks.require(confirming_task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.stage_message == STAGE_FAILED
        assert stored.error_message == MSG_UNAVAILABLE

    def test_unexpected_store_error_is_categorized(
        self, tasks: TaskRepository, confirming_task: BuildTask
    ) -> None:
        class BrokenStore(InMemoryGraphStore):
            def upsert_entity(self, write):
                raise KeyError("properties")

        with pytest.raises(GraphBackendError) as excinfo:
            GraphBuilder(BrokenStore(), tasks).build_graph(confirming_task.id)

        assert excinfo.value.category == GraphErrorCategory.UNKNOWN
        assert isinstance(excinfo.value.cause, KeyError)
        stored = tasks.require(confirming_task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.error_message == excinfo.value.message

    def test_invalid_edit_fails_task(self, tasks: TaskRepository, confirming_task: BuildTask) -> None:
        graph = InMemoryGraphStore()
        modifications = {"modifiedEntities": [{"entityId": "e1", "newValue": {"name": None}}]}

        with pytest.raises(ValidationError):
            GraphBuilder(graph, tasks).build_graph(confirming_task.id, modifications)

        stored = tasks.require(confirming_task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.stage_message == STAGE_FAILED
        assert stored.error_message.startswith(ERROR_INVALID_MODIFICATIONS)
        assert graph.stats()["entity_count"] == 0

    def test_rebuilding_same_drafts_is_idempotent(self, tasks: TaskRepository) -> None:
        graph = InMemoryGraphStore()
        builder = GraphBuilder(graph, tasks)
        builder.build_graph(_confirming(tasks).id)
        first_stats = graph.stats()
        first_version = graph.entity_network("e0", 1)["center"]["version"]

        second = builder.build_graph(_confirming(tasks).id)

        assert graph.stats() == first_stats
        assert second["stats"]["new_entities"] == 0
        assert second["stats"]["updated_entities"] == 3
        assert second["stats"]["relation_count"] == 2
        center = graph.entity_network("e0", 1)["center"]
        assert first_version == 2
        assert center["version"] == 4
        assert center["sourceFiles"] == ["file_a"]


class TestGraphReads:
    def _builder(self, graph=None) -> GraphBuilder:
        return GraphBuilder(graph or MagicMock(), TaskRepository(InMemoryDocumentStore()), config=GraphConfig())

    @pytest.mark.parametrize(
        "limit, offset, expected",
        [(None, 0, (100, 0)), (10000, 5, (500, 5)), (0, -3, (1, 0)), (20, 40, (20, 40))],
    )
    def test_query_graph_clamps_paging(self, limit, offset, expected) -> None:
        graph = MagicMock()
        graph.find_entities.return_value = [{"id": "n1"}]
        graph.relations_among.return_value = []

        self._builder(graph).query_graph("泵", "", limit, offset)

        assert graph.find_entities.call_args.args == ("泵", None, *expected)

    def test_query_graph_survives_edge_failure(self) -> None:
        graph = MagicMock()
        graph.find_entities.return_value = [{"id": "n1"}, {"id": "n2"}]
        graph.relations_among.side_effect = GraphBackendError("timeout", GraphErrorCategory.UNKNOWN)

        result = self._builder(graph).query_graph()

        assert result == {"nodes": [{"id": "n1"}, {"id": "n2"}], "edges": []}
        graph.relations_among.assert_called_once_with(["n1", "n2"])

    @pytest.mark.parametrize("depth, expected", [(0, 1), (3, 3), (99, 5)])
    def test_network_depth_is_clamped(self, depth: int, expected: int) -> None:
        graph = MagicMock()

        self._builder(graph).get_entity_network("n1", depth)

        graph.entity_network.assert_called_once_with("n1", expected)

    def test_search_matches_names_only(self) -> None:
        graph = MagicMock()

        self._builder(graph).search_entities("配电", limit=5)

        graph.find_entities.assert_called_once_with("配电", None, 5, 0, name_only=True)

    def test_delete_task_data(self) -> None:
        graph = InMemoryGraphStore()
        builder = self._builder(graph)
        builder.incremental_update("f1", [{"id": "n1", "name": "泵", "type": "设备"}])

        assert builder.delete_task_data(("f1",)) == {"updated": 1, "deleted": 1}


def test_incremental_update_reuses_nodes_for_same_file() -> None:
    graph = InMemoryGraphStore()
    builder = GraphBuilder(graph, TaskRepository(InMemoryDocumentStore()))

    first = builder.incremental_update(
        "file_x",
        [
            {"id": "n1", "name": "配电室", "type": "风险单元"},
            {"id": "n2", "name": "倒闸操作", "type": "作业活动"},
        ],
        [{"source": "配电室", "target": "倒闸操作", "relationType": "contains"}],
    )
    second = builder.incremental_update(
        "file_x",
        [DraftEntity(id="other", name="配电室", type="风险单元", properties={"楼层": "1F"})],
    )

    assert first == {
        "created": 2,
        "updated": 0,
        "relation_count": 1,
        "skipped_relations": 0,
        "failed_relations": 0,
    }
    assert second["created"] == 0
    assert second["updated"] == 1
    nodes: List[dict] = graph.find_entities("配电室", None, 10, name_only=True)
    assert [n["id"] for n in nodes] == ["n1"]
    assert nodes[0]["properties"]["楼层"] == "1F"
