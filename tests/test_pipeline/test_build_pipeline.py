"""End-to-end tests for the build pipeline with in-memory backends."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List

import numpy as np
import pandas as pd
import pytest

from safetykg.errors import InvalidTaskTransitionError, UnsupportedFileTypeError
from safetykg.pipeline.build_pipeline import ERROR_NO_CONTENT, KnowledgeGraphPipeline
from safetykg.storage.document_store import InMemoryDocumentStore
from safetykg.storage.graph_store import InMemoryGraphStore
from safetykg.storage.schemas import FileStatus, TaskStatus
from safetykg.utils.config import Config

HEADERS = ["风险单元", "作业活动", "危险发生的触发因素和过程描述", "可能导致的后果", "现有控制措施", "风险等级"]
ROWS = [
    ["配电室", "倒闸操作", "误操作导致电弧", "触电、灼伤", "1.执行操作票 2.穿戴绝缘防护", "较大风险"],
    ["配电室", "设备巡检", "带电部位距离不足", "触电", "设置警示标识", "一般风险"],
]


class OneHotEmbedder:
    """Every distinct text gets its own axis, so nothing aligns."""

    def __init__(self, dimensions: int = 64) -> None:
        self.dimensions = dimensions
        self.axes: Dict[str, int] = {}

    def generate(self, texts: List[str]) -> List[np.ndarray]:
        vectors = []
        for text in texts:
            axis = self.axes.setdefault(text, len(self.axes))
            vector = np.zeros(self.dimensions, dtype=np.float32)
            vector[axis % self.dimensions] = 1.0
            vectors.append(vector)
        return vectors


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        storage={"backend": "memory"},
        graph={"backend": "memory"},
        extraction={"enable_llm": False},
        upload_path=tmp_path / "uploads",
    )


@pytest.fixture
def graph() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def pipeline(config: Config, graph: InMemoryGraphStore) -> KnowledgeGraphPipeline:
    return KnowledgeGraphPipeline.from_config(
        config,
        store=InMemoryDocumentStore(),
        graph_store=graph,
        embedder=OneHotEmbedder(),
    )


@pytest.fixture
def register_file(tmp_path: Path) -> Path:
    path = tmp_path / "风险辨识清单.xlsx"
    pd.DataFrame(ROWS, columns=HEADERS).to_excel(path, index=False, sheet_name="风险清单")
    return path


def test_register_upload_runs_to_confirmation(
    pipeline: KnowledgeGraphPipeline, register_file: Path
) -> None:
    task_id = pipeline.upload_and_start([register_file], created_by="alice", background=False)

    result = pipeline.get_extraction_result(task_id)

    assert result["status"] == "confirming"
    assert result["progress"] == 90
    assert len(result["draftEntities"]) == 10
    assert len(result["draftRelations"]) == 10
    assert result["extractionMeta"]["fallback_extractor"] == "risk_register"
    assert {e["alignmentSuggestion"]["type"] for e in result["draftEntities"]} == {"new"}

    task = pipeline.tasks.require(task_id)
    upload = pipeline.files.get(task.file_ids[0])
    assert upload.original_name == "风险辨识清单.xlsx"
    assert Path(upload.file_path).is_file()
    assert upload.extracted_data["sheets"][0]["rowCount"] == 2


def test_confirm_builds_graph_and_delete_removes_it(
    pipeline: KnowledgeGraphPipeline, graph: InMemoryGraphStore, register_file: Path, config: Config
) -> None:
    task_id = pipeline.upload_and_start([register_file], background=False)

    built = pipeline.confirm_and_build(task_id)

    assert built["entity_count"] == 10
    assert built["relation_count"] == 10
    stats = pipeline.get_graph_stats()
    assert stats["entity_count"] == 10
    assert stats["relation_count"] == 10
    assert stats["type_distribution"]["控制措施"] == 3

    task = pipeline.tasks.require(task_id)
    assert task.status == TaskStatus.COMPLETED
    assert pipeline.files.get(task.file_ids[0]).status == FileStatus.COMPLETED

    queried = pipeline.query_graph(keyword="配电")
    assert [node["name"] for node in queried["nodes"]] == ["配电室"]
    assert [hit["name"] for hit in pipeline.search_entities("倒闸")] == ["倒闸操作"]

    deleted = pipeline.delete_task(task_id)

    assert deleted["graph"] == {"updated": 10, "deleted": 10}
    assert graph.stats()["entity_count"] == 0
    assert pipeline.tasks.get(task_id) is None
    assert list(Path(config.upload_path).iterdir()) == []


def test_confirm_twice_is_rejected(pipeline: KnowledgeGraphPipeline, register_file: Path) -> None:
    task_id = pipeline.upload_and_start([register_file], background=False)
    pipeline.confirm_and_build(task_id)

    with pytest.raises(InvalidTaskTransitionError):
        pipeline.confirm_and_build(task_id)


def test_background_worker_can_be_awaited(
    pipeline: KnowledgeGraphPipeline, register_file: Path
) -> None:
    task_id = pipeline.upload_and_start([register_file])
    pipeline.wait(task_id, timeout=30)

    assert pipeline.get_extraction_result(task_id)["status"] == "confirming"


def test_blank_documents_fail_the_task(pipeline: KnowledgeGraphPipeline, tmp_path: Path) -> None:
    blank = tmp_path / "空白.txt"
    blank.write_text("   \n\n", encoding="utf-8")

    task_id = pipeline.upload_and_start([blank], background=False)

    result = pipeline.get_extraction_result(task_id)
    assert result["status"] == "failed"
    assert result["errorMessage"] == ERROR_NO_CONTENT


def test_prose_without_llm_fails_extraction(pipeline: KnowledgeGraphPipeline, tmp_path: Path) -> None:
    notes = tmp_path / "培训记录.txt"
    notes.write_text("本次培训讲解了动火作业的审批流程。", encoding="utf-8")

    task_id = pipeline.upload_and_start([notes], background=False)

    result = pipeline.get_extraction_result(task_id)
    assert result["status"] == "failed"
    assert "未提取到任何实体" in result["errorMessage"]


def test_upload_validation(pipeline: KnowledgeGraphPipeline, config: Config, tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="请上传文件"):
        pipeline.upload_and_start([])

    too_many = [tmp_path / f"{i}.txt" for i in range(config.ingestion.max_files_per_task + 1)]
    with pytest.raises(ValueError, match="最多上传"):
        pipeline.upload_and_start(too_many)

    with pytest.raises(UnsupportedFileTypeError):
        pipeline.upload_and_start([tmp_path / "图片.png"])

    with pytest.raises(FileNotFoundError):
        pipeline.upload_and_start([tmp_path / "缺失.txt"])

    assert pipeline.list_tasks()["total"] == 0


def test_list_tasks_summaries(pipeline: KnowledgeGraphPipeline, register_file: Path) -> None:
    first = pipeline.upload_and_start([register_file], created_by="alice", background=False)
    pipeline.upload_and_start([register_file], created_by="bob", background=False)

    listing = pipeline.list_tasks(limit=10, created_by="alice")

    assert listing["total"] == 1
    summary = listing["tasks"][0]
    assert summary["id"] == first
    assert "draftEntities" not in summary
    assert summary["files"][0]["filename"] == "风险辨识清单.xlsx"


def test_ontology_lifecycle(pipeline: KnowledgeGraphPipeline) -> None:
    first = pipeline.create_ontology(
        {"name": "电气安全", "isDefault": True, "entityTypes": [{"name": "设备"}]}, created_by="alice"
    )
    second = pipeline.create_ontology({"name": "动火作业", "isDefault": True})

    assert pipeline.get_ontology(first.id).is_default is False
    assert pipeline.get_ontology(second.id).is_default is True
    assert [o.name for o in pipeline.search_ontologies("设备")] == ["电气安全"]

    renamed = pipeline.update_ontology(first.id, {"name": "电气作业安全", "id": "other"})
    assert renamed.id == first.id
    assert renamed.name == "电气作业安全"

    pipeline.delete_ontology(second.id)
    assert [o.id for o in pipeline.list_ontologies()] == [first.id]

    with pytest.raises(ValueError):
        pipeline.create_ontology({"name": "  "})


def test_short_search_returns_nothing(pipeline: KnowledgeGraphPipeline) -> None:
    assert pipeline.search_entities(" 泵 ") == []
