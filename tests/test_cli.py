"""CLI tests over an in-memory pipeline."""

from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
from typer.testing import CliRunner

from safetykg import cli
from safetykg.pipeline.build_pipeline import KnowledgeGraphPipeline
from safetykg.storage.document_store import InMemoryDocumentStore
from safetykg.storage.graph_store import InMemoryGraphStore
from safetykg.utils.config import Config

runner = CliRunner()

HEADERS = ["风险单元", "作业活动", "危险发生的触发因素和过程描述", "可能导致的后果", "现有控制措施"]


class _DistinctEmbedder:
    def __init__(self) -> None:
        self.seen: dict = {}

    def generate(self, texts):
        vectors = []
        for text in texts:
            vector = np.zeros(32, dtype=np.float32)
            vector[self.seen.setdefault(text, len(self.seen)) % 32] = 1.0
            vectors.append(vector)
        return vectors


@pytest.fixture
def pipeline(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> KnowledgeGraphPipeline:
    cfg = Config(
        storage={"backend": "memory"},
        graph={"backend": "memory"},
        extraction={"enable_llm": False},
        upload_path=tmp_path / "uploads",
    )
    instance = KnowledgeGraphPipeline.from_config(
        cfg,
        store=InMemoryDocumentStore(),
        graph_store=InMemoryGraphStore(),
        embedder=_DistinctEmbedder(),
    )
    monkeypatch.setattr(cli, "_load", lambda config_path, verbose=False: cfg)
    monkeypatch.setattr(cli, "_pipeline", lambda config: instance)
    return instance


@pytest.fixture
def register_file(tmp_path: Path) -> Path:
    path = tmp_path / "清单.xlsx"
    rows = [["泵房", "设备巡检", "转动部件无防护", "机械伤害", "加装防护罩"]]
    pd.DataFrame(rows, columns=HEADERS).to_excel(path, index=False)
    return path


def test_ingest_confirm_and_stats(pipeline: KnowledgeGraphPipeline, register_file: Path) -> None:
    result = runner.invoke(cli.app, ["ingest", str(register_file), "--created-by", "alice"])

    assert result.exit_code == 0, result.stdout
    assert "confirming" in result.stdout
    assert "泵房" in result.stdout

    task_id = pipeline.list_tasks()["tasks"][0]["id"]
    result = runner.invoke(cli.app, ["confirm", task_id])

    assert result.exit_code == 0, result.stdout
    assert "5 entities" in result.stdout

    result = runner.invoke(cli.app, ["stats"])
    assert result.exit_code == 0
    assert "Entities: 5" in result.stdout

    result = runner.invoke(cli.app, ["query", "泵房"])
    assert result.exit_code == 0
    assert "泵房" in result.stdout


def test_confirm_with_modifications_file(
    pipeline: KnowledgeGraphPipeline, register_file: Path, tmp_path: Path
) -> None:
    runner.invoke(cli.app, ["ingest", str(register_file)])
    task = pipeline.tasks.list_page()[0][0]
    removed = task.draft_entities[0].id
    edits = tmp_path / "edits.json"
    edits.write_text(json.dumps({"deletedEntityIds": [removed]}), encoding="utf-8")

    result = runner.invoke(cli.app, ["confirm", task.id, "--modifications", str(edits)])

    assert result.exit_code == 0, result.stdout
    assert "4 entities" in result.stdout


def test_ingest_rejects_unsupported_file(pipeline: KnowledgeGraphPipeline, tmp_path: Path) -> None:
    image = tmp_path / "photo.png"
    image.write_bytes(b"\x89PNG")

    result = runner.invoke(cli.app, ["ingest", str(image)])

    assert result.exit_code == 1
    assert "不支持的文件类型" in result.stdout


def test_status_unknown_task_fails(pipeline: KnowledgeGraphPipeline) -> None:
    result = runner.invoke(cli.app, ["status", "task_missing"])

    assert result.exit_code == 1


def test_query_with_no_matches(pipeline: KnowledgeGraphPipeline) -> None:
    result = runner.invoke(cli.app, ["query", "不存在"])

    assert result.exit_code == 0
    assert "No matching entities" in result.stdout
