"""Tests for configuration loading and override behavior."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from safetykg.utils.config import Config, LLMConfig, get_config, load_config, reset_config


@pytest.fixture(autouse=True)
def _reset_global_config(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure config singleton doesn't leak between tests."""
    for name in ("NEO4J_PASSWORD", "LLM_API_KEY", "LLM_BASE_URL", "OPENAI_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


def _write_yaml(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")


def test_yaml_loads_sections(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(
        cfg_path,
        {
            "database": {"neo4j_password": "yaml_pw"},
            "alignment": {"auto_merge_threshold": 0.95, "candidate_threshold": 0.6},
            "storage": {"backend": "memory"},
            "upload_path": str(tmp_path / "uploads"),
        },
    )

    cfg = load_config(cfg_path)

    assert cfg.database.neo4j_password == "yaml_pw"
    assert cfg.alignment.auto_merge_threshold == 0.95
    assert cfg.alignment.candidate_threshold == 0.6
    assert cfg.storage.backend == "memory"
    assert (tmp_path / "uploads").is_dir()
    assert get_config() is cfg


def test_env_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(
        cfg_path,
        {"database": {"neo4j_password": "yaml_pw"}, "upload_path": str(tmp_path / "u")},
    )

    monkeypatch.setenv("NEO4J_PASSWORD", "env_pw")

    cfg = load_config(cfg_path)

    assert cfg.database.neo4j_password == "env_pw"


def test_invalid_yaml_root_type_raises(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(yaml.safe_dump(["not", "a", "mapping"]), encoding="utf-8")

    with pytest.raises(ValueError, match="YAML config root must be a mapping"):
        load_config(cfg_path)


def test_missing_yaml_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml")


def test_get_config_requires_load() -> None:
    with pytest.raises(RuntimeError, match="not initialized"):
        get_config()


def test_candidate_threshold_above_merge_threshold_rejected(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.yaml"
    _write_yaml(
        cfg_path,
        {
            "alignment": {"auto_merge_threshold": 0.5, "candidate_threshold": 0.8},
            "upload_path": str(tmp_path / "u"),
        },
    )

    with pytest.raises(ValueError, match="candidate_threshold"):
        load_config(cfg_path)


def test_resolved_llm_config_uses_top_level_credentials() -> None:
    cfg = Config(llm_api_key="sk-top", llm_base_url="https://llm.example/v1")

    llm = cfg.resolved_llm_config()
    embedding = cfg.resolved_embedding_config()

    assert llm.api_key == "sk-top"
    assert llm.base_url == "https://llm.example/v1"
    assert embedding.api_key == "sk-top"
    assert cfg.extraction.llm.api_key is None


def test_explicit_section_key_wins_over_top_level() -> None:
    cfg = Config(llm_api_key="sk-top")
    cfg.extraction.llm.api_key = "sk-section"

    assert cfg.resolved_llm_config().api_key == "sk-section"


def test_temperature_out_of_range_rejected() -> None:
    with pytest.raises(ValueError, match="Temperature"):
        LLMConfig(temperature=1.5)
