"""Extraction prompt templates loaded from YAML."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from safetykg.storage.schemas import OntologyLibrary

PROMPT_KEY = "knowledge_extraction"
PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_PROMPTS_PATH = PROJECT_ROOT / "config" / "extraction_prompts.yaml"


def resolve_prompts_path(prompts_path: str | Path) -> Path:
    """Relative paths are tried against the working directory, then the project root."""
    path = Path(prompts_path)
    if path.is_absolute() or path.exists():
        return path
    return PROJECT_ROOT / path


class PromptLibrary:
    """Render the system prompt and per-chunk user message."""

    def __init__(self, prompts_path: str | Path = DEFAULT_PROMPTS_PATH) -> None:
        self.prompts_path = resolve_prompts_path(prompts_path)
        self.prompts = self._load_prompts(self.prompts_path)
        if PROMPT_KEY not in self.prompts:
            raise KeyError(f"Prompt key not found in template: {PROMPT_KEY}")
        self.template: Dict[str, Any] = self.prompts[PROMPT_KEY] or {}

    def _load_prompts(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Extraction prompt template not found: {path}")
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Prompt template root must be a mapping/dict: {path}")
        return data

    def system_prompt(self, ontology: Optional[OntologyLibrary] = None) -> str:
        system = str(self.template.get("system", "")).strip()
        if ontology is None:
            return system
        hint = str(self.template.get("ontology_hint", "")).format(
            entity_types=self._join([et.name for et in ontology.entity_types]),
            relation_types=self._join([rt.name for rt in ontology.relation_types]),
        )
        return f"{system}\n\n{hint}" if hint else system

    def user_message(self, chunk_text: str, chunk_index: int, chunk_count: int) -> str:
        template = str(self.template.get("user_template", "{chunk_text}"))
        try:
            return template.format(
                chunk_text=chunk_text, chunk_number=chunk_index + 1, chunk_count=chunk_count
            )
        except KeyError as exc:
            raise KeyError(f"Missing placeholder '{exc.args[0]}' in extraction user template")

    @staticmethod
    def _join(names: List[str]) -> str:
        return "、".join(names) if names else "无"
