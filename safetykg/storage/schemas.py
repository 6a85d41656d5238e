"""Pydantic models for build tasks, drafts, uploads and ontologies.

Field names are snake_case in Python. Records are persisted with camelCase
aliases (``model_dump(by_alias=True)``) and accept either form on input.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, date, datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from safetykg.errors import InvalidTaskTransitionError

PropertyValue = Union[bool, int, float, str, datetime, date, None]
Properties = Dict[str, PropertyValue]


def utcnow() -> datetime:
    return datetime.now(UTC)


def coerce_property_value(value: Any) -> PropertyValue:
    """Map an arbitrary decoded JSON value onto the closed property variant."""
    if value is None or isinstance(value, (bool, int, float, str, datetime, date)):
        return value
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def normalize_properties(raw: Any) -> Properties:
    """Coerce a property bag into an ordered ``str -> PropertyValue`` map."""
    if raw is None:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            return {"value": raw}
    if not isinstance(raw, dict):
        return {"value": coerce_property_value(raw)}
    return {str(key): coerce_property_value(value) for key, value in raw.items()}


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class TaskStatus(str, Enum):
    """Build task lifecycle states."""

    PENDING = "pending"
    PARSING = "parsing"
    EXTRACTING = "extracting"
    ALIGNING = "aligning"
    CONFIRMING = "confirming"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

_FORWARD_TRANSITIONS: Dict[TaskStatus, TaskStatus] = {
    TaskStatus.PENDING: TaskStatus.PARSING,
    TaskStatus.PARSING: TaskStatus.EXTRACTING,
    TaskStatus.EXTRACTING: TaskStatus.ALIGNING,
    TaskStatus.ALIGNING: TaskStatus.CONFIRMING,
    TaskStatus.CONFIRMING: TaskStatus.BUILDING,
    TaskStatus.BUILDING: TaskStatus.COMPLETED,
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Return True if ``current -> target`` is a legal build task transition."""
    if current in TERMINAL_STATUSES:
        return False
    if target == TaskStatus.FAILED:
        return True
    return _FORWARD_TRANSITIONS.get(current) == target


class FileStatus(str, Enum):
    """Processing state of an uploaded file."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEPRECATED = "deprecated"


class FileRef(_Model):
    file_id: str
    filename: str


class EntityTypeDef(_Model):
    name: str
    description: str = ""


class RelationTypeDef(_Model):
    name: str
    source_type: str = ""
    target_type: str = ""
    description: str = ""


class DraftOntology(_Model):
    entity_types: List[EntityTypeDef] = Field(default_factory=list)
    relation_types: List[RelationTypeDef] = Field(default_factory=list)


class SimilarEntity(_Model):
    """A peer entity an alignment suggestion points at."""

    id: str
    name: str
    similarity: float


class NewSuggestion(_Model):
    type: Literal["new"] = "new"


class MergeSuggestion(_Model):
    type: Literal["merge"] = "merge"
    target_entity: SimilarEntity


class CandidateSuggestion(_Model):
    type: Literal["candidate"] = "candidate"
    candidates: List[SimilarEntity] = Field(default_factory=list, max_length=3)

    @field_validator("candidates")
    @classmethod
    def sort_candidates(cls, value: List[SimilarEntity]) -> List[SimilarEntity]:
        return sorted(value, key=lambda c: c.similarity, reverse=True)


AlignmentSuggestion = Annotated[
    Union[NewSuggestion, MergeSuggestion, CandidateSuggestion], Field(discriminator="type")
]


class DraftEntity(_Model):
    """Extracted entity awaiting confirmation."""

    id: str = ""
    name: str
    type: str
    properties: Properties = Field(default_factory=dict)
    source_context: str = ""
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    alignment_suggestion: AlignmentSuggestion = Field(default_factory=NewSuggestion)

    @field_validator("properties", mode="before")
    @classmethod
    def _normalize_properties(cls, value: Any) -> Properties:
        return normalize_properties(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            score = float(value)
        except (TypeError, ValueError):
            return 0.8
        return max(0.0, min(score, 1.0))

    @property
    def node_key(self) -> str:
        """Graph node id this entity is written to."""
        if isinstance(self.alignment_suggestion, MergeSuggestion):
            return self.alignment_suggestion.target_entity.id
        return self.id

    @property
    def description(self) -> str:
        value = self.properties.get("description")
        return "" if value is None else str(value)


class DraftRelation(_Model):
    """Extracted relation; endpoints are entity names until build time."""

    id: str = ""
    source: str
    target: str
    relation_type: str
    properties: Properties = Field(default_factory=dict)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    source_context: str = ""

    @field_validator("properties", mode="before")
    @classmethod
    def _normalize_properties(cls, value: Any) -> Properties:
        return normalize_properties(value)


class EntityEdit(_Model):
    entity_id: str
    new_value: Dict[str, Any] = Field(default_factory=dict)


class RelationEdit(_Model):
    relation_id: str
    new_value: Dict[str, Any] = Field(default_factory=dict)


class UserModifications(_Model):
    """Edits a reviewer applies on top of the stored drafts."""

    deleted_entity_ids: List[str] = Field(default_factory=list)
    deleted_relation_ids: List[str] = Field(default_factory=list)
    modified_entities: List[EntityEdit] = Field(default_factory=list)
    modified_relations: List[RelationEdit] = Field(default_factory=list)
    added_entities: List[DraftEntity] = Field(default_factory=list)
    added_relations: List[DraftRelation] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not any(
            (
                self.deleted_entity_ids,
                self.deleted_relation_ids,
                self.modified_entities,
                self.modified_relations,
                self.added_entities,
                self.added_relations,
            )
        )


class BuildTask(_Model):
    """Persisted state machine threading parse, extract, align and build."""

    id: str = Field(default_factory=lambda: f"task_{uuid.uuid4().hex[:16]}")
    task_type: str = "extraction"
    status: TaskStatus = TaskStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    stage_message: str = "等待处理"
    error_message: Optional[str] = None

    files: List[FileRef] = Field(default_factory=list)
    ontology_mode: Literal["auto", "existing"] = "auto"
    ontology_id: Optional[str] = None

    draft_ontology: DraftOntology = Field(default_factory=DraftOntology)
    draft_entities: List[DraftEntity] = Field(default_factory=list)
    draft_relations: List[DraftRelation] = Field(default_factory=list)
    user_modifications: Optional[UserModifications] = None

    build_stats: Dict[str, Any] = Field(default_factory=dict)
    extraction_meta: Dict[str, Any] = Field(default_factory=dict)
    extraction_debug: Optional[Dict[str, Any]] = None

    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def file_ids(self) -> List[str]:
        return [ref.file_id for ref in self.files]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def set_stage(self, stage_message: str, progress: Optional[int] = None) -> None:
        """Update the stage message; progress never moves backwards."""
        self.stage_message = stage_message
        if progress is not None:
            self.progress = max(self.progress, min(100, int(progress)))
        self.updated_at = utcnow()

    def transition_to(
        self,
        status: TaskStatus,
        *,
        progress: Optional[int] = None,
        stage_message: Optional[str] = None,
    ) -> None:
        """Move to ``status`` or raise ``InvalidTaskTransitionError``."""
        status = TaskStatus(status)
        if not can_transition(self.status, status):
            raise InvalidTaskTransitionError(
                f"Task {self.id} cannot move from {self.status.value} to {status.value}",
                {"task_id": self.id, "from": self.status.value, "to": status.value},
            )
        self.status = status
        if status == TaskStatus.COMPLETED:
            self.completed_at = utcnow()
        self.set_stage(stage_message if stage_message is not None else self.stage_message, progress)

    def fail(
        self,
        error_message: str,
        *,
        stage_message: Optional[str] = None,
        progress: Optional[int] = None,
    ) -> None:
        self.error_message = error_message
        self.transition_to(
            TaskStatus.FAILED,
            progress=progress,
            stage_message=stage_message or error_message,
        )


class FileUpload(_Model):
    """An uploaded source document."""

    id: str = Field(default_factory=lambda: f"file_{uuid.uuid4().hex[:16]}")
    filename: str
    original_name: str
    file_type: Literal["excel", "word", "pdf", "txt"]
    file_size: int = 0
    file_path: str
    status: FileStatus = FileStatus.PENDING
    extracted_text: Optional[str] = None
    extracted_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class OntologyEntityType(_Model):
    name: str
    display_name: str = ""
    color: str = "#1890ff"
    description: str = ""
    properties: List[str] = Field(default_factory=list)


class OntologyRelationType(_Model):
    name: str
    display_name: str = ""
    source_types: List[str] = Field(default_factory=list)
    target_types: List[str] = Field(default_factory=list)
    is_directed: bool = True
    description: str = ""


class OntologyLibrary(_Model):
    """A named, reusable set of entity and relation types."""

    id: str = Field(default_factory=lambda: f"ontology_{uuid.uuid4().hex[:16]}")
    name: str
    description: str = ""
    version: str = "1.0"
    domain: str = "safety_training"
    is_active: bool = True
    is_default: bool = False
    entity_types: List[OntologyEntityType] = Field(default_factory=list)
    relation_types: List[OntologyRelationType] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_entity_type(self, name: str) -> Optional[OntologyEntityType]:
        return next((et for et in self.entity_types if et.name == name), None)

    def get_relation_type(self, name: str) -> Optional[OntologyRelationType]:
        return next((rt for rt in self.relation_types if rt.name == name), None)


def apply_field_updates(
    record: BaseModel, changes: Dict[str, Any], *, protected: tuple = ("id",)
) -> BaseModel:
    """Copy of ``record`` with ``changes`` overlaid; keys may be field names or aliases.

    Unknown keys and ``protected`` fields are ignored.
    """
    names: Dict[str, str] = {}
    for name, field in type(record).model_fields.items():
        names[name] = name
        if field.alias:
            names[field.alias] = name
    overlay = {
        names[key]: value
        for key, value in changes.items()
        if key in names and names[key] not in protected
    }
    return type(record).model_validate({**record.model_dump(), **overlay})
