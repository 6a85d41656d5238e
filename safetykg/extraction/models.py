"""Decoded model output for one chunk or a merged set of chunks."""

from typing import Annotated, Any, Dict, List

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, field_validator


def _as_text(value: Any) -> str:
    return "" if value is None else str(value).strip()


Text = Annotated[str, BeforeValidator(_as_text)]


class _Lenient(BaseModel):
    # Model output is untrusted: unknown keys are dropped and required fields
    # default to "" so the validation gate can report what is missing.
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ExtractedEntityType(_Lenient):
    name: Text = ""
    description: Text = ""


class ExtractedRelationType(_Lenient):
    name: Text = ""
    source_type: Text = Field(default="", validation_alias=AliasChoices("sourceType", "source_type"))
    target_type: Text = Field(default="", validation_alias=AliasChoices("targetType", "target_type"))
    description: Text = ""


class ExtractedEntity(_Lenient):
    name: Text = ""
    type: Text = ""
    properties: Dict[str, Any] = Field(default_factory=dict)
    context: Text = ""
    confidence: float | None = None

    @field_validator("properties", mode="before")
    @classmethod
    def _properties_dict(cls, value: Any) -> Dict[str, Any]:
        if isinstance(value, dict):
            return value
        if value in (None, ""):
            return {}
        return {"description": value}

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float | None:
        try:
            return max(0.0, min(float(value), 1.0))
        except (TypeError, ValueError):
            return None


class ExtractedRelation(_Lenient):
    source: Text = ""
    target: Text = ""
    type: Text = Field(default="", validation_alias=AliasChoices("type", "relationType", "relation_type"))
    properties: Dict[str, Any] = Field(default_factory=dict)
    context: Text = ""
    confidence: float | None = None

    @field_validator("properties", mode="before")
    @classmethod
    def _properties_dict(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float | None:
        try:
            return max(0.0, min(float(value), 1.0))
        except (TypeError, ValueError):
            return None


class ExtractionResult(_Lenient):
    """Ontology, entities and relations decoded from the model's JSON."""

    entity_types: List[ExtractedEntityType] = Field(
        default_factory=list, validation_alias=AliasChoices("entityTypes", "entity_types")
    )
    entities: List[ExtractedEntity] = Field(default_factory=list)
    relation_types: List[ExtractedRelationType] = Field(
        default_factory=list, validation_alias=AliasChoices("relationTypes", "relation_types")
    )
    relations: List[ExtractedRelation] = Field(default_factory=list)

    @field_validator("entity_types", "entities", "relation_types", "relations", mode="before")
    @classmethod
    def _only_objects(cls, value: Any) -> List[Any]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, (dict, BaseModel))]
