"""Entity and relation upserts against Neo4j.

Entity properties are stored on the node as one JSON object string
(``properties``). Two strategies merge that string on update: one lets APOC
do the union server-side, the other reads the existing JSON back and merges
it in Python.
"""

import json
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field


def json_safe(properties: Dict[str, Any]) -> Dict[str, Any]:
    """Property map with dates rendered as ISO strings."""
    safe: Dict[str, Any] = {}
    for key, value in properties.items():
        if isinstance(value, (datetime, date)):
            safe[key] = value.isoformat()
        else:
            safe[key] = value
    return safe


def dumps_properties(properties: Dict[str, Any]) -> str:
    return json.dumps(json_safe(properties), ensure_ascii=False, default=str)


def loads_properties(raw: Optional[str]) -> Dict[str, Any]:
    """Parse a stored properties string; invalid JSON yields an empty map."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logger.warning(f"Ignoring unparseable properties JSON: {str(raw)[:80]!r}")
        return {}
    return value if isinstance(value, dict) else {}


class EntityWrite(BaseModel):
    """One entity upsert keyed by graph node id."""

    node_id: str
    name: str
    type: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    file_ids: List[str] = Field(default_factory=list)

    def create_properties(self) -> Dict[str, Any]:
        """Properties for a freshly created node; name and type are included."""
        return {**json_safe(self.properties), "name": self.name, "type": self.type}

    def merge_properties(self, existing: Dict[str, Any]) -> Dict[str, Any]:
        """Union with stored properties; incoming values win, node name/type stay."""
        merged = {**existing, **json_safe(self.properties)}
        merged["name"] = existing.get("name", self.name)
        merged["type"] = existing.get("type", self.type)
        return merged


class RelationWrite(BaseModel):
    """One relation upsert between two existing nodes."""

    source_id: str
    target_id: str
    type: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = 0.8


class EntityUpsertStrategy(ABC):
    """Transaction function writing one entity node.

    ``upsert`` runs inside ``session.execute_write`` and returns True when a
    new node was created.
    """

    name: str = "base"

    @abstractmethod
    def upsert(self, tx: Any, write: EntityWrite) -> bool:
        """Create or merge the node described by ``write``."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class WithExtensionUpsert(EntityUpsertStrategy):
    """Single MERGE using APOC JSON helpers for the property union."""

    name = "with_extension"

    QUERY = """
    MERGE (e:Entity {id: $id})
    ON CREATE SET
        e.name = $name,
        e.type = $type,
        e.properties = $createJson,
        e.sourceFiles = $fileIds,
        e.createdAt = datetime(),
        e.updatedAt = datetime(),
        e.version = 1
    ON MATCH SET
        e.properties = apoc.convert.toJson(
            apoc.map.merge(
                apoc.map.merge(apoc.convert.fromJsonMap(coalesce(e.properties, '{}')), $properties),
                {name: e.name, type: e.type}
            )
        ),
        e.sourceFiles = coalesce(e.sourceFiles, []) +
            [f IN $fileIds WHERE NOT f IN coalesce(e.sourceFiles, [])],
        e.updatedAt = datetime(),
        e.version = coalesce(e.version, 0) + 1
    RETURN e.id AS id
    """

    def upsert(self, tx: Any, write: EntityWrite) -> bool:
        result = tx.run(
            self.QUERY,
            id=write.node_id,
            name=write.name,
            type=write.type,
            createJson=dumps_properties(write.create_properties()),
            properties=json_safe(write.properties),
            fileIds=list(write.file_ids),
        )
        summary = result.consume()
        return summary.counters.nodes_created > 0


class FallbackUpsert(EntityUpsertStrategy):
    """MERGE that returns stored properties; the union happens client-side."""

    name = "fallback"

    MERGE_QUERY = """
    MERGE (e:Entity {id: $id})
    ON CREATE SET
        e.name = $name,
        e.type = $type,
        e.properties = $createJson,
        e.sourceFiles = $fileIds,
        e.createdAt = datetime(),
        e.updatedAt = datetime(),
        e.version = 1
    RETURN e.properties AS existingPropertiesJson
    """

    UPDATE_QUERY = """
    MATCH (e:Entity {id: $id})
    SET e.properties = $propertiesJson,
        e.sourceFiles = coalesce(e.sourceFiles, []) +
            [f IN $fileIds WHERE NOT f IN coalesce(e.sourceFiles, [])],
        e.updatedAt = datetime(),
        e.version = coalesce(e.version, 0) + 1
    """

    def upsert(self, tx: Any, write: EntityWrite) -> bool:
        result = tx.run(
            self.MERGE_QUERY,
            id=write.node_id,
            name=write.name,
            type=write.type,
            createJson=dumps_properties(write.create_properties()),
            fileIds=list(write.file_ids),
        )
        record = result.single()
        summary = result.consume()
        if summary.counters.nodes_created > 0:
            return True

        existing = loads_properties(record["existingPropertiesJson"] if record else None)
        tx.run(
            self.UPDATE_QUERY,
            id=write.node_id,
            propertiesJson=dumps_properties(write.merge_properties(existing)),
            fileIds=list(write.file_ids),
        ).consume()
        return False


RELATION_QUERY = """
MATCH (s:Entity {id: $sourceId})
MATCH (t:Entity {id: $targetId})
MERGE (s)-[r:RELATION {type: $type}]->(t)
ON CREATE SET
    r.properties = $propertiesJson,
    r.confidence = $confidence,
    r.createdAt = datetime()
ON MATCH SET
    r.properties = $propertiesJson,
    r.confidence = $confidence,
    r.updatedAt = datetime()
RETURN count(r) AS written
"""


def upsert_relation(tx: Any, write: RelationWrite) -> bool:
    """Transaction function writing one ``RELATION`` edge; True when it was created."""
    result = tx.run(
        RELATION_QUERY,
        sourceId=write.source_id,
        targetId=write.target_id,
        type=write.type,
        propertiesJson=dumps_properties(write.properties),
        confidence=float(write.confidence),
    )
    summary = result.consume()
    return summary.counters.relationships_created > 0


def select_strategy(apoc_available: bool) -> EntityUpsertStrategy:
    return WithExtensionUpsert() if apoc_available else FallbackUpsert()
