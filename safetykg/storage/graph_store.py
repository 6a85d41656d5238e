"""Graph backends used by the builder.

``Neo4jGraphStore`` is the production backend. ``InMemoryGraphStore`` keeps
the same upsert and source-file reference counting semantics in process and
backs local runs and tests.
"""

import threading
from abc import ABC, abstractmethod
from collections import Counter, deque
from typing import Any, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from safetykg.errors import GraphBackendError, GraphErrorCategory
from safetykg.storage.neo4j_manager import Neo4jManager
from safetykg.storage.upsert_strategies import (
    EntityUpsertStrategy,
    EntityWrite,
    FallbackUpsert,
    RelationWrite,
    dumps_properties,
    json_safe,
    loads_properties,
    select_strategy,
    upsert_relation,
)

GraphNode = Dict[str, Any]
GraphEdge = Dict[str, Any]


def node_to_dict(node: Any) -> GraphNode:
    """Public view of an Entity node (neo4j ``Node`` or plain mapping)."""
    props = dict(node)
    return {
        "id": props.get("id"),
        "name": props.get("name"),
        "type": props.get("type"),
        "properties": loads_properties(props.get("properties")),
        "sourceFiles": list(props.get("sourceFiles") or []),
        "version": props.get("version"),
    }


def _element_id(node: Any) -> Optional[str]:
    return getattr(node, "element_id", None)


def assemble_network(records: Sequence[Any]) -> Optional[Dict[str, Any]]:
    """Build ``{center, nodes, edges}`` from network query records.

    Store-internal element ids on relationship endpoints are mapped back to
    entity ids; edges are deduplicated by ``(source, target, type)``.
    """
    if not records:
        return None

    nodes: Dict[str, GraphNode] = {}
    element_to_id: Dict[str, str] = {}
    center: Optional[GraphNode] = None
    for record in records:
        for key in ("center", "connected"):
            node = record.get(key)
            if node is None:
                continue
            data = node_to_dict(node)
            element = _element_id(node)
            if element is not None:
                element_to_id[element] = data["id"]
            nodes.setdefault(data["id"], data)
            if key == "center" and center is None:
                center = data

    edges: List[GraphEdge] = []
    seen = set()
    for record in records:
        for rel in record.get("rels") or []:
            source = _endpoint_id(rel.start_node, element_to_id)
            target = _endpoint_id(rel.end_node, element_to_id)
            rel_type = rel.get("type")
            if source is None or target is None:
                continue
            key = (source, target, rel_type)
            if key in seen:
                continue
            seen.add(key)
            edges.append(
                {
                    "source": source,
                    "target": target,
                    "type": rel_type,
                    "properties": loads_properties(rel.get("properties")),
                    "confidence": rel.get("confidence"),
                }
            )

    return {"center": center, "nodes": list(nodes.values()), "edges": edges}


def _endpoint_id(node: Any, element_to_id: Dict[str, str]) -> Optional[str]:
    if node is None:
        return None
    element = _element_id(node)
    if element is not None and element in element_to_id:
        return element_to_id[element]
    return dict(node).get("id")


class GraphStore(ABC):
    """Operations the graph builder needs from a backend."""

    def connect(self) -> None:
        """Open connections and ensure schema; no-op by default."""

    def close(self) -> None:
        """Release connections; no-op by default."""

    @abstractmethod
    def upsert_entity(self, write: EntityWrite) -> bool:
        """Create or merge one entity node; True when created."""

    @abstractmethod
    def upsert_relation(self, write: RelationWrite) -> bool:
        """Create or update one relation edge; True when created."""

    @abstractmethod
    def find_entities(
        self,
        keyword: Optional[str],
        entity_type: Optional[str],
        limit: int,
        offset: int = 0,
        *,
        name_only: bool = False,
    ) -> List[GraphNode]:
        """Entities ordered by name."""

    @abstractmethod
    def relations_among(self, entity_ids: Sequence[str]) -> List[GraphEdge]:
        """Edges whose endpoints are both in ``entity_ids``."""

    @abstractmethod
    def entity_network(self, entity_id: str, depth: int) -> Optional[Dict[str, Any]]:
        """Neighborhood up to ``depth`` hops, or None when the entity is unknown."""

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        """``{entity_count, relation_count, type_distribution}``."""

    @abstractmethod
    def remove_file_references(self, file_ids: Sequence[str]) -> Dict[str, int]:
        """Drop file ids from ``sourceFiles``; delete nodes left with none."""

    @abstractmethod
    def entities_for_file(self, file_id: str) -> List[GraphNode]:
        """Entities whose ``sourceFiles`` contain ``file_id``."""


class Neo4jGraphStore(GraphStore):
    """Graph store backed by :class:`Neo4jManager`.

    The entity upsert strategy is picked once from the APOC check. If the
    APOC query later fails because a function is missing, the store switches
    to :class:`FallbackUpsert` for good and replays the failed upsert.
    """

    FIND_QUERY = """
    MATCH (e:Entity)
    WHERE ($keyword IS NULL OR e.name CONTAINS $keyword
           OR (NOT $nameOnly AND e.properties CONTAINS $keyword))
      AND ($type IS NULL OR e.type = $type)
    RETURN e
    ORDER BY e.name
    SKIP $offset
    LIMIT $limit
    """

    RELATIONS_AMONG_QUERY = """
    MATCH (s:Entity)-[r:RELATION]->(t:Entity)
    WHERE s.id IN $ids AND t.id IN $ids
    RETURN s.id AS source, t.id AS target, r.type AS type,
           r.properties AS properties, r.confidence AS confidence
    """

    NETWORK_QUERY = """
    MATCH (center:Entity {{id: $id}})
    OPTIONAL MATCH path = (center)-[:RELATION*0..{depth}]-(connected:Entity)
    RETURN center, connected, relationships(path) AS rels
    """

    REMOVE_FILES_QUERY = """
    MATCH (e:Entity)
    WHERE any(f IN coalesce(e.sourceFiles, []) WHERE f IN $fileIds)
    WITH e, [x IN e.sourceFiles WHERE NOT x IN $fileIds] AS remaining
    SET e.sourceFiles = remaining
    WITH collect(CASE WHEN size(remaining) = 0 THEN e END) AS orphans, count(e) AS touched
    FOREACH (o IN orphans | DETACH DELETE o)
    RETURN touched, size(orphans) AS deleted
    """

    def __init__(self, manager: Neo4jManager, *, prefer_apoc: bool = True) -> None:
        self.manager = manager
        self.prefer_apoc = prefer_apoc
        self._strategy: Optional[EntityUpsertStrategy] = None

    def connect(self) -> None:
        self.manager.ensure_connected()
        self.manager.create_schema()

    def close(self) -> None:
        self.manager.close()

    @property
    def strategy(self) -> EntityUpsertStrategy:
        if self._strategy is None:
            apoc = self.prefer_apoc and self.manager.check_apoc()
            self._strategy = select_strategy(apoc)
            logger.info(f"Entity upsert strategy: {self._strategy.name}")
        return self._strategy

    def upsert_entity(self, write: EntityWrite) -> bool:
        strategy = self.strategy
        try:
            return self.manager.execute_write(strategy.upsert, write)
        except GraphBackendError as exc:
            if exc.category != GraphErrorCategory.MISSING_CAPABILITY or isinstance(
                strategy, FallbackUpsert
            ):
                raise
            logger.warning(f"APOC helpers unavailable, switching to fallback upsert: {exc}")
            self._strategy = FallbackUpsert()
            self.manager.apoc_available = False
            return self.manager.execute_write(self._strategy.upsert, write)

    def upsert_relation(self, write: RelationWrite) -> bool:
        return self.manager.execute_write(upsert_relation, write)

    def find_entities(
        self,
        keyword: Optional[str],
        entity_type: Optional[str],
        limit: int,
        offset: int = 0,
        *,
        name_only: bool = False,
    ) -> List[GraphNode]:
        records = self.manager.execute_read(
            self.FIND_QUERY,
            {
                "keyword": keyword or None,
                "nameOnly": name_only,
                "type": entity_type or None,
                "offset": int(offset),
                "limit": int(limit),
            },
        )
        return [node_to_dict(record["e"]) for record in records]

    def relations_among(self, entity_ids: Sequence[str]) -> List[GraphEdge]:
        if not entity_ids:
            return []
        records = self.manager.execute_read(self.RELATIONS_AMONG_QUERY, {"ids": list(entity_ids)})
        return [
            {
                "source": record["source"],
                "target": record["target"],
                "type": record["type"],
                "properties": loads_properties(record["properties"]),
                "confidence": record["confidence"],
            }
            for record in records
        ]

    def entity_network(self, entity_id: str, depth: int) -> Optional[Dict[str, Any]]:
        query = self.NETWORK_QUERY.format(depth=int(depth))
        records = self.manager.execute_read(query, {"id": entity_id})
        return assemble_network(records)

    def stats(self) -> Dict[str, Any]:
        entity_count = self.manager.execute_read("MATCH (e:Entity) RETURN count(e) AS count")
        relation_count = self.manager.execute_read(
            "MATCH ()-[r:RELATION]->() RETURN count(r) AS count"
        )
        distribution = self.manager.execute_read(
            "MATCH (e:Entity) RETURN e.type AS type, count(e) AS count ORDER BY count DESC"
        )
        return {
            "entity_count": entity_count[0]["count"] if entity_count else 0,
            "relation_count": relation_count[0]["count"] if relation_count else 0,
            "type_distribution": {record["type"]: record["count"] for record in distribution},
        }

    def remove_file_references(self, file_ids: Sequence[str]) -> Dict[str, int]:
        if not file_ids:
            return {"updated": 0, "deleted": 0}

        def _work(tx: Any) -> Dict[str, int]:
            record = tx.run(self.REMOVE_FILES_QUERY, fileIds=list(file_ids)).single()
            if record is None:
                return {"updated": 0, "deleted": 0}
            return {"updated": record["touched"], "deleted": record["deleted"]}

        return self.manager.execute_write(_work)

    def entities_for_file(self, file_id: str) -> List[GraphNode]:
        records = self.manager.execute_read(
            "MATCH (e:Entity) WHERE $fileId IN e.sourceFiles RETURN e", {"fileId": file_id}
        )
        return [node_to_dict(record["e"]) for record in records]


class InMemoryGraphStore(GraphStore):
    """Process-local graph with the same write semantics as the Neo4j store."""

    def __init__(self) -> None:
        self._nodes: Dict[str, Dict[str, Any]] = {}
        self._edges: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def upsert_entity(self, write: EntityWrite) -> bool:
        with self._lock:
            node = self._nodes.get(write.node_id)
            if node is None:
                self._nodes[write.node_id] = {
                    "id": write.node_id,
                    "name": write.name,
                    "type": write.type,
                    "properties": dumps_properties(write.create_properties()),
                    "sourceFiles": list(dict.fromkeys(write.file_ids)),
                    "version": 1,
                }
                return True

            existing = loads_properties(node["properties"])
            node["properties"] = dumps_properties(write.merge_properties(existing))
            node["sourceFiles"] = node["sourceFiles"] + [
                f for f in write.file_ids if f not in node["sourceFiles"]
            ]
            node["version"] += 1
            return False

    def upsert_relation(self, write: RelationWrite) -> bool:
        with self._lock:
            if write.source_id not in self._nodes or write.target_id not in self._nodes:
                return False
            key = (write.source_id, write.target_id, write.type)
            created = key not in self._edges
            self._edges[key] = {
                "source": write.source_id,
                "target": write.target_id,
                "type": write.type,
                "properties": json_safe(write.properties),
                "confidence": write.confidence,
            }
            return created

    def find_entities(
        self,
        keyword: Optional[str],
        entity_type: Optional[str],
        limit: int,
        offset: int = 0,
        *,
        name_only: bool = False,
    ) -> List[GraphNode]:
        with self._lock:
            matches = [
                node
                for node in self._nodes.values()
                if (not entity_type or node["type"] == entity_type)
                and (
                    not keyword
                    or keyword in node["name"]
                    or (not name_only and keyword in node["properties"])
                )
            ]
            matches.sort(key=lambda node: node["name"])
            return [node_to_dict(node) for node in matches[offset : offset + limit]]

    def relations_among(self, entity_ids: Sequence[str]) -> List[GraphEdge]:
        wanted = set(entity_ids)
        with self._lock:
            return [
                dict(edge)
                for (source, target, _), edge in self._edges.items()
                if source in wanted and target in wanted
            ]

    def entity_network(self, entity_id: str, depth: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            if entity_id not in self._nodes:
                return None
            reached = {entity_id}
            edges: Dict[Tuple[str, str, str], GraphEdge] = {}
            frontier = deque([(entity_id, 0)])
            while frontier:
                current, distance = frontier.popleft()
                if distance >= depth:
                    continue
                for key, edge in self._edges.items():
                    source, target, _ = key
                    if current not in (source, target):
                        continue
                    edges[key] = dict(edge)
                    neighbor = target if source == current else source
                    if neighbor not in reached:
                        reached.add(neighbor)
                        frontier.append((neighbor, distance + 1))
            return {
                "center": node_to_dict(self._nodes[entity_id]),
                "nodes": [node_to_dict(self._nodes[node_id]) for node_id in reached],
                "edges": list(edges.values()),
            }

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            distribution = Counter(node["type"] for node in self._nodes.values())
            return {
                "entity_count": len(self._nodes),
                "relation_count": len(self._edges),
                "type_distribution": dict(distribution.most_common()),
            }

    def remove_file_references(self, file_ids: Sequence[str]) -> Dict[str, int]:
        removed = set(file_ids)
        updated = deleted = 0
        with self._lock:
            for node_id in list(self._nodes):
                node = self._nodes[node_id]
                if not removed.intersection(node["sourceFiles"]):
                    continue
                updated += 1
                node["sourceFiles"] = [f for f in node["sourceFiles"] if f not in removed]
                if not node["sourceFiles"]:
                    self._delete_node(node_id)
                    deleted += 1
        return {"updated": updated, "deleted": deleted}

    def entities_for_file(self, file_id: str) -> List[GraphNode]:
        with self._lock:
            return [node_to_dict(n) for n in self._nodes.values() if file_id in n["sourceFiles"]]

    def _delete_node(self, node_id: str) -> None:
        del self._nodes[node_id]
        for key in [k for k in self._edges if node_id in k[:2]]:
            del self._edges[key]


def create_graph_store(
    backend: str, manager: Optional[Neo4jManager] = None, *, prefer_apoc: bool = True
) -> GraphStore:
    """Graph store for the configured backend."""
    if backend == "memory":
        return InMemoryGraphStore()
    if backend == "neo4j":
        if manager is None:
            raise ValueError("Neo4j graph backend requires a Neo4jManager")
        return Neo4jGraphStore(manager, prefer_apoc=prefer_apoc)
    raise ValueError(f"Unknown graph backend: {backend}")

