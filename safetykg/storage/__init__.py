"""Persistence: document store, repositories and graph backends."""

from safetykg.storage.document_store import DocumentStore, create_document_store
from safetykg.storage.graph_store import GraphStore, InMemoryGraphStore, Neo4jGraphStore
from safetykg.storage.neo4j_manager import Neo4jManager
from safetykg.storage.repositories import FileRepository, OntologyRepository, TaskRepository

__all__ = [
    "DocumentStore",
    "FileRepository",
    "GraphStore",
    "InMemoryGraphStore",
    "Neo4jGraphStore",
    "Neo4jManager",
    "OntologyRepository",
    "TaskRepository",
    "create_document_store",
]
