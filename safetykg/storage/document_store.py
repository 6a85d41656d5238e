"""Document store for uploads, build tasks and ontologies.

The pipeline only talks to :class:`DocumentStore`. Two backends are provided:
an in-memory store for tests and single-process use, and a JSON-file store
that keeps one file per collection. :class:`CachedDocumentStore` wraps either
one with an LRU/TTL read cache.
"""

from __future__ import annotations

import copy
import json
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from safetykg.utils.cache import LRUTTLCache

Document = Dict[str, Any]
Filter = Dict[str, Any]


def matches(document: Document, filters: Optional[Filter]) -> bool:
    """Equality match on top-level fields; list-valued filters mean "one of"."""
    if not filters:
        return True
    for key, expected in filters.items():
        actual = document.get(key)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class DocumentStore(ABC):
    """Minimal collection-oriented persistence interface.

    Documents are plain JSON-compatible dicts keyed by their ``id`` field.
    """

    @abstractmethod
    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return a copy of the document or None."""

    @abstractmethod
    def put(self, collection: str, document: Document) -> None:
        """Insert or replace the document with the same ``id``."""

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document; returns False if it did not exist."""

    @abstractmethod
    def find(self, collection: str, filters: Optional[Filter] = None) -> List[Document]:
        """Return copies of all documents matching ``filters`` in insertion order."""

    def count(self, collection: str, filters: Optional[Filter] = None) -> int:
        return len(self.find(collection, filters))


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe dict-backed store."""

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def put(self, collection: str, document: Document) -> None:
        doc_id = document.get("id")
        if not doc_id:
            raise ValueError(f"Document for '{collection}' has no id")
        with self._lock:
            self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(document)
            self._on_change(collection)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            removed = self._collections.get(collection, {}).pop(doc_id, None)
            if removed is not None:
                self._on_change(collection)
            return removed is not None

    def find(self, collection: str, filters: Optional[Filter] = None) -> List[Document]:
        with self._lock:
            return [
                copy.deepcopy(doc)
                for doc in self._collections.get(collection, {}).values()
                if matches(doc, filters)
            ]

    def _on_change(self, collection: str) -> None:
        """Hook for persistent subclasses."""


class JsonFileDocumentStore(InMemoryDocumentStore):
    """In-memory store that writes each collection to ``<data_dir>/<collection>.json``."""

    def __init__(self, data_dir: str | Path) -> None:
        super().__init__()
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        for path in sorted(self.data_dir.glob("*.json")):
            self._collections[path.stem] = self._load_collection(path)
        logger.info(
            f"Opened JSON document store at {self.data_dir} "
            f"({len(self._collections)} collections)"
        )

    def _path(self, collection: str) -> Path:
        return self.data_dir / f"{collection}.json"

    def _load_collection(self, path: Path) -> Dict[str, Document]:
        payload = json.loads(path.read_text(encoding="utf-8") or "[]")
        if not isinstance(payload, list):
            raise ValueError(f"Collection file must contain a JSON list: {path}")
        return {doc["id"]: doc for doc in payload if isinstance(doc, dict) and doc.get("id")}

    def _on_change(self, collection: str) -> None:
        documents = list(self._collections.get(collection, {}).values())
        target = self._path(collection)
        tmp = target.with_suffix(".json.tmp")
        tmp.write_text(
            json.dumps(documents, ensure_ascii=False, indent=2, default=str), encoding="utf-8"
        )
        tmp.replace(target)


class CachedDocumentStore(DocumentStore):
    """Read-through LRU/TTL cache in front of another store.

    Writes go straight to the backing store and refresh the cache entry, so a
    reader in the same process never sees a stale record it wrote itself.
    """

    def __init__(
        self,
        backend: DocumentStore,
        *,
        max_size: int = 256,
        ttl_seconds: Optional[float] = 30.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.backend = backend
        self.cache: LRUTTLCache[Document] = LRUTTLCache(max_size, ttl_seconds, clock=clock)

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        key = (collection, doc_id)
        cached = self.cache.get(key)
        if cached is not None:
            return copy.deepcopy(cached)
        document = self.backend.get(collection, doc_id)
        if document is not None:
            self.cache.set(key, copy.deepcopy(document))
        return document

    def put(self, collection: str, document: Document) -> None:
        self.backend.put(collection, document)
        self.cache.set((collection, document["id"]), copy.deepcopy(document))

    def delete(self, collection: str, doc_id: str) -> bool:
        self.cache.invalidate((collection, doc_id))
        return self.backend.delete(collection, doc_id)

    def find(self, collection: str, filters: Optional[Filter] = None) -> List[Document]:
        return self.backend.find(collection, filters)


def create_document_store(
    backend: str = "memory",
    data_dir: str | Path = "data/store",
    *,
    cache_size: int = 256,
    cache_ttl_seconds: Optional[float] = 30.0,
) -> DocumentStore:
    """Build the configured store wrapped in the read cache."""
    if backend == "json":
        base: DocumentStore = JsonFileDocumentStore(data_dir)
    elif backend == "memory":
        base = InMemoryDocumentStore()
    else:
        raise ValueError(f"Unsupported document store backend: {backend}")
    return CachedDocumentStore(base, max_size=cache_size, ttl_seconds=cache_ttl_seconds)


def sort_documents(documents: Iterable[Document], key: str, *, reverse: bool = False) -> List[Document]:
    return sorted(documents, key=lambda doc: str(doc.get(key) or ""), reverse=reverse)
