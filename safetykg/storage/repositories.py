"""Typed repositories over the document store collections."""

from __future__ import annotations

from typing import Any, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from safetykg.errors import OntologyNotFoundError, TaskNotFoundError
from safetykg.storage.document_store import DocumentStore, sort_documents
from safetykg.storage.schemas import (
    BuildTask,
    FileStatus,
    FileUpload,
    OntologyEntityType,
    OntologyLibrary,
    OntologyRelationType,
    TaskStatus,
    utcnow,
)

M = TypeVar("M", bound=BaseModel)


class _Repository(Generic[M]):
    collection: str
    model: Type[M]

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def _dump(self, record: M) -> Dict[str, Any]:
        return record.model_dump(mode="json", by_alias=True)

    def _load(self, document: Dict[str, Any]) -> M:
        return self.model.model_validate(document)

    def get(self, record_id: str) -> Optional[M]:
        document = self.store.get(self.collection, record_id)
        return self._load(document) if document is not None else None

    def save(self, record: M) -> M:
        if hasattr(record, "updated_at"):
            record.updated_at = utcnow()
        self.store.put(self.collection, self._dump(record))
        return record

    def delete(self, record_id: str) -> bool:
        return self.store.delete(self.collection, record_id)

    def find(self, **filters: Any) -> List[M]:
        return [self._load(doc) for doc in self.store.find(self.collection, filters or None)]


class TaskRepository(_Repository[BuildTask]):
    collection = "build_tasks"
    model = BuildTask

    def require(self, task_id: str) -> BuildTask:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Build task not found: {task_id}", {"task_id": task_id})
        return task

    def list_page(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        status: Optional[TaskStatus] = None,
        created_by: Optional[str] = None,
    ) -> Tuple[List[BuildTask], int]:
        """Newest-first page of tasks plus the total match count."""
        filters: Dict[str, Any] = {}
        if status is not None:
            filters["status"] = TaskStatus(status).value
        if created_by is not None:
            filters["createdBy"] = created_by
        documents = sort_documents(
            self.store.find(self.collection, filters or None), "createdAt", reverse=True
        )
        page = max(1, page)
        limit = max(1, limit)
        start = (page - 1) * limit
        return [self._load(doc) for doc in documents[start : start + limit]], len(documents)


class FileRepository(_Repository[FileUpload]):
    collection = "file_uploads"
    model = FileUpload

    def set_status(
        self, file_id: str, status: FileStatus, *, error_message: Optional[str] = None
    ) -> Optional[FileUpload]:
        record = self.get(file_id)
        if record is None:
            return None
        record.status = status
        if error_message is not None:
            record.error_message = error_message
        return self.save(record)


class OntologyRepository(_Repository[OntologyLibrary]):
    collection = "ontologies"
    model = OntologyLibrary

    def require(self, ontology_id: str) -> OntologyLibrary:
        ontology = self.get(ontology_id)
        if ontology is None:
            raise OntologyNotFoundError(
                f"Ontology not found: {ontology_id}", {"ontology_id": ontology_id}
            )
        return ontology

    def list_active(self) -> List[OntologyLibrary]:
        return sorted(self.find(isActive=True), key=lambda o: o.created_at, reverse=True)

    def search(self, query: str) -> List[OntologyLibrary]:
        needle = query.strip().lower()
        if not needle:
            return self.list_active()
        return [
            ontology
            for ontology in self.list_active()
            if needle in ontology.name.lower()
            or needle in ontology.description.lower()
            or any(needle in et.name.lower() for et in ontology.entity_types)
        ]

    def get_default(self) -> Optional[OntologyLibrary]:
        """Active default ontology, else the built-in safety-training one (not persisted)."""
        defaults = self.find(isDefault=True, isActive=True)
        if defaults:
            return defaults[0]
        return default_safety_ontology()


def default_safety_ontology() -> OntologyLibrary:
    """Built-in ontology matching the risk-register vocabulary."""
    return OntologyLibrary(
        id="ontology_default_safety",
        name="安全培训默认本体",
        description="风险辨识与管控的默认实体和关系类型",
        is_default=True,
        entity_types=[
            OntologyEntityType(name="风险单元", display_name="风险单元", color="#fa541c"),
            OntologyEntityType(name="作业活动", display_name="作业活动", color="#1890ff"),
            OntologyEntityType(name="风险项", display_name="风险项", color="#f5222d"),
            OntologyEntityType(name="后果", display_name="后果", color="#722ed1"),
            OntologyEntityType(name="控制措施", display_name="控制措施", color="#52c41a"),
            OntologyEntityType(name="部门", display_name="部门", color="#13c2c2"),
        ],
        relation_types=[
            OntologyRelationType(
                name="contains", display_name="包含", source_types=["风险单元"], target_types=["作业活动"]
            ),
            OntologyRelationType(
                name="has-risk", display_name="存在风险", source_types=["作业活动"], target_types=["风险项"]
            ),
            OntologyRelationType(
                name="causes", display_name="导致", source_types=["风险项"], target_types=["后果"]
            ),
            OntologyRelationType(
                name="mitigates", display_name="控制", source_types=["控制措施"], target_types=["风险项"]
            ),
            OntologyRelationType(
                name="involves", display_name="涉及", source_types=["作业活动"], target_types=["部门"]
            ),
        ],
    )
