"""Knowledge graph build pipeline.

This module wires the stages of a build task together:
1. Upload: persist file records and a pending task
2. Parsing of every file (Excel, Word, PDF, text)
3. Knowledge extraction (LLM, with the risk-register fallback)
4. Entity alignment
5. Graph build once a reviewer confirms the drafts

Steps 2-4 run on a background thread; the task record is the only shared
state, so callers poll :meth:`KnowledgeGraphPipeline.get_extraction_result`.
"""

import os
import shutil
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger

from safetykg.alignment.service import AlignmentService
from safetykg.errors import ParseError, SafetyKGError, UnsupportedFileTypeError
from safetykg.extraction.llm_extractor import LLMExtractor
from safetykg.extraction.service import ExtractionService
from safetykg.graph.builder import GraphBuilder
from safetykg.ingestion.document_parser import DocumentParser
from safetykg.ingestion.models import ParsedDocument
from safetykg.storage.document_store import DocumentStore, create_document_store
from safetykg.storage.graph_store import GraphStore, create_graph_store
from safetykg.storage.neo4j_manager import Neo4jManager
from safetykg.storage.repositories import FileRepository, OntologyRepository, TaskRepository
from safetykg.storage.schemas import (
    BuildTask,
    FileRef,
    FileStatus,
    FileUpload,
    OntologyLibrary,
    TaskStatus,
    UserModifications,
    apply_field_updates,
)
from safetykg.utils.config import Config
from safetykg.utils.embeddings import EmbeddingGenerator
from safetykg.utils.llm_client import ChatClient

STAGE_PARSING = "正在解析文档..."
ERROR_NO_CONTENT = "没有可用的文档内容"
MIN_SEARCH_CHARS = 2

TASK_SUMMARY_FIELDS = {
    "id",
    "task_type",
    "status",
    "progress",
    "stage_message",
    "error_message",
    "files",
    "ontology_mode",
    "ontology_id",
    "build_stats",
    "created_by",
    "created_at",
    "updated_at",
    "completed_at",
}

EXTRACTION_RESULT_FIELDS = {
    "id",
    "status",
    "progress",
    "stage_message",
    "error_message",
    "draft_ontology",
    "draft_entities",
    "draft_relations",
    "extraction_meta",
    "extraction_debug",
}


class KnowledgeGraphPipeline:
    """Facade over upload, background processing, confirmation and graph reads.

    Example:
        >>> pipeline = KnowledgeGraphPipeline.from_config(load_config())
        >>> task_id = pipeline.upload_and_start(["风险辨识清单.xlsx"])
        >>> pipeline.get_extraction_result(task_id)["status"]
        'confirming'
        >>> pipeline.confirm_and_build(task_id)
    """

    def __init__(
        self,
        config: Config,
        *,
        store: DocumentStore,
        parser: DocumentParser,
        extraction: ExtractionService,
        alignment: AlignmentService,
        builder: GraphBuilder,
    ) -> None:
        self.config = config
        self.store = store
        self.tasks = TaskRepository(store)
        self.files = FileRepository(store)
        self.ontologies = OntologyRepository(store)
        self.parser = parser
        self.extraction = extraction
        self.alignment = alignment
        self.builder = builder
        self._workers: Dict[str, threading.Thread] = {}

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        store: Optional[DocumentStore] = None,
        graph_store: Optional[GraphStore] = None,
        chat_client: Optional[ChatClient] = None,
        embedder: Optional[EmbeddingGenerator] = None,
    ) -> "KnowledgeGraphPipeline":
        """Build every collaborator from configuration; any of them may be injected."""
        store = store or create_document_store(
            config.storage.backend,
            config.storage.data_dir,
            cache_size=config.storage.cache_size,
            cache_ttl_seconds=config.storage.cache_ttl_seconds,
        )
        tasks = TaskRepository(store)
        files = FileRepository(store)
        ontologies = OntologyRepository(store)

        extractor: Optional[LLMExtractor] = None
        if config.extraction.enable_llm:
            chat_client = chat_client or ChatClient(config.resolved_llm_config())
            extractor = LLMExtractor(chat_client, config.extraction)

        if embedder is None:
            embedder = _create_embedder(config)

        if graph_store is None:
            manager = (
                Neo4jManager(config.database) if config.graph.backend == "neo4j" else None
            )
            graph_store = create_graph_store(
                config.graph.backend, manager, prefer_apoc=config.graph.prefer_apoc
            )

        return cls(
            config,
            store=store,
            parser=DocumentParser(config.ingestion),
            extraction=ExtractionService(tasks, ontologies, extractor, config.extraction),
            alignment=AlignmentService(tasks, embedder, config.alignment),
            builder=GraphBuilder(graph_store, tasks, files, config.graph),
        )

    # ------------------------------------------------------------------ tasks

    def upload_and_start(
        self,
        paths: Sequence[Union[str, Path]],
        created_by: Optional[str] = None,
        ontology_mode: str = "auto",
        ontology_id: Optional[str] = None,
        *,
        background: bool = True,
    ) -> str:
        """Register the files, create a task and start processing it.

        Raises:
            ValueError: No files or more than the per-task limit
            UnsupportedFileTypeError: A file has an unsupported extension
            FileNotFoundError: A path does not exist
        """
        sources = [Path(p) for p in paths]
        limit = self.config.ingestion.max_files_per_task
        if not sources:
            raise ValueError("请上传文件")
        if len(sources) > limit:
            raise ValueError(f"最多上传{limit}个文件")
        if ontology_mode not in ("auto", "existing"):
            raise ValueError(f"Unknown ontology mode: {ontology_mode}")

        file_types = []
        for source in sources:
            file_type = self.parser.detect_file_type(source.name)
            if file_type is None:
                raise UnsupportedFileTypeError(
                    f"不支持的文件类型: {source.name}", filename=source.name
                )
            if not source.is_file():
                raise FileNotFoundError(f"File not found: {source}")
            file_types.append(file_type)

        upload_dir = Path(self.config.upload_path)
        upload_dir.mkdir(parents=True, exist_ok=True)

        refs: List[FileRef] = []
        for source, file_type in zip(sources, file_types):
            upload = FileUpload(
                filename=source.name,
                original_name=source.name,
                file_type=file_type,
                file_size=source.stat().st_size,
                file_path="",
                created_by=created_by,
            )
            stored = upload_dir / f"{upload.id}{source.suffix.lower()}"
            shutil.copy2(source, stored)
            upload.filename = stored.name
            upload.file_path = str(stored)
            self.files.save(upload)
            refs.append(FileRef(file_id=upload.id, filename=source.name))

        task = BuildTask(
            files=refs,
            ontology_mode=ontology_mode,
            ontology_id=ontology_id,
            created_by=created_by,
        )
        self.tasks.save(task)
        logger.info(f"Created build task {task.id} with {len(refs)} files")

        if background:
            worker = threading.Thread(
                target=self._run_task, args=(task.id,), name=f"build-{task.id}", daemon=True
            )
            self._workers[task.id] = worker
            worker.start()
        else:
            self._run_task(task.id)
        return task.id

    def wait(self, task_id: str, timeout: Optional[float] = None) -> None:
        """Block until the background worker for ``task_id`` finishes."""
        worker = self._workers.get(task_id)
        if worker is not None:
            worker.join(timeout)

    def _run_task(self, task_id: str) -> None:
        """Parse, extract and align; failures end up on the task, never raised."""
        try:
            self._process(task_id)
        except SafetyKGError as exc:
            logger.warning(f"Task {task_id} stopped: {exc.message}")
            self._record_failure(task_id, exc.message)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Unexpected error while processing task {task_id}")
            self._record_failure(task_id, f"处理失败: {exc}")
        finally:
            self._workers.pop(task_id, None)

    def _process(self, task_id: str) -> None:
        task = self.tasks.require(task_id)
        task.transition_to(TaskStatus.PARSING, progress=10, stage_message=STAGE_PARSING)
        self.tasks.save(task)

        documents = self._parse_files(task)
        if not any(doc.text.strip() for doc in documents):
            task = self.tasks.require(task_id)
            task.fail(ERROR_NO_CONTENT)
            self.tasks.save(task)
            logger.warning(f"Task {task_id} has no usable document content")
            return

        self.extraction.extract_from_documents(
            task_id,
            documents,
            ontology_mode=task.ontology_mode,
            ontology_id=task.ontology_id,
        )
        self.alignment.align_entities(task_id)

    def _parse_files(self, task: BuildTask) -> List[ParsedDocument]:
        documents: List[ParsedDocument] = []
        for ref in task.files:
            upload = self.files.get(ref.file_id)
            if upload is None:
                logger.warning(f"File record {ref.file_id} missing for task {task.id}")
                continue
            self.files.set_status(upload.id, FileStatus.PROCESSING)
            try:
                document = self.parser.parse(
                    upload.file_path,
                    upload.file_type,
                    file_id=upload.id,
                    filename=upload.original_name,
                )
            except ParseError as exc:
                logger.warning(f"Skipping {upload.original_name}: {exc.message}")
                self.files.set_status(upload.id, FileStatus.FAILED, error_message=exc.message)
                continue

            upload = self.files.get(upload.id) or upload
            upload.extracted_text = document.text
            upload.extracted_data = {
                "metadata": document.metadata,
                "sheets": [
                    {"name": sheet.name, "headers": sheet.headers, "rowCount": len(sheet.rows)}
                    for sheet in document.sheets
                ],
            }
            self.files.save(upload)
            documents.append(document)
        return documents

    def _record_failure(self, task_id: str, message: str) -> None:
        task = self.tasks.get(task_id)
        if task is None or task.is_terminal:
            return
        task.fail(message)
        self.tasks.save(task)

    def get_extraction_result(self, task_id: str) -> Dict[str, Any]:
        """Task status with the draft ontology, entities and relations."""
        task = self.tasks.require(task_id)
        return task.model_dump(mode="json", by_alias=True, include=EXTRACTION_RESULT_FIELDS)

    def confirm_and_build(
        self,
        task_id: str,
        modifications: Union[UserModifications, Dict[str, Any], None] = None,
    ) -> Dict[str, Any]:
        """Apply the reviewer's edits and write the task into the graph.

        Raises:
            InvalidTaskTransitionError: Task is not awaiting confirmation
            GraphBackendError: Graph write failed (task marked failed)
        """
        try:
            return self.builder.build_graph(task_id, modifications)
        except SafetyKGError:
            raise
        except Exception as exc:
            logger.exception(f"Unexpected error while building task {task_id}")
            self._record_failure(task_id, f"图谱构建失败: {exc}")
            raise

    def list_tasks(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[Union[TaskStatus, str]] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        tasks, total = self.tasks.list_page(
            page=page, limit=limit, status=status, created_by=created_by
        )
        return {
            "tasks": [
                task.model_dump(mode="json", by_alias=True, include=TASK_SUMMARY_FIELDS)
                for task in tasks
            ],
            "total": total,
            "page": max(1, page),
            "limit": max(1, limit),
        }

    def delete_task(self, task_id: str) -> Dict[str, Any]:
        """Delete a task, its graph contributions, its uploads and stored files."""
        task = self.tasks.require(task_id)
        if task.status == TaskStatus.BUILDING:
            raise ValueError(f"Task {task_id} is being built and cannot be deleted")

        graph_result = {"updated": 0, "deleted": 0}
        if task.confirmed_at is not None and task.file_ids:
            graph_result = self.builder.delete_task_data(task.file_ids)

        for file_id in task.file_ids:
            upload = self.files.get(file_id)
            if upload is None:
                continue
            if upload.file_path:
                Path(upload.file_path).unlink(missing_ok=True)
            self.files.delete(file_id)

        self.tasks.delete(task_id)
        logger.info(f"Deleted task {task_id}: graph {graph_result}")
        return {"task_id": task_id, "graph": graph_result}

    # ------------------------------------------------------------- ontologies

    def list_ontologies(self) -> List[OntologyLibrary]:
        return self.ontologies.list_active()

    def search_ontologies(self, query: str) -> List[OntologyLibrary]:
        return self.ontologies.search(query)

    def get_ontology(self, ontology_id: str) -> OntologyLibrary:
        return self.ontologies.require(ontology_id)

    def create_ontology(
        self, data: Union[OntologyLibrary, Dict[str, Any]], created_by: Optional[str] = None
    ) -> OntologyLibrary:
        ontology = (
            data.model_copy(deep=True)
            if isinstance(data, OntologyLibrary)
            else OntologyLibrary.model_validate(data)
        )
        if not ontology.name.strip():
            raise ValueError("Ontology name is required")
        if created_by is not None:
            ontology.created_by = created_by
        if ontology.is_default:
            self._clear_default()
        self.ontologies.save(ontology)
        logger.info(f"Created ontology {ontology.id} ({ontology.name})")
        return ontology

    def update_ontology(self, ontology_id: str, changes: Dict[str, Any]) -> OntologyLibrary:
        existing = self.ontologies.require(ontology_id)
        updated = apply_field_updates(
            existing, changes, protected=("id", "created_at", "created_by")
        )
        if updated.is_default and not existing.is_default:
            self._clear_default()
        self.ontologies.save(updated)
        return updated

    def delete_ontology(self, ontology_id: str) -> OntologyLibrary:
        """Soft delete: the ontology stays stored but is no longer listed."""
        ontology = self.ontologies.require(ontology_id)
        ontology.is_active = False
        self.ontologies.save(ontology)
        logger.info(f"Deactivated ontology {ontology_id}")
        return ontology

    def _clear_default(self) -> None:
        for ontology in self.ontologies.find(isDefault=True):
            ontology.is_default = False
            self.ontologies.save(ontology)

    # ------------------------------------------------------------------ graph

    def query_graph(
        self,
        keyword: Optional[str] = None,
        entity_type: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Dict[str, Any]:
        return self.builder.query_graph(keyword, entity_type, limit, offset)

    def get_entity_network(self, entity_id: str, depth: int = 1) -> Optional[Dict[str, Any]]:
        return self.builder.get_entity_network(entity_id, depth)

    def get_graph_stats(self) -> Dict[str, Any]:
        return self.builder.get_graph_stats()

    def search_entities(self, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        query = (query or "").strip()
        if len(query) < MIN_SEARCH_CHARS:
            return []
        return self.builder.search_entities(query, limit)

    def close(self) -> None:
        self.builder.store.close()


def _create_embedder(config: Config) -> Optional[EmbeddingGenerator]:
    """Embedding generator, or None when the remote provider has no credentials."""
    embedding_config = config.resolved_embedding_config()
    if (
        embedding_config.provider == "openai"
        and not embedding_config.api_key
        and not os.getenv("OPENAI_API_KEY")
    ):
        logger.warning("No embedding API key configured; alignment will run degraded")
        return None
    return EmbeddingGenerator(embedding_config)
