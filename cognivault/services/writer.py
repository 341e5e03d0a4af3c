"""
Multi-store writer.

Persists one chunk across the graph, document and vector stores. The
document store is the source of truth: each chunk gets a write intent there
before anything else is written, every store outcome is recorded on it, and
`reconcile` later repairs whatever the intent says is missing.
"""
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..embedding import Embedding, EmbeddingProvider
from ..errors import StorePartialFailure, StoreUnavailable
from ..logging_config import logger
from ..schemas import ChunkMetadata
from ..stores.base import (
    ABANDONED, COMMITTED, FAILED, DocumentStore, GraphStore, Record, VectorStore,
)
from ..utils.helpers import normalize_tags, utcnow

DIRECT_INPUT = "direct_input"


@dataclass
class ChunkDraft:
    """Everything needed to persist one chunk."""
    user_id: str
    text: str
    metadata: ChunkMetadata
    embedding: Embedding
    chunk_index: int = 0
    source_file_id: Optional[str] = None


@dataclass
class WriteResult:
    chunk_id: str
    stores: Dict[str, str] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    record: Optional[Record] = None

    @property
    def partial(self) -> bool:
        return bool(self.failures)


class MultiStoreWriter:

    def __init__(
        self,
        documents: DocumentStore,
        graph: GraphStore,
        vectors: VectorStore,
        embeddings: EmbeddingProvider,
    ):
        self.documents = documents
        self.graph = graph
        self.vectors = vectors
        self.embeddings = embeddings

    @staticmethod
    def _vector_metadata(record: Record, semantic: bool) -> Record:
        return {
            "user_id": record["user_id"],
            "chunk_id": record["id"],
            "file_id": record["source_file_id"],
            "summary": record.get("summary") or "",
            "semantic": semantic,
        }

    def _mark(self, chunk_id: str, store: str, status: str, error: Optional[str] = None) -> None:
        try:
            self.documents.update_intent(chunk_id, store, status, error)
        except Exception as e:
            raise StoreUnavailable("Could not update write intent", detail=str(e)) from e

    def write_chunk(self, draft: ChunkDraft) -> WriteResult:
        """
        Persist a chunk to all three stores.

        Graph and vector failures are recorded and logged; the write still
        succeeds as long as the document store accepted the chunk.

        Raises:
            StoreUnavailable: The document store rejected the intent or the chunk
        """
        chunk_id = f"chunk_{uuid.uuid4()}"
        record = {
            "id": chunk_id,
            "user_id": draft.user_id,
            "source_file_id": draft.source_file_id or DIRECT_INPUT,
            "chunk_index": draft.chunk_index,
            "text": draft.text,
            "summary": draft.metadata.summary,
            "tags": normalize_tags(draft.metadata.tags),
            "entities": [e.model_dump() for e in draft.metadata.entities],
            "relations": [r.model_dump() for r in draft.metadata.relations],
            "vector_id": None,
            "graph_node_id": None,
            "created_at": utcnow(),
        }
        result = WriteResult(chunk_id=chunk_id, record=record)

        try:
            self.documents.record_intent(chunk_id, draft.user_id)
        except Exception as e:
            logger.error("Document store rejected write intent", chunk_id=chunk_id, error=str(e))
            raise StoreUnavailable("Document store unavailable", detail=str(e)) from e

        node_id = None
        try:
            node_id = self.graph.write_chunk(record)
            result.stores["graph"] = COMMITTED
        except Exception as e:
            result.stores["graph"] = FAILED
            result.failures["graph"] = str(e)

        try:
            self.documents.insert_chunk(record)
            result.stores["document"] = COMMITTED
        except Exception as e:
            logger.error("Document store write failed", chunk_id=chunk_id, error=str(e))
            try:
                self.documents.update_intent(chunk_id, "document", FAILED, str(e))
            except Exception:
                logger.warning("Could not record document failure on intent", chunk_id=chunk_id)
            raise StoreUnavailable("Document store unavailable", detail=str(e)) from e
        self._mark(chunk_id, "document", COMMITTED)
        self._mark(chunk_id, "graph", result.stores["graph"], result.failures.get("graph"))

        vector_id = None
        try:
            self.vectors.upsert(chunk_id, draft.embedding.vector, self._vector_metadata(record, draft.embedding.semantic))
            vector_id = chunk_id
            result.stores["vector"] = COMMITTED
        except Exception as e:
            result.stores["vector"] = FAILED
            result.failures["vector"] = str(e)
        self._mark(chunk_id, "vector", result.stores["vector"], result.failures.get("vector"))

        try:
            self.documents.update_chunk(chunk_id, graph_node_id=node_id, vector_id=vector_id)
        except Exception as e:
            raise StoreUnavailable("Could not backfill store pointers", detail=str(e)) from e
        record["graph_node_id"] = node_id
        record["vector_id"] = vector_id

        if result.partial:
            partial = StorePartialFailure(chunk_id, result.failures)
            logger.warning(partial.message, chunk_id=chunk_id, failed_stores=partial.failed_stores)
        else:
            logger.debug("Chunk written to all stores", chunk_id=chunk_id)
        return result

    def create_memory(
        self,
        user_id: str,
        text: str,
        metadata: ChunkMetadata,
        source_file_id: Optional[str] = None,
    ) -> WriteResult:
        """Write a single user-authored memory that did not come from an upload."""
        embedding = self.embeddings.embed(text)
        return self.write_chunk(ChunkDraft(
            user_id=user_id,
            text=text,
            metadata=metadata,
            embedding=embedding,
            chunk_index=0,
            source_file_id=source_file_id,
        ))

    def clear_user_data(self, user_id: str) -> Dict[str, int]:
        """
        Delete a user's graph nodes, vectors and document records.

        Every store is attempted; a document-store failure is raised after
        the others have been cleared.
        """
        counts = {"graph_nodes": 0, "vectors": 0, "source_files": 0, "chunks": 0}
        try:
            counts["graph_nodes"] = self.graph.delete_user(user_id)
        except Exception as e:
            logger.warning("Graph clear failed", user_id=user_id, error=str(e))
        try:
            counts["vectors"] = self.vectors.delete_user(user_id)
        except Exception as e:
            logger.warning("Vector clear failed", user_id=user_id, error=str(e))
        try:
            counts.update(self.documents.delete_user_data(user_id))
        except Exception as e:
            raise StoreUnavailable("Document store unavailable", detail=str(e)) from e
        logger.info("Cleared user data", user_id=user_id, **counts)
        return counts

    def reconcile(self, user_id: Optional[str] = None) -> Dict[str, int]:
        """
        Repair chunks whose write intent is incomplete.

        When the chunk record exists, missing graph and vector entries are
        replayed from it (the text is re-embedded). When it does not, any
        graph node or vector written for the id is removed as an orphan.
        """
        report = {"checked": 0, "replayed": 0, "removed": 0, "failed": 0}
        for intent in self.documents.list_intents(user_id=user_id, incomplete_only=True):
            report["checked"] += 1
            chunk_id = intent["chunk_id"]
            try:
                record = self.documents.get_chunk(chunk_id)
                if record is None:
                    self._remove_orphan(chunk_id)
                    report["removed"] += 1
                elif self._replay(record, intent):
                    report["replayed"] += 1
            except Exception as e:
                report["failed"] += 1
                logger.warning("Reconcile failed for chunk", chunk_id=chunk_id, error=str(e))
        logger.info("Reconcile finished", user_id=user_id, **report)
        return report

    def _remove_orphan(self, chunk_id: str) -> None:
        self.graph.delete_chunk(chunk_id)
        self.vectors.delete([chunk_id])
        for store in ("graph", "document", "vector"):
            self._mark(chunk_id, store, ABANDONED)
        logger.info("Removed orphaned chunk entries", chunk_id=chunk_id)

    def _replay(self, record: Record, intent: Record) -> bool:
        chunk_id = record["id"]
        replayed = False
        if intent["document_status"] != COMMITTED:
            self._mark(chunk_id, "document", COMMITTED)
        if intent["graph_status"] != COMMITTED:
            node_id = self.graph.write_chunk(record)
            self.documents.update_chunk(chunk_id, graph_node_id=node_id)
            self._mark(chunk_id, "graph", COMMITTED)
            replayed = True
        if intent["vector_status"] != COMMITTED:
            embedding = self.embeddings.embed(record["text"])
            self.vectors.upsert(chunk_id, embedding.vector, self._vector_metadata(record, embedding.semantic))
            self.documents.update_chunk(chunk_id, vector_id=chunk_id)
            self._mark(chunk_id, "vector", COMMITTED)
            replayed = True
        if replayed:
            logger.info("Replayed missing store writes", chunk_id=chunk_id)
        return replayed
