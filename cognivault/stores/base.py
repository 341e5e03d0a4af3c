"""
Interfaces for the three backing stores.

Records cross these boundaries as plain dicts:

SourceFile: id, user_id, filename, mime_type, size_bytes, uploaded_at,
    status, analysis, total_chunks, total_characters, error
Chunk: id, user_id, source_file_id, chunk_index, text, summary, tags,
    entities, relations, vector_id, graph_node_id, created_at
Intent: chunk_id, user_id, graph_status, document_status, vector_status,
    errors, created_at, updated_at

Every read is scoped by user_id.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

Record = Dict[str, Any]

INTENT_STORES = ("graph", "document", "vector")
PENDING = "pending"
COMMITTED = "committed"
FAILED = "failed"
ABANDONED = "abandoned"


def concept_node_id(name: str) -> str:
    return f"concept:{name}"


def entity_key(name: str) -> str:
    return " ".join(name.split()).lower()


def entity_node_id(name: str, entity_type: str) -> str:
    return f"entity:{entity_type}:{entity_key(name)}"


def relation_endpoints(chunk: Dict[str, Any]) -> List[Dict[str, str]]:
    """
    Resolve each relation's subject and object to entity (name, type),
    reusing the chunk's own entity types and defaulting to "other".
    """
    types = {entity_key(e["name"]): e.get("type", "other") for e in chunk.get("entities") or []}
    resolved = []
    for rel in chunk.get("relations") or []:
        subject, obj = rel["subject"].strip(), rel["object"].strip()
        if not subject or not obj:
            continue
        resolved.append({
            "subject": subject,
            "subject_type": types.get(entity_key(subject), "other"),
            "predicate": rel["predicate"].strip(),
            "object": obj,
            "object_type": types.get(entity_key(obj), "other"),
        })
    return resolved


class DocumentStore(ABC):
    """Source of truth for SourceFiles, Chunks and write intents."""

    @abstractmethod
    def ping(self) -> None:
        """Raise if the store is unreachable."""

    # ==================== Source files ====================

    @abstractmethod
    def create_source_file(self, record: Record) -> None:
        ...

    @abstractmethod
    def update_source_file(self, file_id: str, **fields) -> None:
        ...

    @abstractmethod
    def get_source_file(self, user_id: str, file_id: str) -> Optional[Record]:
        ...

    @abstractmethod
    def list_source_files(self, user_id: str, limit: Optional[int] = None) -> List[Record]:
        """Newest upload first."""

    # ==================== Chunks ====================

    @abstractmethod
    def insert_chunk(self, record: Record) -> None:
        ...

    @abstractmethod
    def update_chunk(self, chunk_id: str, **fields) -> None:
        ...

    @abstractmethod
    def get_chunk(self, chunk_id: str, user_id: Optional[str] = None) -> Optional[Record]:
        ...

    @abstractmethod
    def list_chunks(
        self,
        user_id: str,
        source_file_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """Creation order, oldest first; ties broken by chunk_index."""

    # ==================== Write intents ====================

    @abstractmethod
    def record_intent(self, chunk_id: str, user_id: str) -> None:
        """Record a pending write to all three stores."""

    @abstractmethod
    def update_intent(self, chunk_id: str, store: str, status: str, error: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def get_intent(self, chunk_id: str) -> Optional[Record]:
        ...

    @abstractmethod
    def list_intents(self, user_id: Optional[str] = None, incomplete_only: bool = True) -> List[Record]:
        """Intents with any store still pending or failed when incomplete_only."""

    # ==================== Bulk ====================

    @abstractmethod
    def delete_user_data(self, user_id: str) -> Dict[str, int]:
        """Delete every SourceFile, Chunk and intent of a user; return counts."""


class GraphStore(ABC):
    """Typed nodes (Chunk, SourceFile, Concept, Entity) and their edges."""

    @abstractmethod
    def ping(self) -> None:
        ...

    @abstractmethod
    def upsert_source_file(self, record: Record) -> None:
        ...

    @abstractmethod
    def write_chunk(self, chunk: Record) -> str:
        """
        Write the Chunk node with TAGGED_WITH, MENTIONS, RELATED_TO and
        DERIVED_FROM edges. Returns the graph node id.
        """

    @abstractmethod
    def has_chunk(self, chunk_id: str) -> bool:
        ...

    @abstractmethod
    def delete_chunk(self, chunk_id: str) -> None:
        ...

    @abstractmethod
    def merge_similarity(self, user_id: str, chunk_a: str, chunk_b: str, score: float) -> Record:
        """
        One undirected SIMILAR_TO edge per unordered chunk pair, keeping the
        highest score seen. Returns {source, target, score}.
        """

    @abstractmethod
    def full_graph(self, user_id: str) -> Dict[str, List[Record]]:
        ...

    @abstractmethod
    def subgraph(self, user_id: str, node_id: str, depth: int = 1) -> Dict[str, List[Record]]:
        """Raises NotFound when node_id is not one of the user's nodes."""

    @abstractmethod
    def search(self, user_id: str, query: str, node_type: Optional[str] = None, limit: int = 20) -> List[Record]:
        ...

    @abstractmethod
    def stats(self, user_id: str) -> Record:
        """
        total_nodes, total_edges, nodes_by_type, edges_by_type,
        top_concepts [{name, frequency}], recent_nodes [{id, summary}].
        """

    @abstractmethod
    def concept_cooccurrence(self, user_id: str) -> Dict[str, List[Record]]:
        """
        nodes [{id, name, count}] and edges [{source, target, weight}] where
        weight counts the chunks tagged with both concepts.
        """

    @abstractmethod
    def delete_user(self, user_id: str) -> int:
        """DETACH DELETE every node of the user; return the node count."""


class VectorStore(ABC):
    @abstractmethod
    def ping(self) -> None:
        ...

    @abstractmethod
    def upsert(self, vector_id: str, vector: Sequence[float], metadata: Record) -> None:
        ...

    @abstractmethod
    def fetch(self, vector_ids: Sequence[str]) -> Dict[str, Record]:
        """id -> {vector, metadata} for the ids that exist."""

    @abstractmethod
    def query(self, vector: Sequence[float], top_k: int, user_id: str) -> List[Record]:
        """[{id, score, metadata}] by descending cosine similarity, user-filtered."""

    @abstractmethod
    def delete(self, vector_ids: Sequence[str]) -> int:
        ...

    @abstractmethod
    def delete_user(self, user_id: str) -> int:
        ...
