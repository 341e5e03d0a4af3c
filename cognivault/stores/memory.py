"""
In-process implementations of the three stores.

Selected with COGNIVAULT_STORE_BACKEND=memory. They keep the same contracts
as the external backends so the whole pipeline runs without PostgreSQL or
Neo4j (local development and the test suite).
"""
import copy
import threading
from collections import Counter, defaultdict, deque
from itertools import combinations
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..errors import NotFound
from ..utils.helpers import utcnow
from .base import (
    FAILED, INTENT_STORES, PENDING,
    DocumentStore, GraphStore, Record, VectorStore,
    concept_node_id, entity_key, entity_node_id, relation_endpoints,
)


class InMemoryDocumentStore(DocumentStore):

    def __init__(self):
        self._files: Dict[str, Record] = {}
        self._chunks: Dict[str, Record] = {}
        self._intents: Dict[str, Record] = {}
        self._lock = threading.RLock()

    def ping(self) -> None:
        return None

    # ==================== Source files ====================

    def create_source_file(self, record: Record) -> None:
        with self._lock:
            self._files[record["id"]] = copy.deepcopy(record)

    def update_source_file(self, file_id: str, **fields) -> None:
        with self._lock:
            if file_id not in self._files:
                raise NotFound(f"Source file {file_id} not found")
            self._files[file_id].update(copy.deepcopy(fields))

    def get_source_file(self, user_id: str, file_id: str) -> Optional[Record]:
        with self._lock:
            record = self._files.get(file_id)
            if record is None or record["user_id"] != user_id:
                return None
            return copy.deepcopy(record)

    def list_source_files(self, user_id: str, limit: Optional[int] = None) -> List[Record]:
        with self._lock:
            files = [copy.deepcopy(f) for f in self._files.values() if f["user_id"] == user_id]
        files.sort(key=lambda f: f["uploaded_at"], reverse=True)
        return files[:limit] if limit else files

    # ==================== Chunks ====================

    def insert_chunk(self, record: Record) -> None:
        with self._lock:
            self._chunks[record["id"]] = copy.deepcopy(record)

    def update_chunk(self, chunk_id: str, **fields) -> None:
        with self._lock:
            if chunk_id not in self._chunks:
                raise NotFound(f"Chunk {chunk_id} not found")
            self._chunks[chunk_id].update(copy.deepcopy(fields))

    def get_chunk(self, chunk_id: str, user_id: Optional[str] = None) -> Optional[Record]:
        with self._lock:
            record = self._chunks.get(chunk_id)
            if record is None or (user_id is not None and record["user_id"] != user_id):
                return None
            return copy.deepcopy(record)

    def list_chunks(
        self,
        user_id: str,
        source_file_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        with self._lock:
            chunks = [
                copy.deepcopy(c) for c in self._chunks.values()
                if c["user_id"] == user_id
                and (source_file_id is None or c["source_file_id"] == source_file_id)
            ]
        chunks.sort(key=lambda c: (c["created_at"], c["chunk_index"]))
        return chunks[:limit] if limit else chunks

    # ==================== Write intents ====================

    def record_intent(self, chunk_id: str, user_id: str) -> None:
        now = utcnow()
        with self._lock:
            self._intents[chunk_id] = {
                "chunk_id": chunk_id,
                "user_id": user_id,
                "graph_status": PENDING,
                "document_status": PENDING,
                "vector_status": PENDING,
                "errors": {},
                "created_at": now,
                "updated_at": now,
            }

    def update_intent(self, chunk_id: str, store: str, status: str, error: Optional[str] = None) -> None:
        if store not in INTENT_STORES:
            raise ValueError(f"Unknown store {store!r}")
        with self._lock:
            intent = self._intents.get(chunk_id)
            if intent is None:
                raise NotFound(f"Write intent {chunk_id} not found")
            intent[f"{store}_status"] = status
            if error:
                intent["errors"][store] = error
            else:
                intent["errors"].pop(store, None)
            intent["updated_at"] = utcnow()

    def get_intent(self, chunk_id: str) -> Optional[Record]:
        with self._lock:
            intent = self._intents.get(chunk_id)
            return copy.deepcopy(intent) if intent else None

    def list_intents(self, user_id: Optional[str] = None, incomplete_only: bool = True) -> List[Record]:
        with self._lock:
            intents = [copy.deepcopy(i) for i in self._intents.values()]
        if user_id is not None:
            intents = [i for i in intents if i["user_id"] == user_id]
        if incomplete_only:
            intents = [
                i for i in intents
                if any(i[f"{s}_status"] in (PENDING, FAILED) for s in INTENT_STORES)
            ]
        intents.sort(key=lambda i: i["created_at"])
        return intents

    # ==================== Bulk ====================

    def delete_user_data(self, user_id: str) -> Dict[str, int]:
        with self._lock:
            file_ids = [k for k, v in self._files.items() if v["user_id"] == user_id]
            chunk_ids = [k for k, v in self._chunks.items() if v["user_id"] == user_id]
            intent_ids = [k for k, v in self._intents.items() if v["user_id"] == user_id]
            for k in file_ids:
                del self._files[k]
            for k in chunk_ids:
                del self._chunks[k]
            for k in intent_ids:
                del self._intents[k]
        return {"source_files": len(file_ids), "chunks": len(chunk_ids)}


EdgeKey = Tuple[str, str, str, str]


class InMemoryGraphStore(GraphStore):
    """
    Property graph held in dicts. Nodes are keyed by (user_id, node id) so
    concept and entity ids only need to be unique per user.
    """

    def __init__(self):
        self._nodes: Dict[Tuple[str, str], Record] = {}
        self._edges: Dict[Tuple[str, EdgeKey], Record] = {}
        self._lock = threading.RLock()

    def ping(self) -> None:
        return None

    def _merge_node(self, user_id: str, node_id: str, node_type: str, label: str, **props) -> None:
        key = (user_id, node_id)
        node = self._nodes.get(key)
        if node is None:
            node = {"id": node_id, "type": node_type, "label": label, "user_id": user_id, "properties": {}}
            self._nodes[key] = node
        node["properties"].update(props)

    def _merge_edge(self, user_id: str, edge_type: str, source: str, target: str, merge_key: str = "", **props) -> Record:
        key = (user_id, (edge_type, source, target, merge_key))
        edge = self._edges.get(key)
        if edge is None:
            edge = {"source": source, "target": target, "type": edge_type, "properties": {}}
            self._edges[key] = edge
        edge["properties"].update(props)
        return edge

    @staticmethod
    def _public(node: Record) -> Record:
        return {
            "id": node["id"],
            "type": node["type"],
            "label": node["label"],
            "properties": copy.deepcopy(node["properties"]),
        }

    def upsert_source_file(self, record: Record) -> None:
        with self._lock:
            self._merge_node(
                record["user_id"], record["id"], "SourceFile", record["filename"],
                filename=record["filename"],
                mime_type=record.get("mime_type"),
                uploaded_at=record["uploaded_at"].isoformat(),
            )

    def write_chunk(self, chunk: Record) -> str:
        user_id, chunk_id = chunk["user_id"], chunk["id"]
        with self._lock:
            self._merge_node(
                user_id, chunk_id, "Chunk", (chunk.get("summary") or chunk["text"])[:80],
                summary=chunk.get("summary") or "",
                text=chunk["text"],
                tags=list(chunk.get("tags") or []),
                chunk_index=chunk["chunk_index"],
                source_file_id=chunk["source_file_id"],
                created_at=chunk["created_at"].isoformat(),
            )
            for tag in chunk.get("tags") or []:
                concept_id = concept_node_id(tag)
                self._merge_node(user_id, concept_id, "Concept", tag, name=tag)
                self._merge_edge(user_id, "TAGGED_WITH", chunk_id, concept_id)
            for entity in chunk.get("entities") or []:
                entity_id = entity_node_id(entity["name"], entity["type"])
                self._merge_node(
                    user_id, entity_id, "Entity", entity["name"],
                    name=entity["name"], key=entity_key(entity["name"]), entity_type=entity["type"],
                )
                self._merge_edge(user_id, "MENTIONS", chunk_id, entity_id)
            for rel in relation_endpoints(chunk):
                subject_id = entity_node_id(rel["subject"], rel["subject_type"])
                object_id = entity_node_id(rel["object"], rel["object_type"])
                self._merge_node(
                    user_id, subject_id, "Entity", rel["subject"],
                    name=rel["subject"], key=entity_key(rel["subject"]), entity_type=rel["subject_type"],
                )
                self._merge_node(
                    user_id, object_id, "Entity", rel["object"],
                    name=rel["object"], key=entity_key(rel["object"]), entity_type=rel["object_type"],
                )
                self._merge_edge(
                    user_id, "RELATED_TO", subject_id, object_id, rel["predicate"],
                    predicate=rel["predicate"], chunk_id=chunk_id,
                )
            source_file_id = chunk["source_file_id"]
            if (user_id, source_file_id) in self._nodes:
                self._merge_edge(user_id, "DERIVED_FROM", chunk_id, source_file_id)
        return chunk_id

    def _chunk_owner(self, chunk_id: str) -> Optional[str]:
        for (user_id, node_id), node in self._nodes.items():
            if node_id == chunk_id and node["type"] == "Chunk":
                return user_id
        return None

    def has_chunk(self, chunk_id: str) -> bool:
        with self._lock:
            return self._chunk_owner(chunk_id) is not None

    def delete_chunk(self, chunk_id: str) -> None:
        with self._lock:
            user_id = self._chunk_owner(chunk_id)
            if user_id is None:
                return
            del self._nodes[(user_id, chunk_id)]
            for key in [k for k, e in self._edges.items()
                        if k[0] == user_id and chunk_id in (e["source"], e["target"])]:
                del self._edges[key]

    def merge_similarity(self, user_id: str, chunk_a: str, chunk_b: str, score: float) -> Record:
        source, target = sorted((chunk_a, chunk_b))
        with self._lock:
            key = (user_id, ("SIMILAR_TO", source, target, ""))
            existing = self._edges.get(key)
            best = max(score, existing["properties"]["score"]) if existing else score
            self._merge_edge(user_id, "SIMILAR_TO", source, target, score=best)
        return {"source": source, "target": target, "score": best}

    def _user_nodes(self, user_id: str) -> List[Record]:
        return [n for (uid, _), n in self._nodes.items() if uid == user_id]

    def _user_edges(self, user_id: str) -> List[Record]:
        return [e for (uid, _), e in self._edges.items() if uid == user_id]

    def full_graph(self, user_id: str) -> Dict[str, List[Record]]:
        with self._lock:
            return {
                "nodes": [self._public(n) for n in self._user_nodes(user_id)],
                "edges": copy.deepcopy(self._user_edges(user_id)),
            }

    def subgraph(self, user_id: str, node_id: str, depth: int = 1) -> Dict[str, List[Record]]:
        with self._lock:
            if (user_id, node_id) not in self._nodes:
                raise NotFound(f"Node {node_id} not found")
            edges = self._user_edges(user_id)
            adjacency = defaultdict(set)
            for edge in edges:
                adjacency[edge["source"]].add(edge["target"])
                adjacency[edge["target"]].add(edge["source"])
            visited = {node_id: 0}
            queue = deque([node_id])
            while queue:
                current = queue.popleft()
                if visited[current] >= depth:
                    continue
                for neighbour in adjacency[current]:
                    if neighbour not in visited:
                        visited[neighbour] = visited[current] + 1
                        queue.append(neighbour)
            return {
                "nodes": [self._public(self._nodes[(user_id, nid)]) for nid in visited],
                "edges": [copy.deepcopy(e) for e in edges
                          if e["source"] in visited and e["target"] in visited],
            }

    def search(self, user_id: str, query: str, node_type: Optional[str] = None, limit: int = 20) -> List[Record]:
        needle = query.lower()
        with self._lock:
            results = []
            for node in self._user_nodes(user_id):
                if node_type and node["type"] != node_type:
                    continue
                props = node["properties"]
                haystacks = [node["id"], props.get("name") or "", props.get("summary") or ""]
                if any(needle in h.lower() for h in haystacks):
                    results.append(self._public(node))
                if len(results) >= limit:
                    break
            return results

    def stats(self, user_id: str) -> Record:
        with self._lock:
            nodes = self._user_nodes(user_id)
            edges = self._user_edges(user_id)
            concept_freq = Counter(
                e["target"] for e in edges if e["type"] == "TAGGED_WITH"
            )
            names = {n["id"]: n["label"] for n in nodes if n["type"] == "Concept"}
            chunks = sorted(
                (n for n in nodes if n["type"] == "Chunk"),
                key=lambda n: n["properties"]["created_at"],
                reverse=True,
            )
            return {
                "total_nodes": len(nodes),
                "total_edges": len(edges),
                "nodes_by_type": dict(Counter(n["type"] for n in nodes)),
                "edges_by_type": dict(Counter(e["type"] for e in edges)),
                "top_concepts": [
                    {"name": names.get(cid, cid), "frequency": freq}
                    for cid, freq in concept_freq.most_common(10)
                ],
                "recent_nodes": [
                    {"id": n["id"], "summary": n["properties"].get("summary", "")}
                    for n in chunks[:5]
                ],
            }

    def concept_cooccurrence(self, user_id: str) -> Dict[str, List[Record]]:
        with self._lock:
            by_chunk = defaultdict(set)
            for edge in self._user_edges(user_id):
                if edge["type"] == "TAGGED_WITH":
                    by_chunk[edge["source"]].add(edge["target"])
            names = {n["id"]: n["label"] for n in self._user_nodes(user_id) if n["type"] == "Concept"}
        counts = Counter()
        pairs = Counter()
        for concepts in by_chunk.values():
            counts.update(concepts)
            pairs.update(combinations(sorted(concepts), 2))
        return {
            "nodes": [{"id": cid, "name": names.get(cid, cid), "count": n} for cid, n in counts.most_common()],
            "edges": [{"source": a, "target": b, "weight": w} for (a, b), w in pairs.most_common()],
        }

    def delete_user(self, user_id: str) -> int:
        with self._lock:
            node_keys = [k for k in self._nodes if k[0] == user_id]
            for k in node_keys:
                del self._nodes[k]
            for k in [k for k in self._edges if k[0] == user_id]:
                del self._edges[k]
        return len(node_keys)


class InMemoryVectorStore(VectorStore):
    """Brute-force cosine search over numpy arrays."""

    def __init__(self):
        self._vectors: Dict[str, np.ndarray] = {}
        self._metadata: Dict[str, Record] = {}
        self._lock = threading.RLock()

    def ping(self) -> None:
        return None

    def upsert(self, vector_id: str, vector: Sequence[float], metadata: Record) -> None:
        with self._lock:
            self._vectors[vector_id] = np.asarray(vector, dtype=float)
            self._metadata[vector_id] = dict(metadata)

    def fetch(self, vector_ids: Sequence[str]) -> Dict[str, Record]:
        with self._lock:
            return {
                vid: {"vector": self._vectors[vid].tolist(), "metadata": dict(self._metadata[vid])}
                for vid in vector_ids if vid in self._vectors
            }

    def query(self, vector: Sequence[float], top_k: int, user_id: str) -> List[Record]:
        q = np.asarray(vector, dtype=float)
        q_norm = float(np.linalg.norm(q))
        with self._lock:
            candidates = [
                (vid, vec) for vid, vec in self._vectors.items()
                if self._metadata[vid].get("user_id") == user_id
            ]
            scored = []
            for vid, vec in candidates:
                denom = q_norm * float(np.linalg.norm(vec))
                score = float(np.dot(q, vec) / denom) if denom else 0.0
                scored.append({"id": vid, "score": score, "metadata": dict(self._metadata[vid])})
        scored.sort(key=lambda m: m["score"], reverse=True)
        return scored[:top_k]

    def delete(self, vector_ids: Sequence[str]) -> int:
        removed = 0
        with self._lock:
            for vid in vector_ids:
                if self._vectors.pop(vid, None) is not None:
                    self._metadata.pop(vid, None)
                    removed += 1
        return removed

    def delete_user(self, user_id: str) -> int:
        with self._lock:
            ids = [vid for vid, meta in self._metadata.items() if meta.get("user_id") == user_id]
        return self.delete(ids)
