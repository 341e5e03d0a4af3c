from typing import Any, Dict, List

import pytest

from cognivault.errors import NotFound
from cognivault.stores.graph import Neo4jGraphStore, _edge, _node
from cognivault.stores.vectors import PgVectorStore, _parse_meta, _parse_vector, _vector_literal

from conftest import make_chunk


# ==================== Neo4j fakes ====================

class FakeNode(dict):
    def __init__(self, labels, **props):
        super().__init__(props)
        self.labels = frozenset(labels)


class FakeRelationship(dict):
    def __init__(self, rel_type, start_node, end_node, **props):
        super().__init__(props)
        self.type = rel_type
        self.start_node = start_node
        self.end_node = end_node


class FakeResult:
    def __init__(self, rows: List[Dict[str, Any]]):
        self._rows = rows

    def single(self):
        return self._rows[0] if self._rows else None

    def __iter__(self):
        return iter(self._rows)


class FakeSession:
    def __init__(self, driver: "FakeDriver"):
        self._driver = driver

    def __enter__(self):
        return self

    def __exit__(self, _exc_type, _exc, _tb):
        return None

    def run(self, query: str, **params: Any) -> FakeResult:
        q = " ".join(query.split())
        self._driver.queries.append((q, params))
        for needle, rows in self._driver.responses:
            if needle in q:
                return FakeResult(rows)
        return FakeResult([])


class FakeDriver:
    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.queries = []

    def session(self) -> FakeSession:
        return FakeSession(self)


def graph_store(responses=None) -> Neo4jGraphStore:
    store = Neo4jGraphStore.__new__(Neo4jGraphStore)
    store.driver = FakeDriver(responses)
    return store


# ==================== Neo4j record conversion ====================

def test_node_keeps_known_label_and_hides_user_id():
    node = FakeNode(["Concept"], id="concept:rust", name="rust", user_id="alice")
    assert _node(node) == {
        "id": "concept:rust",
        "type": "Concept",
        "label": "rust",
        "properties": {"id": "concept:rust", "name": "rust"},
    }


def test_node_label_falls_back_through_filename_summary_and_id():
    source = FakeNode(["SourceFile"], id="file_1", filename="notes.txt")
    chunk = FakeNode(["Chunk"], id="chunk_1", summary="s" * 120)
    bare = FakeNode(["Chunk"], id="chunk_2", summary="")
    unknown = FakeNode(["Legacy"], id="old_1")

    assert _node(source)["label"] == "notes.txt"
    assert _node(chunk)["label"] == "s" * 80
    assert _node(bare)["label"] == "chunk_2"
    assert _node(unknown)["type"] == "Node"


def test_edge_uses_application_ids_of_its_endpoints():
    a = FakeNode(["Chunk"], id="chunk_a")
    b = FakeNode(["Chunk"], id="chunk_b")
    rel = FakeRelationship("SIMILAR_TO", a, b, score=0.9)
    assert _edge(rel) == {"source": "chunk_a", "target": "chunk_b", "type": "SIMILAR_TO", "properties": {"score": 0.9}}


# ==================== Neo4jGraphStore ====================

def test_write_chunk_returns_the_chunk_id():
    store = graph_store()
    chunk = make_chunk("chunk_1", ["rust", "memory"])

    assert store.write_chunk(chunk) == "chunk_1"

    queries = [q for q, _ in store.driver.queries]
    assert any("TAGGED_WITH" in q for q in queries)
    assert not any("MENTIONS" in q for q in queries)
    assert not any("elementId" in q for q in queries)


def test_merge_similarity_orders_endpoints():
    store = graph_store([("SIMILAR_TO", [{"score": 0.91}])])

    edge = store.merge_similarity("alice", "chunk_b", "chunk_a", 0.91)

    assert edge == {"source": "chunk_a", "target": "chunk_b", "score": 0.91}
    _, params = store.driver.queries[-1]
    assert (params["source"], params["target"]) == ("chunk_a", "chunk_b")


def test_merge_similarity_without_both_chunks_is_not_found():
    with pytest.raises(NotFound):
        graph_store().merge_similarity("alice", "chunk_a", "chunk_gone", 0.9)


def test_full_graph_converts_nodes_and_edges():
    chunk = FakeNode(["Chunk"], id="chunk_1", summary="Rust", user_id="alice")
    concept = FakeNode(["Concept"], id="concept:rust", name="rust", user_id="alice")
    store = graph_store([
        ("RETURN n", [{"n": chunk}, {"n": concept}]),
        ("RETURN r", [{"r": FakeRelationship("TAGGED_WITH", chunk, concept)}]),
    ])

    graph = store.full_graph("alice")

    assert [n["id"] for n in graph["nodes"]] == ["chunk_1", "concept:rust"]
    assert graph["edges"][0]["source"] == "chunk_1"
    assert graph["edges"][0]["target"] == "concept:rust"


def test_subgraph_of_unknown_node_is_not_found():
    with pytest.raises(NotFound):
        graph_store().subgraph("alice", "chunk_nope", depth=2)


def test_search_with_unknown_type_skips_the_query():
    store = graph_store()
    assert store.search("alice", "rust", node_type="Person") == []
    assert store.driver.queries == []


def test_delete_user_reports_deleted_nodes():
    assert graph_store([("DETACH DELETE", [{"deleted": 4}])]).delete_user("alice") == 4
    assert graph_store().delete_user("alice") == 0


# ==================== pgvector helpers ====================

def test_vector_literal():
    assert _vector_literal([1, 0.5, -2]) == "[1.0,0.5,-2.0]"


def test_parse_vector_accepts_text_and_sequences():
    assert _parse_vector("[1.0,2.5]") == [1.0, 2.5]
    assert _parse_vector("[]") == []
    assert _parse_vector((1, 2)) == [1.0, 2.0]


def test_parse_meta():
    assert _parse_meta(None) == {}
    assert _parse_meta('{"user_id": "alice", "semantic": true}') == {"user_id": "alice", "semantic": True}
    assert _parse_meta({"user_id": "bob"}) == {"user_id": "bob"}


def test_empty_id_lists_never_touch_the_database():
    store = PgVectorStore(engine=None)
    assert store.fetch([]) == {}
    assert store.delete([]) == 0
