import math

import pytest

from cognivault.errors import NotFound
from cognivault.services.similarity import SimilarityLinker, SimilarityPolicy
from cognivault.stores.memory import InMemoryGraphStore, InMemoryVectorStore


def unit(angle_degrees: float):
    rad = math.radians(angle_degrees)
    return [math.cos(rad), math.sin(rad), 0.0]


def setup_vectors(vectors=None):
    vectors = vectors or InMemoryVectorStore()
    vectors.upsert("chunk_a", unit(0), {"user_id": "alice", "semantic": True})
    vectors.upsert("chunk_b", unit(20), {"user_id": "alice", "semantic": True})
    vectors.upsert("chunk_c", unit(80), {"user_id": "alice", "semantic": True})
    vectors.upsert("chunk_bob", unit(1), {"user_id": "bob", "semantic": True})
    return vectors


def similarity_edges(graph, user_id="alice"):
    return [e for e in graph.full_graph(user_id)["edges"] if e["type"] == "SIMILAR_TO"]


def score_between(vectors, a, b):
    stored = vectors.fetch([a])[a]
    return next(m["score"] for m in vectors.query(stored["vector"], 10, "alice") if m["id"] == b)


def test_threshold_is_exclusive():
    policy = SimilarityPolicy(link_threshold=0.75)
    assert not policy.should_link(0.75)
    assert policy.should_link(0.7500001)
    assert not policy.should_link(0.2)


def test_neighbour_exactly_at_threshold_is_not_linked():
    vectors = setup_vectors()
    graph = InMemoryGraphStore()
    boundary = score_between(vectors, "chunk_a", "chunk_b")
    linker = SimilarityLinker(vectors, graph, SimilarityPolicy(link_threshold=boundary))

    assert linker.link("chunk_a", "alice") == []
    assert similarity_edges(graph) == []


def test_neighbour_just_above_threshold_is_linked():
    vectors = setup_vectors()
    graph = InMemoryGraphStore()
    boundary = score_between(vectors, "chunk_a", "chunk_b")
    linker = SimilarityLinker(vectors, graph, SimilarityPolicy(link_threshold=boundary - 1e-9))

    edges = linker.link("chunk_a", "alice")

    assert edges == [{"source": "chunk_a", "target": "chunk_b", "score": pytest.approx(boundary)}]
    assert len(similarity_edges(graph)) == 1


def test_no_neighbours_above_threshold_creates_nothing():
    vectors = setup_vectors()
    graph = InMemoryGraphStore()
    linker = SimilarityLinker(vectors, graph, SimilarityPolicy(link_threshold=0.99))

    assert linker.link("chunk_c", "alice") == []
    assert similarity_edges(graph) == []


def test_links_stay_within_the_user_and_skip_self():
    vectors = setup_vectors()
    graph = InMemoryGraphStore()
    linker = SimilarityLinker(vectors, graph, SimilarityPolicy(link_threshold=0.6))

    edges = linker.link("chunk_a", "alice")

    targets = {e["target"] for e in edges} | {e["source"] for e in edges}
    assert "chunk_bob" not in targets
    assert all(e["source"] != e["target"] for e in edges)


def test_both_directions_produce_one_edge_with_the_best_score():
    vectors = setup_vectors()
    graph = InMemoryGraphStore()
    linker = SimilarityLinker(vectors, graph, SimilarityPolicy(link_threshold=0.6))

    linker.link("chunk_a", "alice")
    linker.link("chunk_b", "alice")

    edges = similarity_edges(graph)
    assert len(edges) == 1
    assert (edges[0]["source"], edges[0]["target"]) == ("chunk_a", "chunk_b")


def test_merge_similarity_keeps_the_maximum_score():
    graph = InMemoryGraphStore()
    graph.merge_similarity("alice", "chunk_x", "chunk_y", 0.8)
    graph.merge_similarity("alice", "chunk_y", "chunk_x", 0.9)
    result = graph.merge_similarity("alice", "chunk_x", "chunk_y", 0.85)

    assert result == {"source": "chunk_x", "target": "chunk_y", "score": 0.9}
    assert len(similarity_edges(graph)) == 1


def test_unknown_chunk_is_not_found():
    linker = SimilarityLinker(setup_vectors(), InMemoryGraphStore(), SimilarityPolicy())
    with pytest.raises(NotFound):
        linker.link("chunk_missing", "alice")
    with pytest.raises(NotFound):
        linker.link("chunk_bob", "alice")


def test_link_all_counts_skipped_chunks():
    linker = SimilarityLinker(setup_vectors(), InMemoryGraphStore(), SimilarityPolicy(link_threshold=0.6))
    report = linker.link_all(["chunk_a", "chunk_b", "chunk_missing"], "alice")
    assert report == {"chunks": 3, "edges": 1, "skipped": 1, "failed": 0}


def test_chunk_similarity_uses_cosine_only_for_semantic_vectors():
    policy = SimilarityPolicy()
    semantic_a = {"vector": unit(0), "metadata": {"semantic": True}}
    semantic_b = {"vector": unit(0), "metadata": {"semantic": True}}
    fallback_b = {"vector": unit(0), "metadata": {"semantic": False}}

    assert policy.chunk_similarity(["x"], ["y"], semantic_a, semantic_b) == pytest.approx(1.0)
    assert policy.chunk_similarity(["x"], ["y"], semantic_a, fallback_b) == 0.0
    assert policy.chunk_similarity(["science"], ["science", "ethics"]) == 0.5


class PartlyBrokenGraphStore(InMemoryGraphStore):
    """Rejects every edge that touches one chunk, as Neo4j does when its node is missing."""

    def __init__(self, missing_chunk):
        super().__init__()
        self.missing_chunk = missing_chunk

    def merge_similarity(self, user_id, chunk_a, chunk_b, score):
        if self.missing_chunk in (chunk_a, chunk_b):
            raise NotFound(f"Chunk {self.missing_chunk} not found in graph")
        return super().merge_similarity(user_id, chunk_a, chunk_b, score)


class DownGraphStore(InMemoryGraphStore):
    def merge_similarity(self, user_id, chunk_a, chunk_b, score):
        raise ConnectionError("neo4j unreachable")


def test_failed_edge_does_not_stop_the_other_neighbours():
    vectors = setup_vectors()
    vectors.upsert("chunk_d", unit(10), {"user_id": "alice", "semantic": True})
    graph = PartlyBrokenGraphStore("chunk_b")
    linker = SimilarityLinker(vectors, graph, SimilarityPolicy(link_threshold=0.6))

    edges = linker.link("chunk_a", "alice")

    assert [(e["source"], e["target"]) for e in edges] == [("chunk_a", "chunk_d")]


def test_graph_outage_links_nothing_without_raising():
    linker = SimilarityLinker(setup_vectors(), DownGraphStore(), SimilarityPolicy(link_threshold=0.6))
    assert linker.link("chunk_a", "alice") == []


def test_link_all_counts_vector_store_failures():
    class DownVectorStore(InMemoryVectorStore):
        def fetch(self, vector_ids):
            raise ConnectionError("pgvector unreachable")

    linker = SimilarityLinker(DownVectorStore(), InMemoryGraphStore(), SimilarityPolicy())
    report = linker.link_all(["chunk_a", "chunk_b"], "alice")
    assert report == {"chunks": 2, "edges": 0, "skipped": 0, "failed": 2}


def test_fallback_vectors_are_never_linked():
    vectors = InMemoryVectorStore()
    vectors.upsert("chunk_x", unit(0), {"user_id": "alice", "semantic": False})
    vectors.upsert("chunk_y", unit(1), {"user_id": "alice", "semantic": False})
    vectors.upsert("chunk_z", unit(2), {"user_id": "alice", "semantic": True})
    graph = InMemoryGraphStore()
    linker = SimilarityLinker(vectors, graph, SimilarityPolicy(link_threshold=0.6))

    assert linker.link("chunk_x", "alice") == []
    # a semantic chunk ignores neighbours embedded by the fallback
    assert linker.link("chunk_z", "alice") == []
    assert similarity_edges(graph) == []
