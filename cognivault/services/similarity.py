"""
Similarity policy and linker.

All similarity cutoffs live in SimilarityPolicy so the linker and the branch
detector cannot drift apart.
"""
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from ..errors import NotFound
from ..logging_config import logger
from ..stores.base import GraphStore, Record, VectorStore
from ..utils.helpers import cosine_similarity, jaccard


@dataclass(frozen=True)
class SimilarityPolicy:
    """
    link_threshold: a SIMILAR_TO edge needs a score strictly above this
    link_top_k: neighbours considered per chunk
    branch_similarity_threshold: a chunk with new tags is a branch trigger
        only when its best similarity to earlier chunks is below this
    """
    link_threshold: float = 0.75
    link_top_k: int = 5
    branch_similarity_threshold: float = 0.6

    @classmethod
    def from_settings(cls, settings) -> "SimilarityPolicy":
        s = settings.similarity
        return cls(
            link_threshold=s.link_threshold,
            link_top_k=s.link_top_k,
            branch_similarity_threshold=s.branch_similarity_threshold,
        )

    def should_link(self, score: float) -> bool:
        return score > self.link_threshold

    def is_novel(self, max_similarity: float) -> bool:
        return max_similarity < self.branch_similarity_threshold

    @staticmethod
    def tag_overlap(tags_a: Iterable[str], tags_b: Iterable[str]) -> float:
        """Similarity proxy when either side lacks a semantic vector."""
        return jaccard(tags_a, tags_b)

    def chunk_similarity(
        self,
        tags_a: Sequence[str],
        tags_b: Sequence[str],
        vector_a: Optional[Record] = None,
        vector_b: Optional[Record] = None,
    ) -> float:
        """
        Cosine similarity when both chunks have semantic vectors, else the
        tag-overlap proxy.
        """
        if (
            vector_a and vector_b
            and vector_a.get("metadata", {}).get("semantic")
            and vector_b.get("metadata", {}).get("semantic")
        ):
            return cosine_similarity(vector_a["vector"], vector_b["vector"])
        return self.tag_overlap(tags_a, tags_b)


class SimilarityLinker:

    def __init__(self, vectors: VectorStore, graph: GraphStore, policy: SimilarityPolicy):
        self.vectors = vectors
        self.graph = graph
        self.policy = policy

    def link(self, chunk_id: str, user_id: str) -> List[Record]:
        """
        Create SIMILAR_TO edges from a chunk to its nearest neighbours.

        Only semantic vectors are compared; a chunk or neighbour embedded by
        the deterministic fallback is never linked. A neighbour whose edge
        cannot be written (missing graph node, graph outage) is skipped.

        Args:
            chunk_id: The chunk to link
            user_id: Owner; neighbours are restricted to the same user

        Returns:
            The edges created or updated, as {source, target, score}

        Raises:
            NotFound: The chunk has no vector for this user
        """
        stored = self.vectors.fetch([chunk_id]).get(chunk_id)
        if stored is None or stored["metadata"].get("user_id") != user_id:
            raise NotFound(f"Chunk {chunk_id} not found")
        if not stored["metadata"].get("semantic"):
            logger.info("Chunk has no semantic vector, skipping similarity links", chunk_id=chunk_id)
            return []

        matches = self.vectors.query(stored["vector"], self.policy.link_top_k + 1, user_id)
        neighbours = [m for m in matches if m["id"] != chunk_id][: self.policy.link_top_k]

        edges = []
        failed = 0
        for match in neighbours:
            if not (match.get("metadata") or {}).get("semantic"):
                continue
            if not self.policy.should_link(match["score"]):
                continue
            try:
                edges.append(self.graph.merge_similarity(user_id, chunk_id, match["id"], match["score"]))
            except Exception as e:
                failed += 1
                logger.warning(
                    "Similarity edge not written",
                    chunk_id=chunk_id,
                    neighbour_id=match["id"],
                    error=str(e),
                )

        logger.info(
            "Linked similar chunks",
            chunk_id=chunk_id,
            candidates=len(neighbours),
            edges=len(edges),
            failed=failed,
            threshold=self.policy.link_threshold,
        )
        return edges

    def link_all(self, chunk_ids: Iterable[str], user_id: str) -> Dict[str, int]:
        """
        Link every chunk. Chunks without a vector are counted as skipped,
        chunks whose vector lookup fails as failed.
        """
        report = {"chunks": 0, "edges": 0, "skipped": 0, "failed": 0}
        pairs = set()
        for chunk_id in chunk_ids:
            report["chunks"] += 1
            try:
                for edge in self.link(chunk_id, user_id):
                    pairs.add((edge["source"], edge["target"]))
            except NotFound:
                report["skipped"] += 1
            except Exception as e:
                report["failed"] += 1
                logger.warning("Similarity linking failed", chunk_id=chunk_id, error=str(e))
        report["edges"] = len(pairs)
        return report
