"""
pgvector-backed vector store (the chunk_vectors table).
"""
import json
from typing import Dict, List, Sequence

from sqlalchemy import delete, select, text as sa_text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.engine import Engine
from time import perf_counter

from ..logging_config import logger
from ..models import ChunkVector
from .base import Record, VectorStore


def _vector_literal(vector: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(v)) for v in vector) + "]"


def _parse_vector(value) -> List[float]:
    if isinstance(value, str):
        return [float(v) for v in value.strip("[]").split(",") if v]
    return [float(v) for v in value]


def _parse_meta(value) -> Record:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


class PgVectorStore(VectorStore):

    def __init__(self, engine: Engine):
        self.engine = engine

    def ping(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(sa_text("SELECT 1"))

    def upsert(self, vector_id: str, vector: Sequence[float], metadata: Record) -> None:
        stmt = insert(ChunkVector).values(
            id=vector_id,
            user_id=metadata["user_id"],
            embedding=[float(v) for v in vector],
            meta=metadata,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ChunkVector.id],
            set_={
                "user_id": stmt.excluded.user_id,
                "embedding": stmt.excluded.embedding,
                "meta": stmt.excluded.meta,
            },
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def fetch(self, vector_ids: Sequence[str]) -> Dict[str, Record]:
        if not vector_ids:
            return {}
        stmt = select(ChunkVector.id, ChunkVector.embedding, ChunkVector.meta).where(
            ChunkVector.id.in_(list(vector_ids))
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).all()
        return {
            row.id: {"vector": _parse_vector(row.embedding), "metadata": _parse_meta(row.meta)}
            for row in rows
        }

    def query(self, vector: Sequence[float], top_k: int, user_id: str) -> List[Record]:
        """
        Nearest neighbours by cosine distance within one user's vectors.

        Returns:
            [{id, score, metadata}] with score = 1 - cosine distance
        """
        t = perf_counter()
        with self.engine.begin() as conn:
            rows = conn.execute(
                sa_text("""
                    SELECT id,
                           meta,
                           1 - (embedding <=> CAST(:qv AS vector)) AS score
                    FROM chunk_vectors
                    WHERE user_id = :user_id
                    ORDER BY embedding <=> CAST(:qv AS vector)
                    LIMIT :k
                """),
                {"qv": _vector_literal(vector), "user_id": user_id, "k": top_k},
            ).mappings().all()
        logger.debug("Vector query", user_id=user_id, results=len(rows), time_ms=round((perf_counter() - t) * 1000, 2))
        return [
            {"id": r["id"], "score": float(r["score"]), "metadata": _parse_meta(r["meta"])}
            for r in rows
        ]

    def delete(self, vector_ids: Sequence[str]) -> int:
        if not vector_ids:
            return 0
        with self.engine.begin() as conn:
            return conn.execute(
                delete(ChunkVector).where(ChunkVector.id.in_(list(vector_ids)))
            ).rowcount or 0

    def delete_user(self, user_id: str) -> int:
        with self.engine.begin() as conn:
            return conn.execute(
                delete(ChunkVector).where(ChunkVector.user_id == user_id)
            ).rowcount or 0
