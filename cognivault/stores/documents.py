"""
SQLAlchemy-backed document store.

Runs on PostgreSQL in production and on SQLite in tests; JSON columns hold
tags, entities, relations and the document analysis.
"""
from contextlib import contextmanager
from typing import Dict, List, Optional

from sqlalchemy import delete, select, text as sa_text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..errors import NotFound, StoreUnavailable
from ..models import Chunk, SourceFile, WriteIntent
from ..utils.helpers import as_utc, utcnow
from .base import FAILED, INTENT_STORES, PENDING, DocumentStore, Record

_FILE_FIELDS = (
    "id", "user_id", "filename", "mime_type", "size_bytes", "uploaded_at", "status",
    "analysis", "total_chunks", "total_characters", "error",
)
_CHUNK_FIELDS = (
    "id", "user_id", "source_file_id", "chunk_index", "text", "summary", "tags",
    "entities", "relations", "vector_id", "graph_node_id", "created_at",
)
_INTENT_FIELDS = (
    "chunk_id", "user_id", "graph_status", "document_status", "vector_status",
    "errors", "created_at", "updated_at",
)
_TIMESTAMPS = ("uploaded_at", "created_at", "updated_at")


def _to_dict(row, fields) -> Record:
    record = {name: getattr(row, name) for name in fields}
    for name in _TIMESTAMPS:
        if record.get(name) is not None:
            record[name] = as_utc(record[name])
    for name in ("tags", "entities", "relations"):
        if name in record and record[name] is None:
            record[name] = []
    if "errors" in record and record["errors"] is None:
        record["errors"] = {}
    return record


class SqlDocumentStore(DocumentStore):

    def __init__(self, session_factory: sessionmaker):
        self.SessionLocal = session_factory

    @contextmanager
    def _session(self):
        try:
            with self.SessionLocal() as db, db.begin():
                yield db
        except SQLAlchemyError as e:
            raise StoreUnavailable("Document store operation failed", detail=str(e)) from e

    def ping(self) -> None:
        with self._session() as db:
            db.execute(sa_text("SELECT 1"))

    # ==================== Source files ====================

    def create_source_file(self, record: Record) -> None:
        with self._session() as db:
            db.add(SourceFile(**{k: record.get(k) for k in _FILE_FIELDS}))

    def update_source_file(self, file_id: str, **fields) -> None:
        with self._session() as db:
            row = db.get(SourceFile, file_id)
            if row is None:
                raise NotFound(f"Source file {file_id} not found")
            for name, value in fields.items():
                setattr(row, name, value)

    def get_source_file(self, user_id: str, file_id: str) -> Optional[Record]:
        with self._session() as db:
            row = db.execute(
                select(SourceFile).where(SourceFile.id == file_id, SourceFile.user_id == user_id)
            ).scalar_one_or_none()
            return _to_dict(row, _FILE_FIELDS) if row else None

    def list_source_files(self, user_id: str, limit: Optional[int] = None) -> List[Record]:
        stmt = (
            select(SourceFile)
            .where(SourceFile.user_id == user_id)
            .order_by(SourceFile.uploaded_at.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        with self._session() as db:
            return [_to_dict(r, _FILE_FIELDS) for r in db.execute(stmt).scalars().all()]

    # ==================== Chunks ====================

    def insert_chunk(self, record: Record) -> None:
        with self._session() as db:
            db.add(Chunk(**{k: record.get(k) for k in _CHUNK_FIELDS}))

    def update_chunk(self, chunk_id: str, **fields) -> None:
        with self._session() as db:
            row = db.get(Chunk, chunk_id)
            if row is None:
                raise NotFound(f"Chunk {chunk_id} not found")
            for name, value in fields.items():
                setattr(row, name, value)

    def get_chunk(self, chunk_id: str, user_id: Optional[str] = None) -> Optional[Record]:
        stmt = select(Chunk).where(Chunk.id == chunk_id)
        if user_id is not None:
            stmt = stmt.where(Chunk.user_id == user_id)
        with self._session() as db:
            row = db.execute(stmt).scalar_one_or_none()
            return _to_dict(row, _CHUNK_FIELDS) if row else None

    def list_chunks(
        self,
        user_id: str,
        source_file_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        stmt = select(Chunk).where(Chunk.user_id == user_id)
        if source_file_id is not None:
            stmt = stmt.where(Chunk.source_file_id == source_file_id)
        stmt = stmt.order_by(Chunk.created_at.asc(), Chunk.chunk_index.asc())
        if limit:
            stmt = stmt.limit(limit)
        with self._session() as db:
            return [_to_dict(r, _CHUNK_FIELDS) for r in db.execute(stmt).scalars().all()]

    # ==================== Write intents ====================

    def record_intent(self, chunk_id: str, user_id: str) -> None:
        now = utcnow()
        with self._session() as db:
            db.add(WriteIntent(
                chunk_id=chunk_id,
                user_id=user_id,
                graph_status=PENDING,
                document_status=PENDING,
                vector_status=PENDING,
                errors={},
                created_at=now,
                updated_at=now,
            ))

    def update_intent(self, chunk_id: str, store: str, status: str, error: Optional[str] = None) -> None:
        if store not in INTENT_STORES:
            raise ValueError(f"Unknown store {store!r}")
        with self._session() as db:
            row = db.get(WriteIntent, chunk_id)
            if row is None:
                raise NotFound(f"Write intent {chunk_id} not found")
            setattr(row, f"{store}_status", status)
            # reassign so the JSON column is flagged dirty
            errors = dict(row.errors or {})
            if error:
                errors[store] = error
            else:
                errors.pop(store, None)
            row.errors = errors
            row.updated_at = utcnow()

    def get_intent(self, chunk_id: str) -> Optional[Record]:
        with self._session() as db:
            row = db.get(WriteIntent, chunk_id)
            return _to_dict(row, _INTENT_FIELDS) if row else None

    def list_intents(self, user_id: Optional[str] = None, incomplete_only: bool = True) -> List[Record]:
        stmt = select(WriteIntent)
        if user_id is not None:
            stmt = stmt.where(WriteIntent.user_id == user_id)
        if incomplete_only:
            open_states = (PENDING, FAILED)
            stmt = stmt.where(
                WriteIntent.graph_status.in_(open_states)
                | WriteIntent.document_status.in_(open_states)
                | WriteIntent.vector_status.in_(open_states)
            )
        stmt = stmt.order_by(WriteIntent.created_at.asc())
        with self._session() as db:
            return [_to_dict(r, _INTENT_FIELDS) for r in db.execute(stmt).scalars().all()]

    # ==================== Bulk ====================

    def delete_user_data(self, user_id: str) -> Dict[str, int]:
        with self._session() as db:
            chunks = db.execute(delete(Chunk).where(Chunk.user_id == user_id)).rowcount
            files = db.execute(delete(SourceFile).where(SourceFile.user_id == user_id)).rowcount
            db.execute(delete(WriteIntent).where(WriteIntent.user_id == user_id))
        return {"source_files": files or 0, "chunks": chunks or 0}
