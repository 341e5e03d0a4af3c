from sqlalchemy import Column, String, Text, Integer, BigInteger, DateTime, JSON, text
from sqlalchemy.orm import declarative_base
from pgvector.sqlalchemy import Vector

from .config import PGVECTOR_DIMENSION

Base = declarative_base()


class SourceFile(Base):
    __tablename__ = "source_files"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    filename = Column(Text, nullable=False)
    mime_type = Column(Text)
    size_bytes = Column(BigInteger)
    uploaded_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, nullable=False, server_default=text("'processing'"))
    analysis = Column(JSON)
    total_chunks = Column(Integer, nullable=False, default=0)
    total_characters = Column(Integer, nullable=False, default=0)
    error = Column(Text)


class Chunk(Base):
    __tablename__ = "chunks"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    # SourceFile id, or "direct_input" for memories created without a file
    source_file_id = Column(String, nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    summary = Column(Text)
    tags = Column(JSON)
    entities = Column(JSON)
    relations = Column(JSON)
    vector_id = Column(String)
    graph_node_id = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


class WriteIntent(Base):
    """Per-chunk record of which stores have committed the chunk."""
    __tablename__ = "write_intents"
    chunk_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    graph_status = Column(String, nullable=False, default="pending")
    document_status = Column(String, nullable=False, default="pending")
    vector_status = Column(String, nullable=False, default="pending")
    errors = Column(JSON)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ChunkVector(Base):
    __tablename__ = "chunk_vectors"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    embedding = Column(Vector(PGVECTOR_DIMENSION), nullable=False)
    meta = Column(JSON)


DOCUMENT_TABLES = [SourceFile.__table__, Chunk.__table__, WriteIntent.__table__]
