"""
Upload ingestion pipeline.

extract -> analyze -> chunk -> SourceFile(processing) -> per chunk
(enrich, embed, write, link) -> SourceFile(completed | failed).
Chunks are processed one at a time.
"""
import asyncio
import time
import uuid
from typing import Dict, List, Optional

from ..errors import FileTooLarge, NotFound
from ..logging_config import logger
from ..stores.base import Record
from ..text_extraction import create_chunks, extract_text
from ..utils.helpers import isoformat, utcnow
from .enrichment import analyze_document, generate_metadata
from .writer import ChunkDraft

TEXT_INPUT_FILENAME = "text_input.txt"


def serialize_file(record: Record) -> Record:
    return {
        "file_id": record["id"],
        "file_name": record["filename"],
        "mime_type": record.get("mime_type"),
        "size_bytes": record.get("size_bytes") or 0,
        "upload_date": isoformat(record["uploaded_at"]),
        "status": record["status"],
        "document_analysis": record.get("analysis") or {},
        "total_chunks": record.get("total_chunks") or 0,
        "total_characters": record.get("total_characters") or 0,
        "error": record.get("error"),
    }


def serialize_chunk(record: Record) -> Record:
    return {
        "chunk_id": record["id"],
        "file_id": record["source_file_id"],
        "chunk_index": record["chunk_index"],
        "text": record["text"],
        "summary": record.get("summary") or "",
        "tags": record.get("tags") or [],
        "entities": record.get("entities") or [],
        "relations": record.get("relations") or [],
        "vector_id": record.get("vector_id"),
        "graph_node_id": record.get("graph_node_id"),
        "created_at": isoformat(record["created_at"]),
    }


async def link_chunk(runtime, chunk_id: str, user_id: str) -> int:
    """Similarity-link one committed chunk; linking failures never fail the write."""
    try:
        edges = await asyncio.to_thread(runtime.linker.link, chunk_id, user_id)
        return len(edges)
    except NotFound:
        logger.info("No vector for chunk, skipping similarity links", chunk_id=chunk_id)
    except Exception as e:
        logger.warning("Similarity linking failed", chunk_id=chunk_id, error=str(e))
    return 0


async def process_upload(
    runtime,
    data: bytes,
    filename: str,
    mime_type: str,
    size: int,
    user_id: str,
) -> Record:
    """
    Ingest one upload for a user.

    Args:
        runtime: Application runtime (stores, providers, writer, linker)
        data: Raw file bytes
        filename: Original filename
        mime_type: Declared MIME type
        size: Size in bytes
        user_id: Owner

    Returns:
        Processing summary for the new SourceFile

    Raises:
        FileTooLarge, UnsupportedFileType, ExtractionFailure, EmptyContent,
        StoreUnavailable
    """
    start = time.time()
    settings = runtime.settings
    if size > settings.max_file_size_bytes:
        raise FileTooLarge(
            f"File '{filename}' is too large. "
            f"Max size is {settings.max_file_size_bytes // (1024 * 1024)} MB."
        )

    logger.info("Processing file", filename=filename, mime_type=mime_type, size=size, user_id=user_id)
    text = await extract_text(data, mime_type, filename, runtime.llm)
    analysis = await analyze_document(runtime.llm, text, filename)
    chunks = create_chunks(text, settings.chunk_size, settings.chunk_overlap)

    file_id = f"file_{uuid.uuid4()}"
    source = {
        "id": file_id,
        "user_id": user_id,
        "filename": filename,
        "mime_type": mime_type,
        "size_bytes": size,
        "uploaded_at": utcnow(),
        "status": "processing",
        "analysis": analysis.model_dump(),
        "total_chunks": len(chunks),
        "total_characters": len(text),
        "error": None,
    }
    await asyncio.to_thread(runtime.documents.create_source_file, source)
    try:
        await asyncio.to_thread(runtime.graph.upsert_source_file, source)
    except Exception as e:
        logger.warning("Graph store rejected source file", file_id=file_id, error=str(e))
    logger.info("Created chunks", file_id=file_id, chunk_count=len(chunks))

    tags: List[str] = []
    entities: List[str] = []
    failures: List[Dict] = []
    edge_count = 0
    try:
        for chunk in chunks:
            metadata = await generate_metadata(runtime.llm, chunk.text)
            embedding = await asyncio.to_thread(runtime.embeddings.embed, chunk.text)
            result = await asyncio.to_thread(runtime.writer.write_chunk, ChunkDraft(
                user_id=user_id,
                text=chunk.text,
                metadata=metadata,
                embedding=embedding,
                chunk_index=chunk.index,
                source_file_id=file_id,
            ))
            if result.partial:
                failures.append({"chunk_id": result.chunk_id, "stores": result.failures})
            if "vector" not in result.failures:
                edge_count += await link_chunk(runtime, result.chunk_id, user_id)
            tags.extend(t for t in result.record["tags"] if t not in tags)
            entities.extend(e["name"] for e in result.record["entities"] if e["name"] not in entities)
    except Exception as e:
        logger.error("Processing failed", file_id=file_id, error=str(e))
        try:
            await asyncio.to_thread(
                runtime.documents.update_source_file, file_id, status="failed", error=str(e)
            )
        except Exception as mark_error:
            logger.error("Could not mark source file failed", file_id=file_id, error=str(mark_error))
        raise

    await asyncio.to_thread(runtime.documents.update_source_file, file_id, status="completed")
    elapsed_ms = round((time.time() - start) * 1000, 2)
    logger.info(
        "Processing completed",
        file_id=file_id,
        chunks=len(chunks),
        tags=len(tags),
        partial_writes=len(failures),
        time_ms=elapsed_ms,
    )
    return {
        "file_id": file_id,
        "file_name": filename,
        "status": "completed",
        "total_chunks": len(chunks),
        "total_characters": len(text),
        "unique_tags": len(tags),
        "unique_entities": len(entities),
        "tags": tags,
        "entities": entities,
        "document_type": analysis.document_type,
        "main_topic": analysis.main_topic,
        "similarity_edges": edge_count,
        "processing_time_ms": elapsed_ms,
        "store_failures": failures,
    }


async def get_upload_history(runtime, user_id: str, limit: Optional[int] = 20) -> List[Record]:
    files = await asyncio.to_thread(runtime.documents.list_source_files, user_id, limit)
    return [serialize_file(f) for f in files]


async def get_file_details(runtime, user_id: str, file_id: str) -> Record:
    """
    Raises:
        NotFound: The file does not exist for this user
    """
    source = await asyncio.to_thread(runtime.documents.get_source_file, user_id, file_id)
    if source is None:
        raise NotFound(f"File {file_id} not found")
    chunks = await asyncio.to_thread(runtime.documents.list_chunks, user_id, file_id)
    return {
        "file": serialize_file(source),
        "chunks": [serialize_chunk(c) for c in chunks],
    }
