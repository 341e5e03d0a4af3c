"""
Knowledge graph API routes.
Graph reads, direct memory creation, similarity linking and maintenance.
"""
import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..deps import CurrentUser, get_current_user, get_runtime
from ..errors import NotFound
from ..logging_config import logger
from ..runtime import Runtime
from ..schemas import ChunkMetadata, CreateMemoryBody, SimilarityEdgesBody
from ..services.enrichment import generate_metadata
from ..services.ingestion import link_chunk, serialize_chunk

router = APIRouter(prefix="/api/graph", tags=["graph"])


# ==================== Reads ====================

@router.get("/full")
async def full_graph(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return await asyncio.to_thread(runtime.graph.full_graph, user.id)


@router.get("/subgraph")
async def subgraph(
    node_id: str = Query(..., min_length=1),
    depth: int = Query(2, ge=1, le=5),
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Nodes within `depth` hops of `node_id`. 404 when the node is not the user's."""
    return await asyncio.to_thread(runtime.graph.subgraph, user.id, node_id, depth)


@router.get("/search")
async def search(
    query: str = Query(..., min_length=1),
    type: Optional[str] = Query(None, description="Chunk, SourceFile, Concept or Entity"),
    limit: int = Query(20, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return await asyncio.to_thread(runtime.graph.search, user.id, query, type, limit)


@router.get("/stats")
async def stats(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return await asyncio.to_thread(runtime.graph.stats, user.id)


# ==================== Writes ====================

@router.post("/memory")
async def create_memory(
    body: CreateMemoryBody,
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """
    Create a memory directly, without an upload.

    Missing summary, tags or entities are generated from the text. The new
    chunk is linked to similar memories right away.
    """
    if body.source_file_id:
        source = await asyncio.to_thread(runtime.documents.get_source_file, user.id, body.source_file_id)
        if source is None:
            raise NotFound(f"File {body.source_file_id} not found")

    if body.summary is None or body.tags is None or body.entities is None:
        generated = await generate_metadata(runtime.llm, body.text)
    else:
        generated = ChunkMetadata()
    metadata = ChunkMetadata(
        summary=body.summary if body.summary is not None else generated.summary,
        tags=body.tags if body.tags is not None else generated.tags,
        entities=body.entities if body.entities is not None else generated.entities,
        relations=generated.relations,
    )

    result = await asyncio.to_thread(
        runtime.writer.create_memory, user.id, body.text, metadata, body.source_file_id
    )
    edge_count = 0
    if "vector" not in result.failures:
        edge_count = await link_chunk(runtime, result.chunk_id, user.id)
    return {
        "memory": serialize_chunk(result.record),
        "stores": result.stores,
        "failures": result.failures,
        "similarity_edges": edge_count,
    }


@router.post("/edges/similarity")
async def similarity_edges(
    body: SimilarityEdgesBody,
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Link one chunk, or every chunk of the user when no chunk id is given."""
    if body.chunk_id:
        edges = await asyncio.to_thread(runtime.linker.link, body.chunk_id, user.id)
        return {"created": len(edges), "edges": edges}
    chunks = await asyncio.to_thread(runtime.documents.list_chunks, user.id)
    report = await asyncio.to_thread(runtime.linker.link_all, [c["id"] for c in chunks], user.id)
    return report


# ==================== Maintenance ====================

@router.delete("/clear")
async def clear(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Delete the user's graph nodes, vectors, files and chunks."""
    counts = await asyncio.to_thread(runtime.writer.clear_user_data, user.id)
    return {"success": True, "deleted": counts}


@router.post("/reconcile")
async def reconcile(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    report = await asyncio.to_thread(runtime.writer.reconcile, user.id)
    logger.info("Reconcile requested", user_id=user.id, **report)
    return report
