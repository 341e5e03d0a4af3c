"""
Upload API routes.
Handles file / text ingestion and upload history.
"""
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from ..deps import CurrentUser, get_current_user, get_runtime
from ..errors import EmptyContent, FileTooLarge
from ..runtime import Runtime
from ..services import ingestion
from ..text_extraction import SUPPORTED_TYPES

router = APIRouter(prefix="/api", tags=["upload"])


async def read_limited(file: UploadFile, max_bytes: int) -> bytes:
    """Read an uploaded file, stopping one byte past `max_bytes`."""
    data = await file.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise FileTooLarge(
            f"File '{file.filename}' is too large. Max size is {max_bytes // (1024 * 1024)} MB."
        )
    return data


async def read_upload(
    file: Optional[UploadFile],
    text_input: Optional[str],
    max_bytes: int,
) -> Tuple[bytes, str, str]:
    """
    Resolve the multipart payload to (data, filename, mime type).

    A file wins over `text_input`; text alone is treated as a plain-text file.

    Raises:
        FileTooLarge: The file is larger than `max_bytes`
        EmptyContent: Neither a file nor non-blank text was sent
    """
    if file is not None and file.filename:
        data = await read_limited(file, max_bytes)
        return data, file.filename, (file.content_type or "").lower()
    if text_input and text_input.strip():
        return text_input.encode("utf-8"), ingestion.TEXT_INPUT_FILENAME, "text/plain"
    raise EmptyContent("No file or text content provided.")


# ==================== Upload ====================

@router.post("/upload")
async def upload(
    file: Optional[UploadFile] = File(None),
    text_input: Optional[str] = Form(None),
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """
    Upload one document (or raw text) into the knowledge base.

    Process:
    1. Extract and normalize text
    2. Analyze the document and split it into chunks
    3. Enrich, embed and persist every chunk to all stores
    4. Link each chunk to its most similar neighbours

    Returns:
        Processing summary for the new file
    """
    data, filename, mime_type = await read_upload(file, text_input, runtime.settings.max_file_size_bytes)
    result = await ingestion.process_upload(runtime, data, filename, mime_type, len(data), user.id)
    return {"success": True, **result}


@router.get("/upload/history")
async def upload_history(
    limit: int = Query(10, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    files = await ingestion.get_upload_history(runtime, user.id, limit)
    return {"success": True, "files": files, "count": len(files)}


@router.get("/upload/file/{file_id}")
async def file_details(
    file_id: str,
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Return a file with its chunks in order. 404 when the user does not own it."""
    details = await ingestion.get_file_details(runtime, user.id, file_id)
    return {"success": True, **details}


@router.get("/upload/health")
async def upload_health(runtime: Runtime = Depends(get_runtime)):
    max_mb = runtime.settings.max_file_size_bytes // (1024 * 1024)
    return {
        "status": "healthy",
        "service": "upload",
        "maxFileSize": f"{max_mb}MB",
        "supportedTypes": sorted(SUPPORTED_TYPES),
    }
