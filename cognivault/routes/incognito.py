"""
Incognito vault API routes.
Private analysis sessions; nothing here is written to the knowledge base.
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from ..deps import CurrentUser, get_current_user, get_runtime
from ..runtime import Runtime
from ..schemas import IncognitoChatBody
from ..services import incognito
from .upload import read_limited

router = APIRouter(prefix="/api/incognito", tags=["incognito"])


@router.post("/process")
async def process(
    file: Optional[UploadFile] = File(None),
    textInput: Optional[str] = Form(None),
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """
    Analyze an optional file plus optional text in a temporary session.

    Returns:
        The analysis and the `sessionId` to chat about it
    """
    data, filename, mime_type = None, None, None
    if file is not None and file.filename:
        data = await read_limited(file, runtime.settings.max_file_size_bytes)
        filename, mime_type = file.filename, (file.content_type or "").lower()
    return await incognito.process(
        runtime.llm,
        runtime.sessions,
        user.id,
        data=data,
        filename=filename,
        mime_type=mime_type,
        text_input=textInput,
    )


@router.post("/chat")
async def chat(
    body: IncognitoChatBody,
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return await incognito.chat(runtime.llm, runtime.sessions, user.id, body.session_id, body.message)
