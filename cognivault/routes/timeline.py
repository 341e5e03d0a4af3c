"""
Cognitive timeline API routes.
Every read is derived per request and never fails; a broken facet comes back
empty.
"""
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile

from ..deps import CurrentUser, get_current_user, get_runtime
from ..runtime import Runtime
from ..services import ingestion, timeline
from .upload import read_upload

router = APIRouter(prefix="/api/timeline", tags=["timeline"])


@router.post("/upload")
async def timeline_upload(
    file: Optional[UploadFile] = File(None),
    textInput: Optional[str] = Form(None),
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Same pipeline as /api/upload, for the timeline page's upload box."""
    data, filename, mime_type = await read_upload(file, textInput, runtime.settings.max_file_size_bytes)
    result = await ingestion.process_upload(runtime, data, filename, mime_type, len(data), user.id)
    return {
        "success": True,
        "message": "Content uploaded and saved to your timeline",
        **result,
    }


@router.get("/events")
async def events(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return await timeline.get_timeline_events(runtime, user.id)


@router.get("/topic-spikes")
async def topic_spikes(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return await timeline.get_topic_spikes(runtime, user.id)


@router.get("/emotion-trend")
async def emotion_trend(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return await timeline.get_emotion_trend(runtime, user.id)


@router.get("/knowledge-evolution")
async def knowledge_evolution(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return await timeline.get_knowledge_evolution(runtime, user.id)


@router.get("/branch-triggers")
async def branch_triggers(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return await timeline.get_branch_triggers(runtime, user.id)


@router.get("/insights")
async def insights(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    return {"insights": await timeline.get_insights(runtime, user.id)}


@router.get("/overview")
async def overview(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """All timeline facets in one response."""
    return await timeline.get_timeline_overview(runtime, user.id)
