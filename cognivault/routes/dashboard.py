"""
Dashboard API routes.
"""
from fastapi import APIRouter, Depends

from ..deps import CurrentUser, get_current_user, get_runtime
from ..runtime import Runtime
from ..services.dashboard import get_dashboard_overview

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("/overview")
async def overview(
    user: CurrentUser = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    """Everything the dashboard page renders, in one payload."""
    return await get_dashboard_overview(runtime, user)
