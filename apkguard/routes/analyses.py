from fastapi import APIRouter, Depends, HTTPException, Query, Request

from apkguard.middleware.auth import get_current_user
from apkguard.models.user import User

router = APIRouter()


@router.get("")
async def list_analyses(
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
):
    """Caller's analyses, newest first"""
    records = await request.app.state.record_store.list_for_user(str(current_user.id), limit=limit)
    return {"success": True, "data": [record.to_dict() for record in records]}


@router.get("/{analysis_id}")
async def get_analysis(
    analysis_id: str,
    request: Request,
    current_user: User = Depends(get_current_user),
):
    record = await request.app.state.record_store.get_for_user(analysis_id, str(current_user.id))
    # Other users' records are indistinguishable from missing ones
    if record is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return {"success": True, "data": record.to_dict()}
