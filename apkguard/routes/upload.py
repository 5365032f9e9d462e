from typing import Optional

from fastapi import APIRouter, Depends, File, Request, UploadFile

from apkguard.config import get_settings
from apkguard.errors import NoFileUploadedError
from apkguard.middleware.auth import get_current_user
from apkguard.middleware.rate_limit import limiter
from apkguard.models.user import User

router = APIRouter()
settings = get_settings()


@router.post("/upload")
@limiter.limit(settings.upload_rate_limit)
async def upload_apk(
    request: Request,
    apk_file: Optional[UploadFile] = File(None, alias="apkFile"),
    current_user: User = Depends(get_current_user),
):
    """Accept an APK, validate it and queue it for analysis.

    Rate limited to 5 uploads per 15 minutes per client. Analysis runs
    asynchronously; poll GET /analyses/{analysisId} for the outcome.
    """
    if apk_file is None or not apk_file.filename:
        raise NoFileUploadedError()

    stored = await request.app.state.file_handler.save_upload(apk_file)
    result = await request.app.state.orchestrator.handle_upload(str(current_user.id), stored)
    return {"success": True, "data": result.to_dict()}
