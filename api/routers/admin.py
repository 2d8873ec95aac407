import logging
import os
from datetime import datetime, timezone

from deps import get_services, require_admin
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from services import Services

logger = logging.getLogger(__name__)
router = APIRouter()

MAX_COOKIES_SIZE = 1024 * 1024  # 1MB


@router.get("/admin/youtube-cookies/status")
def youtube_cookies_status(auth=Depends(require_admin), services: Services = Depends(get_services)):
    """Report which credential sources the extractor will try."""
    settings = services.settings
    cookies_file = settings.resolve_cookies_file()
    updated_at = None
    if cookies_file:
        updated_at = datetime.fromtimestamp(os.path.getmtime(cookies_file), timezone.utc).isoformat()
    return {
        "present": cookies_file is not None,
        "path": cookies_file,
        "updated_at": updated_at,
        "from_browser": settings.cookies_from_browser,
    }


@router.post("/admin/youtube-cookies")
async def upload_youtube_cookies(
    file: UploadFile = File(...),
    auth=Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Upload a YouTube cookies.txt file (Netscape format)."""
    path = services.settings.cookies_upload_path
    content = await file.read(MAX_COOKIES_SIZE + 1)
    if len(content) > MAX_COOKIES_SIZE:
        raise HTTPException(413, "Cookie file too large (max 1MB)")

    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "wb") as f:
        f.write(content)
    logger.info("YouTube cookies updated")
    return {"ok": True}


@router.get("/admin/tools")
def tools_status(auth=Depends(require_admin), services: Services = Depends(get_services)):
    """Which external tools this host can run right now."""
    settings = services.settings
    engine = services.separator.select_engine()
    return {
        "yt_dlp": services.runner.probe(settings.ytdlp_cmd, ["--version"]),
        "ffmpeg": services.runner.probe(settings.ffmpeg_cmd, ["-version"]),
        "impersonation": services.downloader.supports_impersonation(),
        "separation_engine": engine.name if engine else None,
        "active_jobs": services.pipeline.job_runner.active_jobs(),
    }
