import logging

from deps import get_services, require_user
from fastapi import APIRouter, Depends, HTTPException
from models import User
from pydantic import BaseModel
from services import Services
from worker import job_to_dict

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")


class ConvertRequest(BaseModel):
    url: str | None = None
    enable_stems: bool = False


@router.post("/convert")
def convert(
    body: ConvertRequest,
    user: User = Depends(require_user),
    services: Services = Depends(get_services),
):
    """Start a conversion and return at once; clients poll /api/history/{id}/status."""
    try:
        job, _ = services.pipeline.submit(body.url, user.id, body.enable_stems)
    except ValueError as e:
        raise HTTPException(400, str(e))

    logger.info(f"Conversion submitted: job_id={job.id} user={user.id}")
    return {"id": job.id, "status": job.status.value, "message": "Conversion started"}


@router.get("/history")
def list_history(user: User = Depends(require_user), services: Services = Depends(get_services)):
    return [job_to_dict(job) for job in services.jobs.list_for_user(user.id)]


@router.get("/history/{job_id}/status")
def job_status(job_id: str, user: User = Depends(require_user), services: Services = Depends(get_services)):
    job = services.jobs.get(job_id)
    if not job or job.user_id != user.id:
        raise HTTPException(404, "Conversion not found")
    return services.pipeline.poll_status(job_id)


@router.delete("/history/{job_id}")
def delete_history(job_id: str, user: User = Depends(require_user), services: Services = Depends(get_services)):
    job = services.jobs.get(job_id)
    if not job or job.user_id != user.id:
        raise HTTPException(404, "Conversion not found")
    services.jobs.delete(job_id)
    logger.info(f"Deleted conversion record: {job_id}")
    return {"ok": True}
