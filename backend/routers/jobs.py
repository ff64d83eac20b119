"""
Jobs router — create ingestion jobs, poll their status, and drive them one
time-bounded chunk at a time.
"""
import logging
import time
from typing import Optional, Union

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from errors import ConflictError, NotFoundError
from job_runner import JobService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])

_service: Optional[JobService] = None


def get_job_service() -> JobService:
    """Get the shared job service instance."""
    global _service
    if _service is None:
        _service = JobService()
    return _service


def set_job_service(service: Optional[JobService]) -> None:
    global _service
    _service = service


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class EpgImportRequest(BaseModel):
    owner_id: int
    epg_file_id: int
    source_url: Optional[str] = None  # Defaults to the EPG file's URL


class PlaylistSyncRequest(BaseModel):
    owner_id: int
    playlist_id: int
    category_filters: Optional[list[str]] = None  # Partial sync of these categories only


class MappingItem(BaseModel):
    """One uploaded channel mapping."""
    channel_id: Optional[Union[str, int]] = None
    channel_name: Optional[str] = None
    tvg_name: Optional[str] = None


class MappingImportRequest(BaseModel):
    owner_id: int
    playlist_id: int
    mappings: list[MappingItem]
    epg_file_id: Optional[int] = None


class JobCreatedResponse(BaseModel):
    job_id: int


# ---------------------------------------------------------------------------
# Job creation
# ---------------------------------------------------------------------------

def _create(create, *args, **kwargs) -> dict:
    try:
        job_id = create(*args, **kwargs)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception:
        logger.exception("[JOBS] Failed to create job")
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"job_id": job_id}


@router.post("/epg-import", response_model=JobCreatedResponse)
async def create_epg_import_job(request: EpgImportRequest):
    """Start importing an EPG file's channel lineup."""
    logger.debug("[JOBS] POST /api/jobs/epg-import - epg_file_id=%s", request.epg_file_id)
    return _create(
        get_job_service().create_epg_import_job,
        request.owner_id, request.epg_file_id, request.source_url,
    )


@router.post("/playlist-sync", response_model=JobCreatedResponse)
async def create_playlist_sync_job(request: PlaylistSyncRequest):
    """Start syncing a playlist's channels from its provider."""
    logger.debug("[JOBS] POST /api/jobs/playlist-sync - playlist_id=%s", request.playlist_id)
    return _create(
        get_job_service().create_playlist_sync_job,
        request.owner_id, request.playlist_id, request.category_filters,
    )


@router.post("/mapping-import", response_model=JobCreatedResponse)
async def create_mapping_import_job(request: MappingImportRequest):
    """Start applying uploaded channel mappings to a playlist."""
    logger.debug(
        "[JOBS] POST /api/jobs/mapping-import - playlist_id=%s mappings=%d",
        request.playlist_id, len(request.mappings),
    )
    return _create(
        get_job_service().create_mapping_import_job,
        request.owner_id,
        request.playlist_id,
        [m.model_dump() for m in request.mappings],
        request.epg_file_id,
    )


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------

@router.delete("/stuck")
async def cleanup_stuck_jobs(owner_id: int, target_id: int, job_type: Optional[str] = None):
    """Fail this target's jobs that stopped making progress."""
    logger.debug("[JOBS] DELETE /api/jobs/stuck - owner_id=%s target_id=%s", owner_id, target_id)
    try:
        cleaned = get_job_service().cleanup_stuck_jobs(owner_id, target_id, job_type)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown job type: {job_type}")
    except Exception:
        logger.exception("[JOBS] Stuck job cleanup failed")
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"cleaned": cleaned}


# ---------------------------------------------------------------------------
# Status & processing
# ---------------------------------------------------------------------------

@router.get("/{job_id}")
async def get_job_status(job_id: int):
    """Get a job's status and progress."""
    try:
        return get_job_service().get_job_status(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{job_id}/process")
async def process_job_chunk(job_id: int, budget_ms: Optional[int] = None):
    """Run one bounded chunk of the job; clients poll this until done is true."""
    service = get_job_service()
    start = time.time()
    try:
        done = await service.process_chunk(job_id, budget_ms)
        status = service.get_job_status(job_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception:
        logger.exception("[JOBS] Processing job %s failed", job_id)
        raise HTTPException(status_code=500, detail="Internal server error")
    elapsed_ms = (time.time() - start) * 1000
    logger.debug(
        "[JOBS] Processed chunk of job %s in %.1fms (status=%s, progress=%s)",
        job_id, elapsed_ms, status["status"], status["progress"],
    )
    return {"done": done, **status}
