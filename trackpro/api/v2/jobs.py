"""
Job Tracking API Endpoints
Location ingest (HTTP fallback path), offline batch sync, job lookup and
status changes
"""

from fastapi import APIRouter, Query
from typing import List
import logging

from trackpro.api.deps import IngestService, TechnicianId
from trackpro.exceptions import ErrorCode, TrackProException
from trackpro.schemas.errors import LOCATION_ERROR_RESPONSES, READ_ERROR_RESPONSES, get_error_responses
from trackpro.schemas.tracking import (
    JobInfo,
    JobStatusUpdate,
    LocationIngestResponse,
    LocationUpdate,
)
from trackpro.services.location_ingest_service import location_to_wire

logger = logging.getLogger(__name__)

router = APIRouter()


def _check_job_id(job_id: str, update: LocationUpdate) -> None:
    if update.job_id != job_id:
        raise TrackProException(
            status_code=422,
            code=ErrorCode.VALIDATION_ERROR,
            detail=f"Payload jobId {update.job_id} does not match path job {job_id}",
        )


# ==================== Location Updates ====================

@router.post(
    "/{job_id}/location",
    response_model=LocationIngestResponse,
    responses=LOCATION_ERROR_RESPONSES,
)
async def post_location(
    job_id: str,
    update: LocationUpdate,
    technician_id: TechnicianId,
    service: IngestService,
):
    """
    Store a location update sent over HTTP.

    Same handling as the websocket path: duplicates by capture time are
    acknowledged without changing the job's distance.
    """
    _check_job_id(job_id, update)
    result = await service.ingest_and_broadcast(technician_id, update)
    return LocationIngestResponse(
        success=True,
        duplicate=not result.created,
        total_distance_meters=result.total_distance_meters,
    )


@router.post(
    "/{job_id}/locations/batch",
    response_model=dict,
    responses=LOCATION_ERROR_RESPONSES,
)
async def post_location_batch(
    job_id: str,
    updates: List[LocationUpdate],
    technician_id: TechnicianId,
    service: IngestService,
):
    """
    Submit queued updates after an offline period.
    Processed in capture order.
    """
    for update in updates:
        _check_job_id(job_id, update)

    created = 0
    for update in sorted(updates, key=lambda u: u.captured_at):
        result = await service.ingest_and_broadcast(technician_id, update)
        if result.created:
            created += 1

    return {
        "processed": len(updates),
        "created": created,
        "duplicates": len(updates) - created,
    }


@router.get("/{job_id}/locations", response_model=List[dict], responses=READ_ERROR_RESPONSES)
async def get_locations(
    job_id: str,
    service: IngestService,
    limit: int = Query(50, ge=1, le=1000),
):
    """Recent location history for a job, oldest first."""
    await service.get_job(job_id)
    history = await service.get_history(job_id, limit=limit)
    return [location_to_wire(location) for location in history]


# ==================== Jobs ====================

@router.get("/{job_id}", response_model=JobInfo, responses=READ_ERROR_RESPONSES)
async def get_job(job_id: str, service: IngestService):
    """Job status and assignment, as consulted before tracking starts."""
    job = await service.get_job(job_id)
    return JobInfo.model_validate(job)


@router.patch("/{job_id}/status", response_model=JobInfo, responses=get_error_responses(404, 422))
async def update_job_status(job_id: str, body: JobStatusUpdate, service: IngestService):
    """Change job status and notify subscribers (job.status_changed)."""
    job = await service.update_status(job_id, body.status)
    return JobInfo.model_validate(job)
