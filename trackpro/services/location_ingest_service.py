"""
Location Ingest Service
Receiving side of the tracking engine: persists location updates from either
delivery path, keeps the job's distance aggregate, and fans updates out to
the company, job and public tracking rooms
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
import logging

from trackpro.exceptions import ForbiddenError, NotFoundError
from trackpro.models.job import Job
from trackpro.models.job_location import JobLocation
from trackpro.schemas.tracking import JobStatusEnum, LocationUpdate, PublicTrackingInfo
from trackpro.services.websocket_manager import (
    ConnectionManager,
    company_room,
    job_room,
    manager as default_manager,
    tracking_room,
)
from trackpro.utils.geo import haversine_meters

logger = logging.getLogger(__name__)

LOCATION_EVENT = "location.update"
STATUS_EVENT = "job.status_changed"


def to_utc_naive(value: datetime) -> datetime:
    """Storage form for capture timestamps: naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass
class IngestResult:
    job: Job
    created: bool
    total_distance_meters: float


class LocationIngestService:
    """Service for storing and broadcasting job location updates"""

    def __init__(self, db: AsyncSession, connections: Optional[ConnectionManager] = None):
        self.db = db
        self.connections = connections or default_manager

    # ==================== Jobs ====================

    async def get_job(self, job_id: str) -> Job:
        job = await self.db.get(Job, job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def get_owned_job(self, technician_id: str, job_id: str) -> Job:
        """Job lookup that refuses jobs assigned to someone else."""
        job = await self.get_job(job_id)
        if job.technician_id != technician_id:
            logger.warning(f"Technician {technician_id} attempted to update job {job_id}")
            raise ForbiddenError(f"Job {job_id} is not assigned to this technician")
        return job

    async def update_status(self, job_id: str, status: JobStatusEnum) -> Job:
        job = await self.get_job(job_id)
        previous = job.status
        job.status = status.value
        await self.db.commit()
        await self.db.refresh(job)

        logger.info(f"Job {job_id} status {previous} -> {status.value}")
        await self.connections.broadcast_to_rooms(
            STATUS_EVENT,
            {"jobId": job.id, "status": job.status, "previousStatus": previous},
            self._rooms(job),
        )
        return job

    # ==================== Location Updates ====================

    async def ingest(self, technician_id: str, update: LocationUpdate) -> IngestResult:
        """
        Store one update. Duplicates by (job_id, captured_at) are accepted
        and reported with created=False; they never change the aggregate.
        """
        job = await self.get_owned_job(technician_id, update.job_id)
        captured_at = to_utc_naive(update.captured_at)

        existing = await self.db.scalar(
            select(JobLocation.id).where(
                JobLocation.job_id == job.id,
                JobLocation.captured_at == captured_at,
            )
        )
        if existing is not None:
            logger.debug(f"Duplicate location for job {job.id} at {captured_at}")
            return IngestResult(job=job, created=False, total_distance_meters=job.total_distance_meters)

        previous = (await self.db.execute(
            select(JobLocation.latitude, JobLocation.longitude)
            .where(JobLocation.job_id == job.id, JobLocation.captured_at < captured_at)
            .order_by(JobLocation.captured_at.desc())
            .limit(1)
        )).first()
        arrived_late = await self.db.scalar(
            select(JobLocation.id)
            .where(JobLocation.job_id == job.id, JobLocation.captured_at > captured_at)
            .limit(1)
        ) is not None

        self.db.add(JobLocation(
            job_id=job.id,
            technician_id=technician_id,
            latitude=update.latitude,
            longitude=update.longitude,
            accuracy=update.accuracy,
            speed=update.speed,
            heading=update.heading,
            driving_score=update.driving_score,
            is_moving=update.is_moving,
            confidence=update.confidence.value if update.confidence else None,
            captured_at=captured_at,
            received_at=datetime.utcnow(),
        ))
        try:
            await self.db.flush()
        except IntegrityError:
            # Concurrent delivery of the same update over the other path
            await self.db.rollback()
            job = await self.get_job(update.job_id)
            return IngestResult(job=job, created=False, total_distance_meters=job.total_distance_meters)

        if arrived_late:
            # Inserted mid-history: the legs around it change
            job.total_distance_meters = await self._recompute_distance(job.id)
        elif previous is not None:
            job.total_distance_meters = (job.total_distance_meters or 0.0) + haversine_meters(
                previous.latitude, previous.longitude, update.latitude, update.longitude
            )
        await self.db.commit()
        await self.db.refresh(job)
        return IngestResult(job=job, created=True, total_distance_meters=job.total_distance_meters)

    async def _recompute_distance(self, job_id: str) -> float:
        """Haversine sum over the job's history in capture order."""
        rows = (await self.db.execute(
            select(JobLocation.latitude, JobLocation.longitude)
            .where(JobLocation.job_id == job_id)
            .order_by(JobLocation.captured_at)
        )).all()

        total = 0.0
        for prev, cur in zip(rows, rows[1:]):
            total += haversine_meters(prev.latitude, prev.longitude, cur.latitude, cur.longitude)
        return total

    async def ingest_and_broadcast(self, technician_id: str, update: LocationUpdate) -> IngestResult:
        """Shared handling for the websocket and HTTP delivery paths."""
        result = await self.ingest(technician_id, update)
        if result.created:
            await self.broadcast_location(result.job, technician_id, update)
        return result

    async def broadcast_location(self, job: Job, technician_id: str, update: LocationUpdate) -> int:
        payload = update.to_wire()
        payload["technicianId"] = technician_id
        if job.tracking_code:
            payload["trackingCode"] = job.tracking_code
        return await self.connections.broadcast_to_rooms(LOCATION_EVENT, payload, self._rooms(job))

    @staticmethod
    def _rooms(job: Job) -> List[str]:
        rooms = [job_room(job.id)]
        if job.company_id:
            rooms.append(company_room(job.company_id))
        if job.tracking_code:
            rooms.append(tracking_room(job.tracking_code))
        return rooms

    # ==================== History & Public Tracking ====================

    async def get_history(self, job_id: str, limit: Optional[int] = None) -> List[JobLocation]:
        """Location history in capture order; with limit, the most recent points."""
        query = select(JobLocation).where(JobLocation.job_id == job_id)
        if limit:
            query = query.order_by(JobLocation.captured_at.desc()).limit(limit)
            rows = list((await self.db.scalars(query)).all())
            rows.reverse()
            return rows
        query = query.order_by(JobLocation.captured_at)
        return list((await self.db.scalars(query)).all())

    async def get_latest_location(self, job_id: str) -> Optional[JobLocation]:
        return await self.db.scalar(
            select(JobLocation)
            .where(JobLocation.job_id == job_id)
            .order_by(JobLocation.captured_at.desc())
            .limit(1)
        )

    async def get_public_tracking_info(self, tracking_code: str) -> Optional[PublicTrackingInfo]:
        """Get tracking info for the public tracking page"""
        job = await self.db.scalar(select(Job).where(Job.tracking_code == tracking_code))
        if job is None:
            return None

        latest = await self.get_latest_location(job.id)
        status = JobStatusEnum(job.status)

        return PublicTrackingInfo(
            job_id=job.id,
            tracking_code=tracking_code,
            status=status,
            status_message=self._status_message(status),
            destination_latitude=job.destination_latitude,
            destination_longitude=job.destination_longitude,
            destination_label=job.destination_label,
            latest_location=location_to_wire(latest) if latest else None,
            total_distance_meters=job.total_distance_meters or 0.0,
            last_updated=datetime.utcnow(),
        )

    @staticmethod
    def _status_message(status: JobStatusEnum) -> str:
        if status == JobStatusEnum.completed:
            return "Service completed. Thank you!"
        if status == JobStatusEnum.cancelled:
            return "This service visit was cancelled."
        if status == JobStatusEnum.in_progress:
            return "Your technician is currently working on your service."
        if status == JobStatusEnum.arrived:
            return "Your technician has arrived."
        if status == JobStatusEnum.en_route:
            return "Your technician is on the way."
        return "Your service is scheduled. We'll notify you when your technician is on the way."


def location_to_wire(location: JobLocation) -> dict:
    """Stored row back to the camelCase wire payload."""
    update = LocationUpdate(
        job_id=location.job_id,
        latitude=location.latitude,
        longitude=location.longitude,
        accuracy=location.accuracy,
        speed=location.speed,
        heading=location.heading,
        captured_at=location.captured_at.replace(tzinfo=timezone.utc),
        driving_score=location.driving_score,
        is_moving=location.is_moving,
        confidence=location.confidence,
    )
    return update.to_wire()
