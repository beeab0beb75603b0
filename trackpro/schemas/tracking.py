"""
Tracking Schemas
Pydantic models for position samples, wire location updates, driving metrics,
routes and job views used by the tracking engine and the receiving API
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ConfidenceEnum(str, Enum):
    high = "high"
    medium = "medium"
    low = "low"
    very_low = "very_low"


class JobStatusEnum(str, Enum):
    pending = "pending"
    assigned = "assigned"
    en_route = "en_route"
    arrived = "arrived"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


# Statuses during which live tracking and routing are active
EN_ROUTE_ELIGIBLE = frozenset({
    JobStatusEnum.assigned,
    JobStatusEnum.en_route,
    JobStatusEnum.arrived,
})

TERMINAL_STATUSES = frozenset({JobStatusEnum.completed, JobStatusEnum.cancelled})


class AccuracyTier(str, Enum):
    navigation = "navigation"
    balanced = "balanced"


class TrackingState(str, Enum):
    idle = "idle"
    requesting_permission = "requesting_permission"
    active = "active"
    suspended = "suspended"
    stopped = "stopped"
    permission_denied = "permission_denied"


class LatLng(BaseModel):
    """A bare coordinate pair"""

    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    @property
    def latitude(self) -> float:
        return self.lat

    @property
    def longitude(self) -> float:
        return self.lng


# ==================== Sensor Samples ====================


class PositionSample(BaseModel):
    """One immutable sensor reading"""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0, description="GPS accuracy in meters")
    speed: Optional[float] = Field(None, ge=0, description="Speed in m/s")
    heading: Optional[float] = Field(None, ge=0, le=360, description="Compass heading")
    captured_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DrivingMetrics(BaseModel):
    """Per-session driving behaviour aggregate"""

    current_speed_kmh: float = 0.0
    acceleration: float = 0.0
    harsh_braking_count: int = 0
    harsh_acceleration_count: int = 0
    score: int = Field(100, ge=0, le=100)
    total_distance_meters: float = 0.0
    average_speed_kmh: float = 0.0


@dataclass
class TrackingSession:
    """
    Lifecycle unit for one job's tracking activation.

    last_emitted_sample and current_interval_ms are written only by the
    AdaptiveUpdateScheduler.
    """

    job_id: str
    started_at: datetime
    current_interval_ms: int
    last_emitted_sample: Optional[PositionSample] = None
    is_active: bool = True
    state: TrackingState = TrackingState.idle
    emitted_count: int = field(default=0)


# ==================== Wire Updates ====================


class LocationUpdate(BaseModel):
    """Location update exchanged between the device and subscribers"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)
    speed: Optional[float] = Field(None, ge=0)
    heading: Optional[float] = Field(None, ge=0, le=360)
    captured_at: datetime
    driving_score: Optional[int] = Field(None, ge=0, le=100)
    is_moving: Optional[bool] = None
    confidence: Optional[ConfidenceEnum] = None

    @classmethod
    def from_sample(
        cls,
        job_id: str,
        sample: PositionSample,
        driving_score: Optional[int] = None,
        is_moving: Optional[bool] = None,
        confidence: Optional[ConfidenceEnum] = None,
    ) -> "LocationUpdate":
        return cls(
            job_id=job_id,
            latitude=sample.latitude,
            longitude=sample.longitude,
            accuracy=sample.accuracy,
            speed=sample.speed,
            heading=sample.heading,
            captured_at=sample.captured_at,
            driving_score=driving_score,
            is_moving=is_moving,
            confidence=confidence,
        )

    def to_wire(self) -> dict:
        """JSON-ready camelCase payload with absent optionals omitted."""
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    @property
    def dedupe_key(self) -> tuple:
        return (self.job_id, self.captured_at)


class OfflineQueueEntry(BaseModel):
    """Offline queue record; persisted as JSON"""

    update: LocationUpdate
    synced: bool = False


class LocationIngestResponse(BaseModel):
    """Result of storing a location update on the receiving side"""

    success: bool = True
    duplicate: bool = False
    total_distance_meters: float


# ==================== Routes & ETA ====================


class RouteInfo(BaseModel):
    """Routed path summary between technician and destination"""

    distance_meters: float = Field(..., ge=0)
    duration_seconds: float = Field(..., ge=0)
    duration_in_traffic_seconds: Optional[float] = Field(None, ge=0)
    origin_label: Optional[str] = None
    destination_label: Optional[str] = None
    polyline: Optional[str] = Field(None, description="Encoded overview polyline")
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def effective_duration_seconds(self) -> float:
        if self.duration_in_traffic_seconds is not None:
            return self.duration_in_traffic_seconds
        return self.duration_seconds

    @property
    def eta_minutes(self) -> int:
        return math.ceil(self.effective_duration_seconds / 60)

    @property
    def traffic_delay_minutes(self) -> float:
        if self.duration_in_traffic_seconds is None:
            return 0.0
        return (self.duration_in_traffic_seconds - self.duration_seconds) / 60


class EtaUpdate(BaseModel):
    """Published whenever a fresh route is applied"""

    job_id: str
    eta_minutes: int
    distance_meters: float
    traffic_delay_minutes: float
    route: RouteInfo


# ==================== Jobs ====================


class JobInfo(BaseModel):
    """Job fields the tracking engine depends on"""

    id: str
    status: JobStatusEnum
    technician_id: Optional[str] = None
    company_id: Optional[str] = None
    tracking_code: Optional[str] = None
    destination_latitude: Optional[float] = Field(None, ge=-90, le=90)
    destination_longitude: Optional[float] = Field(None, ge=-180, le=180)
    destination_label: Optional[str] = None
    total_distance_meters: float = 0.0

    class Config:
        from_attributes = True

    @property
    def destination(self) -> Optional[LatLng]:
        if self.destination_latitude is None or self.destination_longitude is None:
            return None
        return LatLng(lat=self.destination_latitude, lng=self.destination_longitude)


class JobStatusUpdate(BaseModel):
    """Status change request"""

    status: JobStatusEnum


class PublicTrackingInfo(BaseModel):
    """Public tracking page payload, keyed by tracking code"""

    job_id: str
    tracking_code: str
    status: JobStatusEnum
    status_message: str
    destination_latitude: Optional[float] = None
    destination_longitude: Optional[float] = None
    destination_label: Optional[str] = None
    latest_location: Optional[dict] = Field(None, description="Latest update in wire format")
    total_distance_meters: float = 0.0
    last_updated: datetime


class TrackingStatus(BaseModel):
    """Snapshot of the device's tracking state"""

    state: TrackingState
    job_id: Optional[str] = None
    is_tracking: bool
    current_interval_ms: Optional[int] = None
    last_emitted_sample: Optional[PositionSample] = None
    has_keep_alive: bool = False
    is_moving: bool = False
    driving_metrics: DrivingMetrics
    location_trail: List[PositionSample] = Field(default_factory=list)
    sensor_warning: bool = False
    updates_delayed: bool = False
    unsynced_count: int = 0
