from trackpro.schemas.tracking import (
    PositionSample,
    LocationUpdate,
    DrivingMetrics,
    RouteInfo,
    JobInfo,
    TrackingStatus,
)

__all__ = [
    "PositionSample",
    "LocationUpdate",
    "DrivingMetrics",
    "RouteInfo",
    "JobInfo",
    "TrackingStatus",
]
