"""
Route/ETA Engine

Consumer-side recalculation loop: each accepted technician position that
moves past the distance gate, while the job is en-route-eligible, triggers
one traffic-aware route computation. Computations never block ingestion,
and a transient failure never clears the last good ETA.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from trackpro.config import Settings, settings as default_settings
from trackpro.exceptions import RoutingError
from trackpro.schemas.tracking import (
    EN_ROUTE_ELIGIBLE,
    EtaUpdate,
    JobStatusEnum,
    LatLng,
    LocationUpdate,
    RouteInfo,
)
from trackpro.services.routing_service import RoutingService
from trackpro.services.update_scheduler import DistanceGate

logger = logging.getLogger(__name__)

ETA_CHANGED = "eta.changed"
ROUTING_ERROR = "routing.error"


class RouteEtaEngine:
    """
    Keeps RouteInfo current for one tracked job.

    Pass the scheduler's DistanceGate so route recomputation and update
    emission share one threshold.
    """

    def __init__(
        self,
        routing: RoutingService,
        gate: Optional[DistanceGate] = None,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        cfg = config or default_settings
        self.routing = routing
        self.gate = gate or DistanceGate(cfg.MIN_DISTANCE_CHANGE_METERS)
        self.clock = clock

        self.route_info: Optional[RouteInfo] = None
        self.last_error: Optional[str] = None
        self.computations = 0
        self._last_origin: Optional[LocationUpdate] = None
        self._applied_at: Optional[datetime] = None
        self._listeners: Dict[str, List[Callable[[Any], Any]]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def on(self, event: str, handler: Callable[[Any], Any]) -> None:
        self._listeners.setdefault(event, []).append(handler)

    def _emit(self, event: str, payload: Any) -> None:
        for handler in self._listeners.get(event, []):
            try:
                handler(payload)
            except Exception as e:
                logger.error(f"Error in {event} listener: {e}", exc_info=True)

    @property
    def eta_minutes(self) -> Optional[int]:
        return self.route_info.eta_minutes if self.route_info else None

    def on_position(
        self,
        update: LocationUpdate,
        job_status: JobStatusEnum,
        destination: Optional[LatLng],
    ) -> bool:
        """
        Schedule a route computation for this position if it qualifies.

        Returns True when a computation was started.
        """
        if job_status not in EN_ROUTE_ELIGIBLE or destination is None:
            return False

        last = self._last_origin
        if last is not None and update.captured_at <= last.captured_at:
            return False
        if not self.gate.should_emit(last, update):
            return False

        self._last_origin = update
        self.computations += 1
        task = asyncio.create_task(self._compute(update, destination))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _compute(self, update: LocationUpdate, destination: LatLng) -> None:
        origin = LatLng(lat=update.latitude, lng=update.longitude)
        try:
            route = await self.routing.compute_route(origin, destination, self.clock())
        except RoutingError as e:
            self.last_error = str(e)
            logger.warning(f"Route calculation failed for job {update.job_id}, keeping last ETA: {e}")
            self._emit(ROUTING_ERROR, e)
            return

        if self._applied_at is not None and update.captured_at <= self._applied_at:
            logger.debug(f"Discarding stale route for job {update.job_id}")
            return

        self.route_info = route
        self._applied_at = update.captured_at
        self.last_error = None
        eta = EtaUpdate(
            job_id=update.job_id,
            eta_minutes=route.eta_minutes,
            distance_meters=route.distance_meters,
            traffic_delay_minutes=route.traffic_delay_minutes,
            route=route,
        )
        logger.info(f"ETA for job {update.job_id}: {eta.eta_minutes} min ({route.distance_meters:.0f}m)")
        self._emit(ETA_CHANGED, eta)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def reset(self) -> None:
        """Forget route state, e.g. when the feed switches jobs."""
        for task in list(self._tasks):
            task.cancel()
        self.route_info = None
        self.last_error = None
        self._last_origin = None
        self._applied_at = None
