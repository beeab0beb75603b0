"""
Live Tracking Feed

Presentation-facing consumer of broadcast location updates for one job.
Updates can arrive twice (live + replay) and out of order (realtime vs HTTP
fallback), so the feed keys them by (jobId, capturedAt) and orders by
capture time, never by arrival.
"""

import bisect
import logging
from typing import List, Optional

from pydantic import ValidationError

from trackpro.config import Settings, settings as default_settings
from trackpro.schemas.tracking import JobInfo, JobStatusEnum, LocationUpdate
from trackpro.services.realtime_channel import RealtimeChannel
from trackpro.services.route_eta_engine import RouteEtaEngine
from trackpro.services.transport_dispatcher import LOCATION_EVENT

logger = logging.getLogger(__name__)

STATUS_EVENT = "job.status_changed"


class LiveTrackingFeed:
    def __init__(
        self,
        job: JobInfo,
        engine: Optional[RouteEtaEngine] = None,
        config: Optional[Settings] = None,
    ):
        cfg = config or default_settings
        self.job = job
        self.engine = engine
        self.trail_size = cfg.LOCATION_TRAIL_SIZE
        self.current: Optional[LocationUpdate] = None
        self.duplicates = 0
        self._trail: List[LocationUpdate] = []

    @property
    def trail(self) -> List[LocationUpdate]:
        """Capture-ordered recent positions, oldest first."""
        return list(self._trail)

    @property
    def room(self) -> str:
        if self.job.tracking_code:
            return f"tracking_{self.job.tracking_code}"
        return f"job_{self.job.id}"

    async def attach(self, channel: RealtimeChannel) -> None:
        channel.on(LOCATION_EVENT, self.handle_location)
        channel.on(STATUS_EVENT, self.handle_status)
        await channel.subscribe([self.room])

    def handle_location(self, data) -> bool:
        """Fold one broadcast payload in. Returns True if it was new."""
        try:
            update = LocationUpdate.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed location update: {e}")
            return False
        if update.job_id != self.job.id:
            return False

        times = [item.captured_at for item in self._trail]
        index = bisect.bisect_left(times, update.captured_at)
        if index < len(times) and times[index] == update.captured_at:
            self.duplicates += 1
            return False
        if index == 0 and len(self._trail) >= self.trail_size:
            # Older than everything we still hold
            return False

        self._trail.insert(index, update)
        if len(self._trail) > self.trail_size:
            del self._trail[: len(self._trail) - self.trail_size]

        if self.current is None or update.captured_at > self.current.captured_at:
            self.current = update
            if self.engine is not None:
                self.engine.on_position(update, self.job.status, self.job.destination)
        return True

    def handle_status(self, data) -> None:
        if not isinstance(data, dict):
            return
        job_id = data.get("jobId") or data.get("job_id")
        if str(job_id) != self.job.id:
            return
        try:
            status = JobStatusEnum(data.get("status"))
        except ValueError:
            logger.warning(f"Ignoring unknown job status {data.get('status')!r}")
            return
        self.job = self.job.model_copy(update={"status": status})
        logger.info(f"Job {self.job.id} status is now {status.value}")
