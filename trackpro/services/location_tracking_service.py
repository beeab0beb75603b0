"""
Location Tracking Service

Owns the tracking session lifecycle on the technician's device:
permission probing, the continuous watch, the re-poll timer, background
suspension and job status changes. Per-sample work is a synchronous
reducer: metrics, then the scheduler's gate and cadence, then a
fire-and-forget send.

One instance is held by the composition root; there is no module-level
singleton.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Deque, List, Optional, Set

from trackpro.config import Settings, settings as default_settings
from trackpro.exceptions import (
    JobAccessError,
    SensorPermissionError,
    TrackingError,
    TransportError,
)
from trackpro.schemas.tracking import (
    TERMINAL_STATUSES,
    JobInfo,
    JobStatusEnum,
    LatLng,
    LocationUpdate,
    PositionSample,
    TrackingSession,
    TrackingState,
    TrackingStatus,
)
from trackpro.services.background_policy import BackgroundExecutionPolicy, RecurringHandle
from trackpro.services.driving_metrics import DrivingMetricsCalculator
from trackpro.services.geolocation_sampler import GeolocationSampler, SamplerOptions, WatchHandle
from trackpro.services.tracking_api_client import JobDirectory
from trackpro.services.transport_dispatcher import TransportDispatcher
from trackpro.services.update_scheduler import AdaptiveUpdateScheduler, classify_confidence
from trackpro.utils.geo import distance_between

logger = logging.getLogger(__name__)

REPOLL_JOB_ID = "location-repoll"
SYNC_JOB_ID = "location-offline-sync"

JOB_STATUS_EVENT = "job.status_changed"
ARRIVAL_EVENT = "technician.arrived"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocationTrackingService:
    """Tracking session owner for one technician on one device."""

    def __init__(
        self,
        technician_id: str,
        sampler: GeolocationSampler,
        dispatcher: TransportDispatcher,
        jobs: JobDirectory,
        policy: BackgroundExecutionPolicy,
        config: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
        scheduler: Optional[AdaptiveUpdateScheduler] = None,
    ):
        cfg = config or default_settings
        self.technician_id = technician_id
        self.sampler = sampler
        self.dispatcher = dispatcher
        self.jobs = jobs
        self.policy = policy
        self.clock = clock
        self.scheduler = scheduler or AdaptiveUpdateScheduler(cfg)
        self.metrics = DrivingMetricsCalculator(cfg)
        self.options = SamplerOptions.from_settings(cfg)

        self.background_interval_ms = cfg.BACKGROUND_UPDATE_INTERVAL_MS
        self.sync_interval_seconds = cfg.BACKGROUND_SYNC_INTERVAL_SECONDS
        self.geofence_radius_m = cfg.GEOFENCE_RADIUS_METERS

        self.session: Optional[TrackingSession] = None
        self.job: Optional[JobInfo] = None
        self.in_background = False
        self.arrived = False
        self.is_moving = False
        self._trail: Deque[PositionSample] = deque(maxlen=cfg.LOCATION_TRAIL_SIZE)
        self._watch: Optional[WatchHandle] = None
        self._repoll: Optional[RecurringHandle] = None
        self._sync: Optional[RecurringHandle] = None
        self._tasks: Set[asyncio.Task] = set()

        dispatcher.channel.on(JOB_STATUS_EVENT, self._on_status_event)

    # ==================== Lifecycle ====================

    @property
    def is_tracking(self) -> bool:
        return self.session is not None and self.session.is_active

    async def start_tracking(self, job_id: str) -> TrackingSession:
        """
        Start a session for job_id, stopping any session already running.

        Raises JobAccessError if the job is not this technician's or is
        already finished, and SensorPermissionError if location access is
        denied.
        """
        if self.is_tracking:
            self.stop_tracking("superseded by a new session")

        session = TrackingSession(
            job_id=job_id,
            started_at=self.clock(),
            current_interval_ms=self.scheduler.initial_interval_ms,
            state=TrackingState.requesting_permission,
        )
        self.session = session
        self.job = None
        self.arrived = False
        self.is_moving = False
        self.in_background = False
        self.metrics.reset()
        self._trail.clear()
        logger.info(f"Starting location tracking for job {job_id}")

        try:
            job = await self.jobs.get_job(job_id)
        except TrackingError:
            self._abort(session, TrackingState.stopped)
            raise
        if job.technician_id != self.technician_id:
            self._abort(session, TrackingState.stopped)
            raise JobAccessError(f"Job {job_id} is not assigned to technician {self.technician_id}")
        if job.status in TERMINAL_STATUSES:
            self._abort(session, TrackingState.stopped)
            raise JobAccessError(f"Job {job_id} is already {job.status.value}")

        first_sample: Optional[PositionSample] = None
        try:
            first_sample = await self.sampler.get_once(self.options)
        except SensorPermissionError:
            logger.error(f"Location permission denied, cannot track job {job_id}")
            self._abort(session, TrackingState.permission_denied)
            raise
        except TrackingError as e:
            logger.warning(f"Initial position unavailable for job {job_id}: {e}")

        if session is not self.session or not session.is_active:
            logger.info(f"Tracking start for job {job_id} was cancelled")
            return session

        self.job = job
        self.policy.acquire_keep_alive()
        self._watch = self.sampler.start_watching(
            self.options,
            lambda sample: self._on_watch_sample(session, sample),
            self._on_sensor_error,
        )
        self._repoll = self.policy.schedule_recurring(
            REPOLL_JOB_ID,
            self._effective_interval_ms(session) / 1000,
            partial(self._repoll_position, session),
        )
        self._sync = self.policy.schedule_recurring(
            SYNC_JOB_ID,
            self.sync_interval_seconds,
            self.dispatcher.run_sync_cycle,
        )
        session.state = TrackingState.active

        if first_sample is not None:
            self.handle_sample(first_sample)

        await self.dispatcher.channel.subscribe([f"job_{job_id}"])
        return session

    def stop_tracking(self, reason: str = "stopped") -> None:
        """
        Halt the watch, clear timers and release keep-alive.

        Synchronous; sends already in flight finish on their own and cannot
        revive the session.
        """
        session = self.session
        if session is None or not session.is_active:
            return
        self._abort(session, TrackingState.stopped)
        logger.info(f"Stopped location tracking for job {session.job_id}: {reason}")

    def _abort(self, session: TrackingSession, state: TrackingState) -> None:
        session.is_active = False
        session.state = state
        if self._watch is not None:
            self._watch.cancel()
            self._watch = None
        if self._repoll is not None:
            self._repoll.cancel()
            self._repoll = None
        if self._sync is not None:
            self._sync.cancel()
            self._sync = None
        self.policy.release()
        self.in_background = False

    async def shutdown(self) -> None:
        self.stop_tracking("shutdown")
        await self.dispatcher.drain()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self.policy.shutdown()

    # ==================== Samples ====================

    def _on_watch_sample(self, session: TrackingSession, sample: PositionSample) -> None:
        if session is not self.session:
            return
        self.handle_sample(sample)

    async def _repoll_position(self, session: TrackingSession) -> None:
        if session is not self.session or not session.is_active:
            return
        try:
            sample = await self.sampler.get_once(self.options)
        except SensorPermissionError as e:
            self._on_sensor_error(e)
            return
        except TrackingError as e:
            logger.warning(f"Periodic location update failed: {e}")
            return
        if session is self.session:
            self.handle_sample(sample)

    def handle_sample(self, sample: PositionSample) -> Optional[LocationUpdate]:
        """
        Fold one raw sample into the active session.

        Returns the LocationUpdate that was sent, or None if the sample was
        gated out or no session is active. Never awaits.
        """
        session = self.session
        if session is None or not session.is_active:
            return None
        if session.state not in (TrackingState.active, TrackingState.suspended):
            return None
        if self._trail and sample.captured_at < self._trail[-1].captured_at:
            # Watch and repoll race; updates leave in capture order
            logger.debug(f"Dropping stale sample captured at {sample.captured_at.isoformat()}")
            return None

        self._trail.append(sample)
        metrics = self.metrics.update(sample)
        self.is_moving = self.scheduler.is_moving(sample.speed)

        decision = self.scheduler.evaluate(session, sample)
        if not decision.emit:
            logger.debug(
                f"Skipping update, moved {decision.distance_m:.1f}m "
                f"(< {self.scheduler.gate.min_distance_m}m)"
            )
            return None

        self.metrics.record_accepted(sample)
        update = LocationUpdate.from_sample(
            session.job_id,
            sample,
            driving_score=metrics.score,
            is_moving=self.is_moving,
            confidence=classify_confidence(sample.accuracy),
        )
        self.dispatcher.send(update)

        if decision.interval_changed:
            self._reschedule_repoll(session)
        self._check_arrival(session, sample)
        return update

    def _on_sensor_error(self, error: TrackingError) -> None:
        if isinstance(error, SensorPermissionError):
            session = self.session
            if session is not None and session.is_active:
                logger.error(f"Location permission revoked during job {session.job_id}")
                self._abort(session, TrackingState.permission_denied)

    # ==================== Cadence & background ====================

    def _effective_interval_ms(self, session: TrackingSession) -> int:
        if self.in_background:
            return max(session.current_interval_ms, self.background_interval_ms)
        return session.current_interval_ms

    def _reschedule_repoll(self, session: TrackingSession) -> None:
        if self._repoll is None:
            return
        interval_ms = self._effective_interval_ms(session)
        self._repoll.reschedule(interval_ms / 1000)
        logger.debug(f"Re-poll interval for job {session.job_id} set to {interval_ms}ms")

    def set_background(self, background: bool) -> None:
        """
        Host app moved to background (True) or foreground (False).

        Background caps the re-poll cadence at BACKGROUND_UPDATE_INTERVAL_MS;
        foregrounding restores the motion cadence and replays offline updates.
        """
        session = self.session
        if session is None or not session.is_active or background == self.in_background:
            return
        if session.state not in (TrackingState.active, TrackingState.suspended):
            logger.debug(f"Ignoring background change while {session.state.value}")
            return
        self.in_background = background
        if background:
            session.state = TrackingState.suspended
            logger.info(f"App backgrounded, tracking job {session.job_id} at reduced cadence")
        else:
            session.state = TrackingState.active
            logger.info(f"App foregrounded, resuming tracking for job {session.job_id}")
            self._spawn(self.dispatcher.replay_offline())
        self._reschedule_repoll(session)

    # ==================== Job status & arrival ====================

    def _on_status_event(self, data) -> None:
        if not isinstance(data, dict):
            return
        job_id = data.get("jobId") or data.get("job_id")
        status = data.get("status")
        if not job_id or not status:
            return
        try:
            self.on_job_status_changed(str(job_id), JobStatusEnum(status))
        except ValueError:
            logger.warning(f"Ignoring unknown job status {status!r} for job {job_id}")

    def on_job_status_changed(self, job_id: str, status: JobStatusEnum) -> None:
        session = self.session
        if session is None or session.job_id != job_id:
            return
        if self.job is not None:
            self.job = self.job.model_copy(update={"status": status})
        if status in TERMINAL_STATUSES and session.is_active:
            self.stop_tracking(f"job {status.value}")

    def has_arrived(self, destination: LatLng) -> bool:
        """True if the last emitted position is inside the arrival geofence."""
        if self.session is None or self.session.last_emitted_sample is None:
            return False
        distance = distance_between(self.session.last_emitted_sample, destination)
        return distance <= self.geofence_radius_m

    def _check_arrival(self, session: TrackingSession, sample: PositionSample) -> None:
        if self.arrived or self.job is None or self.job.destination is None:
            return
        if not self.has_arrived(self.job.destination):
            return
        self.arrived = True
        logger.info(f"Technician {self.technician_id} arrived at job {session.job_id}")
        self._spawn(self._publish_arrival(session.job_id, sample))

    async def _publish_arrival(self, job_id: str, sample: PositionSample) -> None:
        payload = {
            "jobId": job_id,
            "technicianId": self.technician_id,
            "latitude": sample.latitude,
            "longitude": sample.longitude,
            "capturedAt": sample.captured_at.isoformat(),
        }
        try:
            await self.dispatcher.channel.publish(ARRIVAL_EVENT, payload)
        except TransportError as e:
            logger.warning(f"Arrival notification not sent for job {job_id}: {e}")

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ==================== Status ====================

    @property
    def location_trail(self) -> List[PositionSample]:
        return list(self._trail)

    def get_tracking_status(self) -> TrackingStatus:
        session = self.session
        return TrackingStatus(
            state=session.state if session else TrackingState.idle,
            job_id=session.job_id if session else None,
            is_tracking=self.is_tracking,
            current_interval_ms=session.current_interval_ms if session else None,
            last_emitted_sample=session.last_emitted_sample if session else None,
            has_keep_alive=self.policy.has_keep_alive,
            is_moving=self.is_moving,
            driving_metrics=self.metrics.metrics,
            location_trail=self.location_trail,
            sensor_warning=self.sampler.status.warning,
            updates_delayed=self.dispatcher.updates_delayed,
            unsynced_count=self.dispatcher.queue.unsynced_count,
        )
