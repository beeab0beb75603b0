"""
Adaptive Update Scheduler

Gates noisy/duplicate samples by distance and adapts the polling cadence to
the technician's motion state (stationary, moving, high speed).
"""

import logging
from dataclasses import dataclass
from typing import Optional

from trackpro.config import Settings, settings as default_settings
from trackpro.schemas.tracking import ConfidenceEnum, PositionSample, TrackingSession
from trackpro.utils.geo import distance_between

logger = logging.getLogger(__name__)

# Accuracy ceilings (meters) for each confidence label
CONFIDENCE_THRESHOLDS = (
    (5.0, ConfidenceEnum.high),
    (20.0, ConfidenceEnum.medium),
    (50.0, ConfidenceEnum.low),
)


def classify_confidence(accuracy: Optional[float]) -> ConfidenceEnum:
    """Coarse label from reported accuracy. Informational only."""
    if accuracy is None:
        return ConfidenceEnum.very_low
    for ceiling, label in CONFIDENCE_THRESHOLDS:
        if accuracy <= ceiling:
            return label
    return ConfidenceEnum.very_low


class DistanceGate:
    """Minimum-distance filter shared by the scheduler and the route engine."""

    def __init__(self, min_distance_m: float):
        self.min_distance_m = min_distance_m

    def distance(self, last, sample) -> Optional[float]:
        if last is None:
            return None
        return distance_between(last, sample)

    def should_emit(self, last, sample) -> bool:
        """First sample always passes; afterwards only moves >= min distance."""
        if last is None:
            return True
        return distance_between(last, sample) >= self.min_distance_m


@dataclass(frozen=True)
class SchedulingDecision:
    emit: bool
    distance_m: Optional[float]
    interval_ms: int
    interval_changed: bool = False


class AdaptiveUpdateScheduler:
    """
    Decides per sample whether to emit and at what cadence to keep polling.

    Sole writer of TrackingSession.last_emitted_sample and
    TrackingSession.current_interval_ms. evaluate() never awaits, so the
    test-and-set on last_emitted_sample is atomic on the event loop.
    """

    def __init__(self, config: Optional[Settings] = None, gate: Optional[DistanceGate] = None):
        cfg = config or default_settings
        self.gate = gate or DistanceGate(cfg.MIN_DISTANCE_CHANGE_METERS)
        self.update_interval_ms = cfg.UPDATE_INTERVAL_MS
        self.stationary_interval_ms = cfg.STATIONARY_INTERVAL_MS
        self.high_speed_interval_ms = cfg.HIGH_SPEED_INTERVAL_MS
        self.hysteresis_ms = cfg.INTERVAL_HYSTERESIS_MS
        self.moving_threshold = cfg.MOVING_THRESHOLD_MPS
        self.high_speed_threshold = cfg.HIGH_SPEED_THRESHOLD_MPS

    @property
    def initial_interval_ms(self) -> int:
        return self.update_interval_ms

    def is_moving(self, speed: Optional[float]) -> bool:
        return (speed or 0.0) > self.moving_threshold

    def target_interval(self, speed: Optional[float]) -> int:
        """Motion-based cadence for the given speed (m/s)."""
        speed = speed or 0.0
        if not self.is_moving(speed):
            return self.stationary_interval_ms
        if speed > self.high_speed_threshold:
            return self.high_speed_interval_ms
        return self.update_interval_ms

    def evaluate(self, session: TrackingSession, sample: PositionSample) -> SchedulingDecision:
        """Gate the sample and, when accepted, adapt the session cadence."""
        last = session.last_emitted_sample
        distance = self.gate.distance(last, sample)

        if not self.gate.should_emit(last, sample):
            return SchedulingDecision(
                emit=False,
                distance_m=distance,
                interval_ms=session.current_interval_ms,
            )

        session.last_emitted_sample = sample
        session.emitted_count += 1

        new_interval = self.target_interval(sample.speed)
        changed = abs(new_interval - session.current_interval_ms) > self.hysteresis_ms
        if changed:
            logger.info(
                f"Cadence for job {session.job_id}: "
                f"{session.current_interval_ms}ms -> {new_interval}ms"
            )
            session.current_interval_ms = new_interval

        return SchedulingDecision(
            emit=True,
            distance_m=distance,
            interval_ms=session.current_interval_ms,
            interval_changed=changed,
        )
