"""
Driving Metrics Calculator

Derives speed, acceleration, harsh-event counts and a per-trip driving score
from raw position samples. One instance per active tracking session.
"""

import logging
from typing import Optional

from trackpro.config import Settings, settings as default_settings
from trackpro.schemas.tracking import DrivingMetrics, PositionSample
from trackpro.utils.geo import MPS_TO_KMH, distance_between

logger = logging.getLogger(__name__)


class DrivingMetricsCalculator:
    """
    Stateful calculator for the active session.

    The score is a monotonic trip grade: it only ever decreases until
    reset() is called for a new session.
    """

    MAX_SCORE = 100

    def __init__(self, config: Optional[Settings] = None):
        cfg = config or default_settings
        self.harsh_braking_threshold = cfg.HARSH_BRAKING_THRESHOLD
        self.harsh_acceleration_threshold = cfg.HARSH_ACCELERATION_THRESHOLD
        self.harsh_braking_penalty = cfg.HARSH_BRAKING_PENALTY
        self.harsh_acceleration_penalty = cfg.HARSH_ACCELERATION_PENALTY
        self.reset()

    def reset(self) -> None:
        """Restore defaults for a new session."""
        self._metrics = DrivingMetrics()
        self._last_speed = 0.0
        self._last_sample: Optional[PositionSample] = None
        self._last_accepted: Optional[PositionSample] = None
        self._speed_total = 0.0
        self._speed_count = 0

    @property
    def metrics(self) -> DrivingMetrics:
        return self._metrics.model_copy()

    def update(
        self,
        sample: PositionSample,
        previous_speed: Optional[float] = None,
    ) -> DrivingMetrics:
        """
        Fold one raw sample into the session metrics.

        Acceleration uses the elapsed capture time since the previous raw
        sample. The first sample of a session establishes the speed baseline; a
        sample whose timestamp does not advance leaves the baseline unchanged.
        """
        current_speed = sample.speed or 0.0
        last_speed = self._last_speed if previous_speed is None else previous_speed

        self._metrics.current_speed_kmh = current_speed * MPS_TO_KMH

        self._speed_total += current_speed
        self._speed_count += 1
        self._metrics.average_speed_kmh = (self._speed_total / self._speed_count) * MPS_TO_KMH

        if self._last_sample is not None:
            elapsed = (sample.captured_at - self._last_sample.captured_at).total_seconds()
            if elapsed <= 0:
                # Baseline stays on the newest sample seen
                logger.debug(f"Skipping acceleration update, elapsed={elapsed}s")
                return self.metrics
            acceleration = (current_speed - last_speed) / elapsed
            self._metrics.acceleration = acceleration
            self._apply_harsh_events(acceleration)

        self._last_speed = current_speed
        self._last_sample = sample
        return self.metrics

    def record_accepted(self, sample: PositionSample) -> float:
        """
        Add the great-circle distance from the previous accepted sample.

        Returns the distance added, in meters.
        """
        distance = 0.0
        if self._last_accepted is not None:
            distance = distance_between(self._last_accepted, sample)
            self._metrics.total_distance_meters += distance
        self._last_accepted = sample
        return distance

    def _apply_harsh_events(self, acceleration: float) -> None:
        if acceleration < self.harsh_braking_threshold:
            self._metrics.harsh_braking_count += 1
            self._penalize(self.harsh_braking_penalty)
            logger.info(f"Harsh braking detected: {acceleration:.1f} m/s²")
        elif acceleration > self.harsh_acceleration_threshold:
            self._metrics.harsh_acceleration_count += 1
            self._penalize(self.harsh_acceleration_penalty)
            logger.info(f"Harsh acceleration detected: {acceleration:.1f} m/s²")

    def _penalize(self, points: int) -> None:
        self._metrics.score = max(0, min(self.MAX_SCORE, self._metrics.score - points))
