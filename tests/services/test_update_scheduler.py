"""
Tests for the Adaptive Update Scheduler and distance gate.
"""

import random
from datetime import datetime, timezone

import pytest

from trackpro.config import Settings
from trackpro.schemas.tracking import ConfidenceEnum, TrackingSession
from trackpro.services.update_scheduler import (
    AdaptiveUpdateScheduler,
    DistanceGate,
    classify_confidence,
)
from trackpro.utils.geo import haversine_meters

from tests.factories import make_sample


def new_session(interval_ms=2000):
    return TrackingSession(
        job_id="job-1",
        started_at=datetime(2026, 1, 15, tzinfo=timezone.utc),
        current_interval_ms=interval_ms,
    )


class TestDistanceGate:
    def test_first_sample_always_passes(self):
        gate = DistanceGate(3.0)
        assert gate.should_emit(None, make_sample(42.3601, -71.0589)) is True

    def test_threshold_is_inclusive(self):
        gate = DistanceGate(3.0)
        a = make_sample(42.3601, -71.0589)
        b = make_sample(42.3601 + 0.0001, -71.0589)
        distance = haversine_meters(a.latitude, a.longitude, b.latitude, b.longitude)

        assert DistanceGate(distance).should_emit(a, b) is True
        assert DistanceGate(distance + 0.01).should_emit(a, b) is False
        assert gate.should_emit(a, b) is True  # ~11m

    def test_sub_threshold_jitter_never_emits_after_first(self):
        """Samples within 1m of the first emitted one are all suppressed."""
        rng = random.Random(7)
        scheduler = AdaptiveUpdateScheduler()
        session = new_session()
        emitted = 0
        for i in range(50):
            sample = make_sample(
                42.3601 + rng.uniform(-0.000005, 0.000005),
                -71.0589 + rng.uniform(-0.000005, 0.000005),
                seconds=i,
            )
            if scheduler.evaluate(session, sample).emit:
                emitted += 1

        assert emitted == 1


class TestCadence:
    def test_stationary_scenario(self):
        """Two stationary samples 1.2m apart: second suppressed, cadence 30s."""
        scheduler = AdaptiveUpdateScheduler()
        session = new_session(scheduler.initial_interval_ms)

        first = scheduler.evaluate(session, make_sample(42.3601, -71.0589, speed=0, seconds=0))
        second = scheduler.evaluate(session, make_sample(42.36011, -71.05891, speed=0, seconds=1))

        assert first.emit is True
        assert first.interval_changed is True
        assert second.emit is False
        assert second.distance_m < 3.0
        assert session.current_interval_ms == 30000
        assert session.emitted_count == 1

    def test_moving_keeps_baseline(self):
        scheduler = AdaptiveUpdateScheduler()
        session = new_session(2000)

        decision = scheduler.evaluate(session, make_sample(42.3601, -71.0589, speed=8))

        assert decision.emit is True
        assert decision.interval_changed is False
        assert session.current_interval_ms == 2000

    def test_high_speed_within_hysteresis_is_not_applied(self):
        """2000 -> 1000 differs by exactly the hysteresis band, so no change."""
        scheduler = AdaptiveUpdateScheduler()
        session = new_session(2000)

        scheduler.evaluate(session, make_sample(42.3601, -71.0589, speed=25))

        assert scheduler.target_interval(25) == 1000
        assert session.current_interval_ms == 2000

    def test_high_speed_from_stationary(self):
        scheduler = AdaptiveUpdateScheduler()
        session = new_session(30000)

        decision = scheduler.evaluate(session, make_sample(42.3601, -71.0589, speed=25))

        assert decision.interval_changed is True
        assert session.current_interval_ms == 1000

    def test_rejected_sample_does_not_touch_cadence(self):
        scheduler = AdaptiveUpdateScheduler()
        session = new_session(2000)
        scheduler.evaluate(session, make_sample(42.3601, -71.0589, speed=5, seconds=0))

        decision = scheduler.evaluate(session, make_sample(42.3601, -71.0589, speed=0, seconds=1))

        assert decision.emit is False
        assert session.current_interval_ms == 2000

    @pytest.mark.parametrize(
        "speed,expected",
        [(None, 30000), (0.0, 30000), (1.0, 30000), (1.5, 2000), (15.0, 2000), (15.1, 1000)],
    )
    def test_target_interval(self, speed, expected):
        assert AdaptiveUpdateScheduler().target_interval(speed) == expected

    def test_thresholds_are_configurable(self):
        scheduler = AdaptiveUpdateScheduler(
            Settings(MOVING_THRESHOLD_MPS=3.0, HIGH_SPEED_THRESHOLD_MPS=10.0, STATIONARY_INTERVAL_MS=60000)
        )
        assert scheduler.target_interval(2.0) == 60000
        assert scheduler.target_interval(11.0) == 1000


class TestConfidence:
    @pytest.mark.parametrize(
        "accuracy,label",
        [
            (3.0, ConfidenceEnum.high),
            (5.0, ConfidenceEnum.high),
            (12.0, ConfidenceEnum.medium),
            (50.0, ConfidenceEnum.low),
            (120.0, ConfidenceEnum.very_low),
            (None, ConfidenceEnum.very_low),
        ],
    )
    def test_classify(self, accuracy, label):
        assert classify_confidence(accuracy) == label

    def test_low_confidence_sample_still_emits(self):
        scheduler = AdaptiveUpdateScheduler()
        session = new_session()

        decision = scheduler.evaluate(session, make_sample(42.3601, -71.0589, accuracy=500.0))

        assert decision.emit is True
