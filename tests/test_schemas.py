"""
Tests for tracking wire schemas.
"""

import pytest
from pydantic import ValidationError

from trackpro.schemas.tracking import (
    ConfidenceEnum,
    JobInfo,
    LocationUpdate,
    OfflineQueueEntry,
    RouteInfo,
)

from tests.factories import JobInfoFactory, make_sample


class TestLocationUpdateWire:
    def test_camel_case_and_omitted_optionals(self):
        update = LocationUpdate.from_sample("job-1", make_sample(42.3601, -71.0589, speed=4.0))

        wire = update.to_wire()

        assert set(wire) == {"jobId", "latitude", "longitude", "accuracy", "speed", "capturedAt"}

    def test_wire_round_trip_keeps_coordinates(self):
        update = LocationUpdate.from_sample(
            "job-1",
            make_sample(42.360123456, -71.058912345, speed=12.5, heading=270.0),
            driving_score=92,
            is_moving=True,
            confidence=ConfidenceEnum.high,
        )

        restored = LocationUpdate.model_validate(update.to_wire())

        assert restored.latitude == pytest.approx(update.latitude, abs=1e-6)
        assert restored.longitude == pytest.approx(update.longitude, abs=1e-6)
        assert restored.captured_at == update.captured_at
        assert restored.confidence == ConfidenceEnum.high
        assert restored.dedupe_key == update.dedupe_key

    def test_snake_case_input_is_accepted(self):
        update = LocationUpdate.model_validate({
            "job_id": "job-1",
            "latitude": 1.0,
            "longitude": 2.0,
            "captured_at": "2026-01-15T14:00:00Z",
        })

        assert update.job_id == "job-1"

    @pytest.mark.parametrize(
        "field,value",
        [("latitude", 91), ("longitude", -181), ("heading", 361), ("speed", -1), ("drivingScore", 101)],
    )
    def test_out_of_range_values(self, field, value):
        wire = LocationUpdate.from_sample("job-1", make_sample(42.3601, -71.0589)).to_wire()
        wire[field] = value

        with pytest.raises(ValidationError):
            LocationUpdate.model_validate(wire)

    def test_empty_job_id_rejected(self):
        with pytest.raises(ValidationError):
            LocationUpdate.from_sample("", make_sample(42.3601, -71.0589))

    def test_queue_entry_json(self):
        entry = OfflineQueueEntry(update=LocationUpdate.from_sample("job-1", make_sample(1.0, 2.0)))

        restored = OfflineQueueEntry.model_validate(entry.model_dump(by_alias=True, mode="json"))

        assert restored.synced is False
        assert restored.update == entry.update


class TestRouteInfo:
    def test_traffic_duration_wins(self):
        route = RouteInfo(distance_meters=4000, duration_seconds=600, duration_in_traffic_seconds=780)

        assert route.eta_minutes == 13
        assert route.traffic_delay_minutes == pytest.approx(3.0)

    def test_without_traffic(self):
        route = RouteInfo(distance_meters=4000, duration_seconds=600)

        assert route.eta_minutes == 10
        assert route.traffic_delay_minutes == 0.0


class TestJobInfo:
    def test_destination(self):
        job = JobInfoFactory()

        assert job.destination.lat == 42.3736
        assert job.destination.lng == -71.1097

    def test_no_destination(self):
        job = JobInfo(id="job-1", status="assigned")

        assert job.destination is None
