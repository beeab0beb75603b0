"""
Tests for the Location Tracking Service session lifecycle.
"""

import asyncio

import pytest

from trackpro.exceptions import JobAccessError, SensorPermissionError
from trackpro.schemas.tracking import JobStatusEnum, LatLng, TrackingState
from trackpro.services.location_tracking_service import (
    ARRIVAL_EVENT,
    JOB_STATUS_EVENT,
    REPOLL_JOB_ID,
    SYNC_JOB_ID,
    LocationTrackingService,
)
from trackpro.services.offline_queue import OfflineLocationQueue
from trackpro.services.transport_dispatcher import LOCATION_EVENT, TransportDispatcher

from tests.factories import JobInfoFactory, make_sample
from tests.fakes import FakeApi, FakeChannel, FakeJobDirectory, FakePolicy, FakeSampler

START = (42.3601, -71.0589)


class Harness:
    def __init__(self, *jobs, once=None, connected=True):
        self.jobs = jobs or (JobInfoFactory(),)
        self.channel = FakeChannel(connected=connected)
        self.api = FakeApi()
        self.dispatcher = TransportDispatcher(self.channel, self.api, OfflineLocationQueue(capacity=50))
        self.sampler = FakeSampler(once=once if once is not None else [make_sample(*START, speed=8)])
        self.policy = FakePolicy()
        self.service = LocationTrackingService(
            "tech-1", self.sampler, self.dispatcher, FakeJobDirectory(*self.jobs), self.policy
        )

    @property
    def job(self):
        return self.jobs[0]

    def locations(self):
        return [payload for event, payload in self.channel.published if event == LOCATION_EVENT]

    async def settle(self):
        await self.dispatcher.drain()
        await asyncio.sleep(0)


class TestStartTracking:
    @pytest.mark.asyncio
    async def test_happy_path(self):
        h = Harness()

        session = await h.service.start_tracking(h.job.id)
        await h.settle()

        assert session.state == TrackingState.active
        assert h.service.is_tracking is True
        assert h.policy.has_keep_alive is True
        assert h.sampler.watch is not None
        assert h.policy.handles[REPOLL_JOB_ID].interval_seconds == 2.0
        assert SYNC_JOB_ID in h.policy.handles
        assert f"job_{h.job.id}" in h.channel.rooms
        assert len(h.locations()) == 1
        assert h.locations()[0]["jobId"] == h.job.id

    @pytest.mark.asyncio
    async def test_job_of_another_technician_is_refused(self):
        h = Harness(JobInfoFactory(technician_id="tech-2"))

        with pytest.raises(JobAccessError):
            await h.service.start_tracking(h.job.id)

        assert h.service.session.state == TrackingState.stopped
        assert h.policy.acquired == 0
        assert h.sampler.watch is None

    @pytest.mark.asyncio
    async def test_terminal_job_is_refused(self):
        h = Harness(JobInfoFactory(status=JobStatusEnum.completed))

        with pytest.raises(JobAccessError):
            await h.service.start_tracking(h.job.id)

        assert h.service.is_tracking is False

    @pytest.mark.asyncio
    async def test_unknown_job_is_refused(self):
        h = Harness()

        with pytest.raises(JobAccessError):
            await h.service.start_tracking("missing")

        assert h.service.session.state == TrackingState.stopped

    @pytest.mark.asyncio
    async def test_permission_denied(self):
        h = Harness(once=[SensorPermissionError("denied")])

        with pytest.raises(SensorPermissionError):
            await h.service.start_tracking(h.job.id)

        assert h.service.session.state == TrackingState.permission_denied
        assert h.service.get_tracking_status().state == TrackingState.permission_denied
        assert h.sampler.watch is None
        assert h.policy.has_keep_alive is False

    @pytest.mark.asyncio
    async def test_no_initial_fix_still_starts(self):
        h = Harness(once=[])

        session = await h.service.start_tracking(h.job.id)
        await h.settle()

        assert session.state == TrackingState.active
        assert h.locations() == []

    @pytest.mark.asyncio
    async def test_restart_stops_previous_session(self):
        first_job = JobInfoFactory()
        second_job = JobInfoFactory()
        h = Harness(first_job, second_job, once=[make_sample(*START, speed=8), make_sample(*START, speed=8)])

        first = await h.service.start_tracking(first_job.id)
        old_watch = h.sampler.watch
        second = await h.service.start_tracking(second_job.id)
        await h.settle()

        assert first.is_active is False
        assert old_watch.cancelled is True
        assert second.is_active is True

        old_watch.on_sample(make_sample(42.37, -71.05, speed=8, seconds=5))
        await h.settle()

        assert {payload["jobId"] for payload in h.locations()} == {first_job.id, second_job.id}
        assert len(h.locations()) == 2

    @pytest.mark.asyncio
    async def test_new_session_resets_metrics(self):
        first_job = JobInfoFactory()
        second_job = JobInfoFactory()
        h = Harness(first_job, second_job, once=[make_sample(*START, speed=20), make_sample(*START, speed=8)])
        await h.service.start_tracking(first_job.id)
        h.sampler.push(make_sample(42.3602, -71.0589, speed=0, seconds=1))
        assert h.service.metrics.metrics.score < 100

        await h.service.start_tracking(second_job.id)

        assert h.service.metrics.metrics.score == 100
        assert len(h.service.location_trail) == 1


class TestStopTracking:
    @pytest.mark.asyncio
    async def test_stop_releases_everything(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)
        repoll = h.policy.handles[REPOLL_JOB_ID]
        watch = h.sampler.watch

        h.service.stop_tracking()

        assert h.service.session.state == TrackingState.stopped
        assert watch.cancelled is True
        assert repoll.cancelled is True
        assert h.policy.handles[SYNC_JOB_ID].cancelled is True
        assert h.policy.has_keep_alive is False

    @pytest.mark.asyncio
    async def test_late_samples_do_not_revive_session(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)
        repoll = h.policy.handles[REPOLL_JOB_ID]
        watch = h.sampler.watch
        await h.settle()
        sent = len(h.locations())

        h.service.stop_tracking()
        h.sampler.once.append(make_sample(42.37, -71.05, speed=8, seconds=3))
        watch.on_sample(make_sample(42.38, -71.05, speed=8, seconds=4))
        await repoll.fn()
        await h.settle()

        assert h.service.handle_sample(make_sample(42.39, -71.05, speed=8, seconds=5)) is None
        assert len(h.locations()) == sent
        assert h.service.is_tracking is False

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)

        h.service.stop_tracking()
        h.service.stop_tracking()

        assert h.service.session.state == TrackingState.stopped

    @pytest.mark.asyncio
    async def test_permission_revoked_mid_session(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)

        h.sampler.watch.on_error(SensorPermissionError("revoked"))

        assert h.service.session.state == TrackingState.permission_denied
        assert h.policy.has_keep_alive is False


class TestSamples:
    @pytest.mark.asyncio
    async def test_sub_threshold_samples_are_gated(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)

        assert h.service.handle_sample(make_sample(42.36011, -71.0589, speed=8, seconds=1)) is None
        update = h.service.handle_sample(make_sample(42.3605, -71.0589, speed=8, seconds=2))
        await h.settle()

        assert update is not None
        assert update.driving_score == 100
        assert update.is_moving is True
        assert len(h.locations()) == 2
        assert len(h.service.location_trail) == 3

    @pytest.mark.asyncio
    async def test_late_repoll_fix_is_not_sent_out_of_order(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)
        h.sampler.push(make_sample(42.3611, -71.0589, speed=8, seconds=10))

        stale = h.service.handle_sample(make_sample(42.3621, -71.0589, speed=8, seconds=5))
        later = h.service.handle_sample(make_sample(42.3621, -71.0589, speed=8, seconds=11))
        await h.settle()

        captured = [payload["capturedAt"] for payload in h.locations()]
        assert stale is None
        assert later is not None
        assert captured == sorted(captured)
        assert len(captured) == 3
        assert h.service.metrics.metrics.harsh_braking_count == 0

    @pytest.mark.asyncio
    async def test_cadence_change_reschedules_repoll(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)

        h.sampler.push(make_sample(42.3610, -71.0589, speed=0, seconds=5))

        assert h.service.session.current_interval_ms == 30000
        assert h.policy.handles[REPOLL_JOB_ID].reschedules == [30.0]

    @pytest.mark.asyncio
    async def test_repoll_feeds_a_sample(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)
        h.sampler.once.append(make_sample(42.3620, -71.0589, speed=8, seconds=2))

        await h.policy.handles[REPOLL_JOB_ID].fn()
        await h.settle()

        assert len(h.locations()) == 2

    @pytest.mark.asyncio
    async def test_offline_sends_use_http_fallback(self):
        h = Harness(connected=False)

        await h.service.start_tracking(h.job.id)
        await h.settle()

        assert len(h.api.posted) == 1
        assert h.service.get_tracking_status().unsynced_count == 1


class TestBackground:
    @pytest.mark.asyncio
    async def test_background_caps_cadence(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)
        repoll = h.policy.handles[REPOLL_JOB_ID]

        h.service.set_background(True)

        assert h.service.session.state == TrackingState.suspended
        assert repoll.interval_seconds == 15.0
        assert h.service.handle_sample(make_sample(42.3620, -71.0589, speed=8, seconds=2)) is not None

        h.service.set_background(False)

        assert h.service.session.state == TrackingState.active
        assert repoll.interval_seconds == 2.0
        await h.service.shutdown()

    @pytest.mark.asyncio
    async def test_background_keeps_slower_stationary_cadence(self):
        h = Harness(once=[make_sample(*START, speed=0)])
        await h.service.start_tracking(h.job.id)

        h.service.set_background(True)

        assert h.policy.handles[REPOLL_JOB_ID].interval_seconds == 30.0

    @pytest.mark.asyncio
    async def test_foreground_replays_offline_updates(self):
        h = Harness(connected=False)
        await h.service.start_tracking(h.job.id)
        await h.settle()
        h.service.set_background(True)

        h.channel.connected = True
        h.service.set_background(False)
        await h.service.shutdown()

        assert len(h.locations()) == 1
        assert h.dispatcher.queue.unsynced_count == 0

    @pytest.mark.asyncio
    async def test_background_during_start_is_ignored(self):
        h = Harness()
        states = []
        lookup = h.service.jobs.get_job

        async def get_job(job_id):
            h.service.set_background(True)
            states.append(h.service.session.state)
            return await lookup(job_id)

        h.service.jobs.get_job = get_job
        session = await h.service.start_tracking(h.job.id)

        assert states == [TrackingState.requesting_permission]
        assert session.state == TrackingState.active
        assert h.service.in_background is False
        assert h.policy.handles[REPOLL_JOB_ID].interval_seconds < 15.0
        await h.service.shutdown()


class TestJobStatus:
    @pytest.mark.asyncio
    async def test_terminal_status_event_stops_tracking(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)

        await h.channel.emit(JOB_STATUS_EVENT, {"jobId": h.job.id, "status": "completed"})

        assert h.service.is_tracking is False
        assert h.service.session.state == TrackingState.stopped
        assert h.service.job.status == JobStatusEnum.completed

    @pytest.mark.asyncio
    async def test_other_events_are_ignored(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)

        await h.channel.emit(JOB_STATUS_EVENT, {"jobId": "other-job", "status": "cancelled"})
        await h.channel.emit(JOB_STATUS_EVENT, {"jobId": h.job.id, "status": "teleported"})
        await h.channel.emit(JOB_STATUS_EVENT, {"jobId": h.job.id, "status": "in_progress"})

        assert h.service.is_tracking is True
        assert h.service.job.status == JobStatusEnum.in_progress


class TestArrival:
    @pytest.mark.asyncio
    async def test_arrival_inside_geofence(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)
        destination = h.job.destination

        h.sampler.push(make_sample(destination.lat, destination.lng, speed=2, seconds=600))
        await h.service.shutdown()

        assert h.service.arrived is True
        assert h.service.has_arrived(destination) is True
        arrivals = [payload for event, payload in h.channel.published if event == ARRIVAL_EVENT]
        assert len(arrivals) == 1
        assert arrivals[0]["technicianId"] == "tech-1"

    @pytest.mark.asyncio
    async def test_has_arrived_without_emitted_sample(self):
        h = Harness()

        assert h.service.has_arrived(LatLng(lat=42.0, lng=-71.0)) is False

    @pytest.mark.asyncio
    async def test_far_from_destination(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)

        assert h.service.has_arrived(h.job.destination) is False
        assert h.service.arrived is False


class TestStatusSnapshot:
    @pytest.mark.asyncio
    async def test_idle_snapshot(self):
        status = Harness().service.get_tracking_status()

        assert status.state == TrackingState.idle
        assert status.is_tracking is False
        assert status.job_id is None
        assert status.driving_metrics.score == 100

    @pytest.mark.asyncio
    async def test_active_snapshot(self):
        h = Harness()
        await h.service.start_tracking(h.job.id)

        status = h.service.get_tracking_status()

        assert status.state == TrackingState.active
        assert status.job_id == h.job.id
        assert status.has_keep_alive is True
        assert status.is_moving is True
        assert status.current_interval_ms == 2000
        assert status.last_emitted_sample is not None
        assert len(status.location_trail) == 1
