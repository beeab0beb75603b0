"""
Tests for the Transport Dispatcher and offline queue.
"""

import asyncio
import json

import pytest

from trackpro.config import Settings
from trackpro.schemas.tracking import LocationUpdate
from trackpro.services.offline_queue import OfflineLocationQueue
from trackpro.services.realtime_channel import CONNECTED, DISCONNECTED
from trackpro.services.transport_dispatcher import LOCATION_EVENT, TransportDispatcher

from tests.factories import make_sample
from tests.fakes import FakeApi, FakeChannel


def update_at(seconds, job_id="job-1"):
    return LocationUpdate.from_sample(job_id, make_sample(42.3601 + seconds * 0.0001, -71.0589, seconds=seconds))


class TestOfflineQueue:
    def test_append_is_unsynced_and_bounded(self):
        queue = OfflineLocationQueue(capacity=3)
        for i in range(5):
            queue.append(update_at(i))

        assert len(queue) == 3
        assert queue.unsynced_count == 3
        assert [e.update.captured_at for e in queue.entries] == [update_at(i).captured_at for i in (2, 3, 4)]

    @pytest.mark.asyncio
    async def test_replay_in_capture_order_stops_at_failure(self):
        queue = OfflineLocationQueue(capacity=10)
        for i in range(4):
            queue.append(update_at(i))
        sent = []

        async def send(update):
            if len(sent) == 2:
                return False
            sent.append(update.captured_at)
            return True

        synced = await queue.replay(send)

        assert synced == 2
        assert sent == [update_at(0).captured_at, update_at(1).captured_at]
        assert queue.unsynced_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_replays_send_each_entry_once(self):
        queue = OfflineLocationQueue(capacity=10)
        for i in range(3):
            queue.append(update_at(i))
        sent = []

        async def send(update):
            await asyncio.sleep(0)
            sent.append(update.captured_at)
            return True

        results = await asyncio.gather(queue.replay(send), queue.replay(send))

        assert sorted(results) == [0, 3]
        assert len(sent) == 3
        assert queue.unsynced_count == 0

    def test_persistence_round_trip(self, tmp_path):
        path = tmp_path / "offline.json"
        queue = OfflineLocationQueue(capacity=5, path=str(path))
        queue.append(update_at(0))
        queue.append(update_at(1))

        stored = json.loads(path.read_text())
        assert stored[0]["update"]["jobId"] == "job-1"
        assert stored[0]["synced"] is False

        restored = OfflineLocationQueue(capacity=5, path=str(path))
        assert restored.unsynced_count == 2

    def test_corrupt_file_is_ignored(self, tmp_path):
        path = tmp_path / "offline.json"
        path.write_text("{not json")

        queue = OfflineLocationQueue(capacity=5, path=str(path))

        assert len(queue) == 0


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_realtime_path_when_connected(self):
        channel = FakeChannel(connected=True)
        api = FakeApi()
        dispatcher = TransportDispatcher(channel, api, OfflineLocationQueue(capacity=10))

        dispatcher.send(update_at(0))
        await dispatcher.drain()

        assert len(channel.published) == 1
        event, payload = channel.published[0]
        assert event == LOCATION_EVENT
        assert payload["jobId"] == "job-1"
        assert "capturedAt" in payload
        assert api.posted == []
        assert dispatcher.queue.unsynced_count == 1

    @pytest.mark.asyncio
    async def test_falls_back_when_publish_fails(self):
        channel = FakeChannel(connected=True)
        channel.fail_publish = True
        api = FakeApi()
        dispatcher = TransportDispatcher(channel, api, OfflineLocationQueue(capacity=10))

        dispatcher.send(update_at(0))
        await dispatcher.drain()

        assert len(api.posted) == 1
        assert dispatcher.sent_fallback == 1

    @pytest.mark.asyncio
    async def test_offline_then_reconnect(self):
        """Disconnected send goes over HTTP, stays unsynced, syncs exactly once on reconnect."""
        channel = FakeChannel(connected=False)
        api = FakeApi()
        dispatcher = TransportDispatcher(channel, api, OfflineLocationQueue(capacity=10))
        update = update_at(0)

        dispatcher.send(update)
        await dispatcher.drain()

        assert api.posted == [update]
        assert dispatcher.queue.entries[0].synced is False

        channel.connected = True
        await channel.emit(CONNECTED)

        assert dispatcher.queue.entries[0].synced is True
        assert len(channel.published) == 1

        await channel.emit(DISCONNECTED)
        await channel.emit(CONNECTED)

        assert len(channel.published) == 1

    @pytest.mark.asyncio
    async def test_send_does_not_block_or_raise_when_everything_fails(self):
        channel = FakeChannel(connected=False)
        dispatcher = TransportDispatcher(channel, FakeApi(fail=True), OfflineLocationQueue(capacity=10))

        dispatcher.send(update_at(0))
        assert dispatcher.in_flight == 1
        await dispatcher.drain()

        assert dispatcher.last_error is not None
        assert dispatcher.queue.unsynced_count == 1

    @pytest.mark.asyncio
    async def test_updates_delayed_after_three_failed_cycles(self):
        channel = FakeChannel(connected=False)
        dispatcher = TransportDispatcher(
            channel, FakeApi(fail=True), OfflineLocationQueue(capacity=10), config=Settings()
        )
        dispatcher.send(update_at(0))
        await dispatcher.drain()

        await dispatcher.run_sync_cycle()
        await dispatcher.run_sync_cycle()
        assert dispatcher.updates_delayed is False

        await dispatcher.run_sync_cycle()
        assert dispatcher.updates_delayed is True
        assert dispatcher.failed_sync_cycles == 3

        channel.connected = True
        synced = await dispatcher.run_sync_cycle()

        assert synced == 1
        assert dispatcher.updates_delayed is False
        assert dispatcher.failed_sync_cycles == 0

    @pytest.mark.asyncio
    async def test_http_delivery_is_not_reported_as_delayed(self):
        """Channel down but HTTP healthy: entries wait for replay, nothing is delayed."""
        channel = FakeChannel(connected=False)
        api = FakeApi()
        dispatcher = TransportDispatcher(channel, api, OfflineLocationQueue(capacity=10), config=Settings())

        for seconds in range(3):
            dispatcher.send(update_at(seconds))
            await dispatcher.drain()
            await dispatcher.run_sync_cycle()

        assert len(api.posted) == 3
        assert dispatcher.queue.unsynced_count == 3
        assert dispatcher.undelivered_count == 0
        assert dispatcher.failed_sync_cycles == 0
        assert dispatcher.updates_delayed is False

    @pytest.mark.asyncio
    async def test_recovered_fallback_clears_delay_after_replay(self):
        channel = FakeChannel(connected=False)
        api = FakeApi(fail=True)
        dispatcher = TransportDispatcher(channel, api, OfflineLocationQueue(capacity=10), config=Settings())
        dispatcher.send(update_at(0))
        await dispatcher.drain()
        for _ in range(3):
            await dispatcher.run_sync_cycle()
        assert dispatcher.updates_delayed is True

        api.fail = False
        dispatcher.send(update_at(1))
        await dispatcher.drain()
        await dispatcher.run_sync_cycle()
        assert dispatcher.updates_delayed is True

        channel.connected = True
        await dispatcher.run_sync_cycle()

        assert dispatcher.undelivered_count == 0
        assert dispatcher.updates_delayed is False

    @pytest.mark.asyncio
    async def test_replay_preserves_capture_order(self):
        channel = FakeChannel(connected=False)
        dispatcher = TransportDispatcher(channel, FakeApi(fail=True), OfflineLocationQueue(capacity=10))
        for i in range(5):
            dispatcher.send(update_at(i))
        await dispatcher.drain()

        channel.connected = True
        await dispatcher.replay_offline()

        captured = [payload["capturedAt"] for _, payload in channel.published]
        assert captured == sorted(captured)
        assert len(captured) == 5
