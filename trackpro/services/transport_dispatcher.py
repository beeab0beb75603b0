"""
Transport Dispatcher

Delivers accepted location updates: realtime channel when connected, HTTP
fallback otherwise. Every update is also kept in the offline queue for
replay after a connectivity gap. Delivery is best effort and never raises
into the sampling path.
"""

import asyncio
import logging
from typing import Optional, Set

from trackpro.config import Settings, settings as default_settings
from trackpro.exceptions import TransportError
from trackpro.schemas.tracking import LocationUpdate
from trackpro.services.offline_queue import OfflineLocationQueue
from trackpro.services.realtime_channel import CONNECTED, DISCONNECTED, RealtimeChannel
from trackpro.services.tracking_api_client import TrackingApiClient

logger = logging.getLogger(__name__)

LOCATION_EVENT = "location.update"


class TransportDispatcher:
    """Fire-and-forget sender with offline queue and replay."""

    def __init__(
        self,
        channel: RealtimeChannel,
        api: TrackingApiClient,
        queue: Optional[OfflineLocationQueue] = None,
        config: Optional[Settings] = None,
    ):
        cfg = config or default_settings
        self.channel = channel
        self.api = api
        self.queue = queue or OfflineLocationQueue(
            capacity=cfg.OFFLINE_QUEUE_CAPACITY,
            path=cfg.OFFLINE_QUEUE_PATH,
        )
        self.delayed_threshold = cfg.DELAYED_SYNC_CYCLE_THRESHOLD

        self._in_flight: Set[asyncio.Task] = set()
        self._undelivered: Set[tuple] = set()
        self._failed_sync_cycles = 0
        self.updates_delayed = False
        self.last_error: Optional[str] = None
        self.sent_realtime = 0
        self.sent_fallback = 0

        channel.on(CONNECTED, self._on_connected)
        channel.on(DISCONNECTED, self._on_disconnected)

    # ==================== Live path ====================

    def send(self, update: LocationUpdate) -> None:
        """
        Queue and deliver an update without blocking the caller.

        The queue append happens before any await, so entries keep capture
        order regardless of how delivery tasks interleave.
        """
        self.queue.append(update)
        task = asyncio.create_task(self.deliver(update))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def deliver(self, update: LocationUpdate) -> bool:
        """Try realtime, then HTTP. Returns True if either path accepted it."""
        if self.channel.is_connected:
            try:
                await self.channel.publish(LOCATION_EVENT, update.to_wire())
                self.sent_realtime += 1
                logger.debug(f"Location sent via realtime channel for job {update.job_id}")
                return True
            except TransportError as e:
                logger.warning(f"Realtime send failed, falling back to HTTP: {e}")
        else:
            logger.debug("Realtime channel not connected, using HTTP fallback")

        try:
            await self.api.post_location(update)
            self.sent_fallback += 1
            logger.debug(f"Location sent via HTTP for job {update.job_id}")
            return True
        except TransportError as e:
            self.last_error = str(e)
            self._undelivered.add(update.dedupe_key)
            logger.warning(f"Location update not delivered, kept for replay: {e}")
            return False

    async def drain(self) -> None:
        """Wait for in-flight sends to finish."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    # ==================== Replay ====================

    async def _publish_for_replay(self, update: LocationUpdate) -> bool:
        try:
            await self.channel.publish(LOCATION_EVENT, update.to_wire())
            return True
        except TransportError as e:
            logger.warning(f"Offline replay interrupted: {e}")
            return False

    async def replay_offline(self) -> int:
        """Replay unsynced entries through the realtime channel."""
        if not self.channel.is_connected:
            return 0
        synced = await self.queue.replay(self._publish_for_replay)
        self._forget_delivered()
        return synced

    def _forget_delivered(self) -> None:
        pending = {entry.update.dedupe_key for entry in self.queue.unsynced()}
        self._undelivered &= pending

    @property
    def undelivered_count(self) -> int:
        """Queued updates that neither path has accepted yet."""
        return len(self._undelivered)

    async def run_sync_cycle(self) -> int:
        """
        Periodic sync: replay, and flag delayed updates when updates that
        failed on both paths stay undelivered for too many consecutive cycles.
        Entries already accepted over HTTP wait for replay without counting.
        """
        synced = await self.replay_offline()
        self._forget_delivered()
        if not self._undelivered:
            if self.updates_delayed:
                logger.info("Location updates caught up")
            self._failed_sync_cycles = 0
            self.updates_delayed = False
        else:
            self._failed_sync_cycles += 1
            if self._failed_sync_cycles >= self.delayed_threshold and not self.updates_delayed:
                self.updates_delayed = True
                logger.warning(
                    f"Location updates delayed: {len(self._undelivered)} undelivered "
                    f"after {self._failed_sync_cycles} sync cycles"
                )
        return synced

    @property
    def failed_sync_cycles(self) -> int:
        return self._failed_sync_cycles

    async def _on_connected(self, _data) -> None:
        logger.info("Realtime channel connected, replaying offline locations")
        await self.replay_offline()

    def _on_disconnected(self, _data) -> None:
        logger.info("Realtime channel disconnected, HTTP fallback active")
