"""
Tracking Client

Composition root for the device side of the tracking engine. Builds one
channel, dispatcher, sampler, background policy and LocationTrackingService
for a technician, and owns their lifetimes.

Usage:
    client = TrackingClient("tech-1", ReplayPositionSource(track))
    await client.start()
    await client.tracking.start_tracking(job_id)
    ...
    await client.close()
"""

import logging
from typing import Optional

from trackpro.config import Settings, settings as default_settings
from trackpro.schemas.tracking import JobInfo
from trackpro.services.background_policy import AsyncIOSchedulerPolicy, BackgroundExecutionPolicy
from trackpro.services.geolocation_sampler import GeolocationSampler, PositionSource
from trackpro.services.live_tracking_feed import LiveTrackingFeed
from trackpro.services.location_tracking_service import LocationTrackingService
from trackpro.services.realtime_channel import RealtimeChannel
from trackpro.services.route_eta_engine import RouteEtaEngine
from trackpro.services.routing_service import GoogleDirectionsRoutingService, RoutingService
from trackpro.services.tracking_api_client import HttpJobDirectory, TrackingApiClient
from trackpro.services.transport_dispatcher import TransportDispatcher

logger = logging.getLogger(__name__)


class TrackingClient:
    def __init__(
        self,
        technician_id: str,
        source: PositionSource,
        config: Optional[Settings] = None,
        policy: Optional[BackgroundExecutionPolicy] = None,
    ):
        cfg = config or default_settings
        self.technician_id = technician_id
        self.channel = RealtimeChannel(params={"technician_id": technician_id}, config=cfg)
        self.api = TrackingApiClient(technician_id, config=cfg)
        self.dispatcher = TransportDispatcher(self.channel, self.api, config=cfg)
        self.sampler = GeolocationSampler(source, cfg)
        self.policy = policy or AsyncIOSchedulerPolicy()
        self.jobs = HttpJobDirectory(self.api)
        self.tracking = LocationTrackingService(
            technician_id,
            self.sampler,
            self.dispatcher,
            self.jobs,
            self.policy,
            config=cfg,
        )

    async def start(self) -> None:
        await self.channel.connect()
        logger.info(f"Tracking client started for technician {self.technician_id}")

    async def close(self) -> None:
        await self.tracking.shutdown()
        await self.channel.close()
        logger.info(f"Tracking client closed for technician {self.technician_id}")


async def open_live_feed(
    job: JobInfo,
    channel: RealtimeChannel,
    routing: Optional[RoutingService] = None,
    config: Optional[Settings] = None,
) -> LiveTrackingFeed:
    """Observer-side feed for one job with ETA recalculation attached."""
    cfg = config or default_settings
    engine = RouteEtaEngine(routing or GoogleDirectionsRoutingService(cfg), config=cfg)
    feed = LiveTrackingFeed(job, engine=engine, config=cfg)
    await feed.attach(channel)
    return feed
