#!/usr/bin/env python3
"""
Simulate a technician driving to a job.

This script:
- Seeds an assigned job with a destination and public tracking code
- Replays a straight-line drive toward it through the device-side tracking stack
- Prints the public tracking view once the drive completes

Run the API first (uvicorn trackpro.main:app), then:
    python scripts/simulate_drive.py --speedup 10
"""

import argparse
import asyncio
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone

# Add the repo root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import httpx

from trackpro.config import settings
from trackpro.database import close_db, init_db, session_scope
from trackpro.models.job import Job
from trackpro.schemas.tracking import PositionSample
from trackpro.services.geolocation_sampler import ReplayPositionSource
from trackpro.services.tracking_client import TrackingClient
from trackpro.utils.geo import haversine_meters


# Cambridge, MA: start at Kendall Square, end at Harvard Square
START = {"lat": 42.3629, "lng": -71.0901}
DESTINATION = {"lat": 42.3736, "lng": -71.1097, "label": "Harvard Square"}


def build_track(steps: int, seconds_between: float, speed: float) -> list:
    """Evenly spaced samples from START to DESTINATION."""
    started = datetime.now(timezone.utc)
    track = []
    for i in range(steps + 1):
        fraction = i / steps
        track.append(
            PositionSample(
                latitude=START["lat"] + (DESTINATION["lat"] - START["lat"]) * fraction,
                longitude=START["lng"] + (DESTINATION["lng"] - START["lng"]) * fraction,
                accuracy=8.0,
                speed=speed if i < steps else 0.0,
                captured_at=started + timedelta(seconds=i * seconds_between),
            )
        )
    return track


async def seed_job(technician_id: str) -> Job:
    await init_db()
    async with session_scope() as session:
        job = Job(
            id=str(uuid.uuid4()),
            status="en_route",
            technician_id=technician_id,
            company_id="demo-company",
            tracking_code=uuid.uuid4().hex[:12],
            destination_latitude=DESTINATION["lat"],
            destination_longitude=DESTINATION["lng"],
            destination_label=DESTINATION["label"],
        )
        session.add(job)
    return job


async def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--technician", default="demo-tech")
    parser.add_argument("--steps", type=int, default=40)
    parser.add_argument("--interval", type=float, default=5.0, help="seconds between samples")
    parser.add_argument("--speedup", type=float, default=10.0)
    args = parser.parse_args()

    total_m = haversine_meters(START["lat"], START["lng"], DESTINATION["lat"], DESTINATION["lng"])
    speed = total_m / (args.steps * args.interval)

    job = await seed_job(args.technician)
    print(f"Seeded job {job.id} (tracking code {job.tracking_code})")
    print(f"Driving {total_m:.0f} m at {speed:.1f} m/s over {args.steps} samples")

    source = ReplayPositionSource(build_track(args.steps, args.interval, speed), realtime=True, speedup=args.speedup)
    client = TrackingClient(args.technician, source)
    await client.start()
    try:
        await client.tracking.start_tracking(job.id)
        while source.remaining and client.tracking.is_tracking:
            await asyncio.sleep(0.5)
        # let the last sends land
        await client.dispatcher.drain()
        metrics = client.tracking.metrics.metrics
        print(f"Distance {metrics.total_distance_meters:.0f} m, driving score {metrics.score}")
        print(f"Queued {client.dispatcher.queue.unsynced_count} unsynced updates")
    finally:
        await client.close()

    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as http:
        response = await http.get(f"{settings.API_BASE_URL.rstrip('/')}/api/v2/track/{job.tracking_code}")
        print(f"Public view ({response.status_code}): {response.text}")

    await close_db()


if __name__ == "__main__":
    asyncio.run(main())
