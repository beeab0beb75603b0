"""
Routing Service

Routing capability used by the Route/ETA engine. The Google Directions
adapter asks for traffic-aware duration (departure_time + best_guess model)
and falls back to the plain duration when traffic data is absent.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

import httpx

from trackpro.config import Settings, settings as default_settings
from trackpro.exceptions import RoutingError
from trackpro.schemas.tracking import LatLng, RouteInfo

logger = logging.getLogger(__name__)


class RoutingService(ABC):
    @abstractmethod
    async def compute_route(
        self,
        origin: LatLng,
        destination: LatLng,
        depart_at: Optional[datetime] = None,
    ) -> RouteInfo:
        """Route origin -> destination. Raises RoutingError on failure."""


class GoogleDirectionsRoutingService(RoutingService):
    """Google Maps Directions API over httpx."""

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        cfg = config or default_settings
        self.api_key = cfg.GOOGLE_MAPS_API_KEY
        self.url = cfg.DIRECTIONS_URL
        self.timeout = cfg.HTTP_TIMEOUT_SECONDS
        self._transport = transport

    def _params(self, origin: LatLng, destination: LatLng, depart_at: Optional[datetime]) -> dict:
        departure = depart_at or datetime.now(timezone.utc)
        return {
            "origin": f"{origin.lat},{origin.lng}",
            "destination": f"{destination.lat},{destination.lng}",
            "mode": "driving",
            "departure_time": int(departure.timestamp()),
            "traffic_model": "best_guess",
            "key": self.api_key,
        }

    async def compute_route(
        self,
        origin: LatLng,
        destination: LatLng,
        depart_at: Optional[datetime] = None,
    ) -> RouteInfo:
        if not self.api_key:
            raise RoutingError("GOOGLE_MAPS_API_KEY is not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.url, params=self._params(origin, destination, depart_at))
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise RoutingError(f"Directions request failed: {e}") from e
        except ValueError as e:
            raise RoutingError(f"Directions response was not JSON: {e}") from e

        status = data.get("status")
        if status != "OK" or not data.get("routes"):
            message = data.get("error_message") or status or "no routes"
            raise RoutingError(f"Directions unavailable: {message}")

        return self._parse_route(data["routes"][0])

    def _parse_route(self, route: dict) -> RouteInfo:
        try:
            leg = route["legs"][0]
            distance = leg["distance"]["value"]
            duration = leg["duration"]["value"]
        except (KeyError, IndexError, TypeError) as e:
            raise RoutingError(f"Malformed directions response: {e}") from e

        in_traffic = (leg.get("duration_in_traffic") or {}).get("value")
        if in_traffic is None:
            logger.debug("No traffic data in directions response, using plain duration")

        return RouteInfo(
            distance_meters=distance,
            duration_seconds=duration,
            duration_in_traffic_seconds=in_traffic,
            origin_label=leg.get("start_address"),
            destination_label=leg.get("end_address"),
            polyline=(route.get("overview_polyline") or {}).get("points"),
        )
