# Services module
from trackpro.services.websocket_manager import manager, ConnectionManager
from trackpro.services.location_tracking_service import LocationTrackingService
from trackpro.services.transport_dispatcher import TransportDispatcher
from trackpro.services.route_eta_engine import RouteEtaEngine

__all__ = [
    "manager",
    "ConnectionManager",
    # Device-side tracking engine
    "LocationTrackingService",
    "TransportDispatcher",
    "RouteEtaEngine",
]
