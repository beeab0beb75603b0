"""
Great-circle helpers shared by the scheduler, metrics and receiving side.
"""

import math

# Mean Earth radius in meters
EARTH_RADIUS_METERS = 6371e3

MPS_TO_KMH = 3.6


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Calculate distance between two coordinates using Haversine formula
    Returns distance in meters
    """
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lng = math.radians(lng2 - lng1)

    a = (
        math.sin(delta_lat / 2) ** 2 +
        math.cos(lat1_rad) * math.cos(lat2_rad) *
        math.sin(delta_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def distance_between(a, b) -> float:
    """Distance in meters between two objects exposing latitude/longitude."""
    return haversine_meters(a.latitude, a.longitude, b.latitude, b.longitude)
