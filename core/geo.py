"""
core/geo.py — Zone Geometry
============================
Zones are circles: a center point plus a radius in kilometres.
Used by the zone registry to validate boundaries and by the proof workflow to
flag whether aid was delivered inside the zone.
"""

import math
from dataclasses import dataclass

from config import settings
from core.errors import InvalidZoneParameters

EARTH_RADIUS_KM = 6371.0088


@dataclass(frozen=True)
class GeoBoundary:
    latitude: float
    longitude: float
    radius_km: float

    def contains(self, latitude: float, longitude: float) -> bool:
        return haversine_km(self.latitude, self.longitude, latitude, longitude) <= self.radius_km


def validate_boundary(latitude, longitude, radius_km) -> GeoBoundary:
    """Raises InvalidZoneParameters unless the center and radius are usable."""
    problems = []
    if not _is_number(latitude) or not -90 <= latitude <= 90:
        problems.append("latitude must be between -90 and 90")
    if not _is_number(longitude) or not -180 <= longitude <= 180:
        problems.append("longitude must be between -180 and 180")
    if not _is_number(radius_km) or radius_km <= 0:
        problems.append("radius_km must be positive")
    elif radius_km > settings.MAX_ZONE_RADIUS_KM:
        problems.append(f"radius_km must not exceed {settings.MAX_ZONE_RADIUS_KM}")
    if problems:
        raise InvalidZoneParameters("Invalid geo boundary.", problems=problems)
    return GeoBoundary(float(latitude), float(longitude), float(radius_km))


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
