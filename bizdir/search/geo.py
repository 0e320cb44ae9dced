"""Great-circle helpers for nearby search."""

import math
from dataclasses import dataclass

EARTH_RADIUS_KM = 6371.0
# Padding in degrees so float rounding never pushes a boundary point out of the box.
BOX_EPSILON = 1e-9


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains_lng(self, lng: float) -> bool:
        if self.min_lng <= self.max_lng:
            return self.min_lng <= lng <= self.max_lng
        # Box crosses the antimeridian.
        return lng >= self.min_lng or lng <= self.max_lng


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bounding_box(lat: float, lng: float, radius_km: float) -> BoundingBox:
    """Lat/lng box containing every point within ``radius_km`` on the sphere.

    Every point whose haversine distance is at most the radius lies inside the
    box, so the box is a safe pre-filter for the exact distance check. A flat
    ``radius / 111.32`` degree box is too small: one degree of latitude is only
    about 111.195 km at R = 6371, so a due-north point at exactly ``radius_km``
    would fall outside it and be dropped.
    """
    angular = radius_km / EARTH_RADIUS_KM
    lat_delta = math.degrees(angular) + BOX_EPSILON
    min_lat = lat - lat_delta
    max_lat = lat + lat_delta

    if min_lat <= -90.0 or max_lat >= 90.0:
        # A pole is inside the circle: every longitude qualifies.
        return BoundingBox(max(min_lat, -90.0), min(max_lat, 90.0), -180.0, 180.0)

    ratio = math.sin(angular) / math.cos(math.radians(lat))
    if ratio >= 1.0:
        return BoundingBox(min_lat, max_lat, -180.0, 180.0)
    lng_delta = math.degrees(math.asin(ratio)) + BOX_EPSILON
    min_lng = lng - lng_delta
    max_lng = lng + lng_delta
    if min_lng < -180.0:
        min_lng += 360.0
    if max_lng > 180.0:
        max_lng -= 360.0
    return BoundingBox(min_lat, max_lat, min_lng, max_lng)
