#Purpose: Great-circle distance math shared by every dispatch layer.
#Typical responsibilities:
#haversine distance between two (lat, lng) points in kilometers
#radius membership checks used by the candidate filter
#bounding boxes so stores can pre-filter rows before exact distance math
#coordinate range checks used by request validation
#Output: plain floats / tuples. No I/O, no dispatch rules.

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

#internal coordinate type :(lat, lng) in degrees
LatLng = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class BoundingBox:
    """
    Latitude/longitude envelope around a center point.
    Every point within the radius lies inside the box (the reverse is not true),
    so stores use it as a cheap index-friendly pre-filter.
    """
    min_lat: float
    min_lng: float
    max_lat: float
    max_lng: float

    def contains(self, point: LatLng) -> bool:
        lat, lng = point
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


def distance_km(a: LatLng, b: LatLng) -> float:
    """
    Haversine great-circle distance in kilometers between two (lat, lng) points.

    Deltas are taken as absolute values so distance_km(a, b) == distance_km(b, a)
    holds bit for bit, and distance_km(a, a) == 0.0.
    """
    lat1, lng1 = a
    lat2, lng2 = b

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(abs(lat2 - lat1))
    delta_lng = math.radians(abs(lng2 - lng1))

    h = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(delta_lng / 2) ** 2
    )
    #clamp: rounding can push h a hair above 1.0 for antipodal points
    h = min(1.0, h)
    c = 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))
    return EARTH_RADIUS_KM * c


def within_radius(point: LatLng, center: LatLng, radius_km: float) -> bool:
    return distance_km(point, center) <= radius_km


def bounding_box(center: LatLng, radius_km: float) -> BoundingBox:
    """
    Degree envelope that contains every point within `radius_km` of `center`.
    Longitude span widens toward the poles; near a pole the box covers all longitudes.
    """
    lat, lng = center
    lat_delta = math.degrees(radius_km / EARTH_RADIUS_KM)

    min_lat = max(-90.0, lat - lat_delta)
    max_lat = min(90.0, lat + lat_delta)

    cos_lat = math.cos(math.radians(lat))
    if cos_lat <= 1e-12 or min_lat <= -90.0 or max_lat >= 90.0:
        return BoundingBox(min_lat, -180.0, max_lat, 180.0)

    lng_delta = math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat))
    #boxes crossing the antimeridian are widened instead of split in two
    if lng_delta >= 180.0 or lng - lng_delta < -180.0 or lng + lng_delta > 180.0:
        return BoundingBox(min_lat, -180.0, max_lat, 180.0)

    return BoundingBox(min_lat, lng - lng_delta, max_lat, lng + lng_delta)


def is_valid_coordinate(lat, lng) -> bool:
    """
    Range check for raw inputs (bools and NaN are rejected).
    """
    for value in (lat, lng):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if math.isnan(value) or math.isinf(value):
            return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0
