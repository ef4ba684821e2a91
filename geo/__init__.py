#Marks geo as a package.
#Re-exports the great-circle helpers so dispatch and stores can do
#`from geo import distance_km` without knowing internal file names.
#No business logic.

from .distance import (
    EARTH_RADIUS_KM,
    BoundingBox,
    bounding_box,
    distance_km,
    is_valid_coordinate,
    within_radius,
)

__all__ = [
    "EARTH_RADIUS_KM",
    "BoundingBox",
    "bounding_box",
    "distance_km",
    "is_valid_coordinate",
    "within_radius",
]
