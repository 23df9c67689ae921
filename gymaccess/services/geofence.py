"""
Facility geofence.

A claimed coordinate is accepted iff its great-circle distance to the
facility is at most max_distance_meters. The coordinate is client-supplied
and therefore advisory; QR scanning exists for stronger presence checks.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

from gymaccess.config.access_control import AccessControlConfig
from gymaccess.errors import LocationInvalidError, LocationUnsupportedError

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def as_text(self) -> str:
        """Storage form used on CheckInSession.location."""
        return f"{self.latitude},{self.longitude}"


def haversine_distance_meters(
    latitude_1: float,
    longitude_1: float,
    latitude_2: float,
    longitude_2: float,
) -> float:
    """Return the haversine distance in meters between two coordinates."""
    lat1_rad = math.radians(latitude_1)
    lat2_rad = math.radians(latitude_2)
    diff_lat = math.radians(latitude_2 - latitude_1)
    diff_lon = math.radians(longitude_2 - longitude_1)

    a = (
        math.sin(diff_lat / 2) ** 2
        + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(diff_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_METERS * c


def to_coordinate(latitude: Optional[float], longitude: Optional[float]) -> Coordinate:
    """
    Validate a claimed location.

    Raises:
        LocationUnsupportedError: Missing or non-finite coordinate
        LocationInvalidError: Coordinate outside the valid lat/lng range
    """
    if latitude is None or longitude is None:
        raise LocationUnsupportedError()
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise LocationUnsupportedError()
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        raise LocationInvalidError("The reported location is not a valid coordinate.")
    return Coordinate(latitude=latitude, longitude=longitude)


class Geofence:
    """Circle of max_distance_meters around the facility coordinate."""

    def __init__(self, config: AccessControlConfig):
        self.center = Coordinate(config.facility_lat, config.facility_lng)
        self.max_distance_meters = config.max_distance_meters

    def distance_to(self, point: Coordinate) -> float:
        return haversine_distance_meters(
            point.latitude, point.longitude, self.center.latitude, self.center.longitude
        )

    def contains(self, point: Coordinate) -> bool:
        return self.distance_to(point) <= self.max_distance_meters

    def require_inside(self, point: Coordinate) -> float:
        """
        Returns:
            Distance to the facility in meters

        Raises:
            LocationInvalidError: Outside the geofence
        """
        distance = self.distance_to(point)
        if distance > self.max_distance_meters:
            logger.info("Location outside geofence", extra={
                "distance_meters": round(distance, 1),
                "max_distance_meters": self.max_distance_meters,
            })
            raise LocationInvalidError(
                distance_meters=distance,
                max_distance_meters=self.max_distance_meters,
            )
        return distance
