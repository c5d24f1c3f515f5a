"""Great-circle distance helpers for offline session feasibility."""

from __future__ import annotations

import math
from typing import NamedTuple, Optional

from ..core.exceptions import ValidationException

EARTH_RADIUS_KM = 6371.0


class Coordinates(NamedTuple):
    latitude: float
    longitude: float


def _check_coordinates(lat: float, lon: float) -> None:
    if not -90.0 <= lat <= 90.0:
        raise ValidationException(
            f"Latitude must be between -90 and 90, got {lat}", code="INVALID_COORDINATES"
        )
    if not -180.0 <= lon <= 180.0:
        raise ValidationException(
            f"Longitude must be between -180 and 180, got {lon}", code="INVALID_COORDINATES"
        )


def distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance in kilometers on a spherical Earth."""
    _check_coordinates(lat1, lon1)
    _check_coordinates(lat2, lon2)

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # Clamp for floating point drift on antipodal points
    c = 2 * math.asin(min(1.0, math.sqrt(a)))
    return EARTH_RADIUS_KM * c


def distance_between(origin: Coordinates, destination: Coordinates) -> float:
    return distance_km(origin.latitude, origin.longitude, destination.latitude, destination.longitude)


def within_radius(origin: Coordinates, destination: Coordinates, max_km: float) -> bool:
    if max_km < 0:
        raise ValidationException(
            f"Maximum distance must not be negative, got {max_km}", code="INVALID_DISTANCE"
        )
    return distance_between(origin, destination) <= max_km


def coordinates_or_none(lat: Optional[float], lon: Optional[float]) -> Optional[Coordinates]:
    if lat is None or lon is None:
        return None
    return Coordinates(float(lat), float(lon))
