"""Great-circle distance helpers for checkpoint trails."""

import math
from typing import Any, Iterable, Mapping, Optional

EARTH_RADIUS_METERS = 6371000.0


def haversine_distance(
    latitude1: float,
    longitude1: float,
    latitude2: float,
    longitude2: float,
) -> float:
    """
    Distance in meters between two coordinates.

    Args:
        latitude1: Latitude of the first point in degrees
        longitude1: Longitude of the first point in degrees
        latitude2: Latitude of the second point in degrees
        longitude2: Longitude of the second point in degrees

    Returns:
        Great-circle distance in meters
    """
    phi1 = math.radians(latitude1)
    phi2 = math.radians(latitude2)
    delta_phi = math.radians(latitude2 - latitude1)
    delta_lambda = math.radians(longitude2 - longitude1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def _coordinates(point: Mapping[str, Any]) -> Optional[tuple[float, float]]:
    latitude = point.get("latitude", point.get("lat"))
    longitude = point.get("longitude", point.get("lng"))
    if latitude is None or longitude is None:
        return None
    return float(latitude), float(longitude)


def path_distance(checkpoints: Iterable[Mapping[str, Any]]) -> float:
    """
    Total distance in meters over consecutive checkpoints.

    Checkpoints without coordinates are skipped.
    """
    total = 0.0
    previous: Optional[tuple[float, float]] = None
    for point in checkpoints or []:
        current = _coordinates(point)
        if current is None:
            continue
        if previous is not None:
            total += haversine_distance(previous[0], previous[1], current[0], current[1])
        previous = current
    return total
