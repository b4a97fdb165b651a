"""
Duty Pharmacy Registry — Geospatial Proximity

Haversine distance between pharmacy locations. Used as a guard during
fuzzy identity matching: two similarly named pharmacies reported far
apart are different pharmacies.

No external geo-libraries required — pure math with stdlib.
"""

from __future__ import annotations

import math
from dataclasses import dataclass


EARTH_RADIUS_KM = 6371.0

# Two branches of a chain in one district can be a few hundred metres apart
DEFAULT_REJECT_RADIUS_KM = 1.5


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 coordinate pair."""
    latitude: float
    longitude: float

    def is_valid(self) -> bool:
        """Check whether coordinates fall within Turkey's bounding box."""
        return (
            35.5 <= self.latitude <= 42.5
            and 25.5 <= self.longitude <= 45.0
        )


def haversine_km(coord_a: Coordinate, coord_b: Coordinate) -> float:
    """
    Compute the great-circle distance in kilometres between two WGS84 points
    using the Haversine formula.
    """
    lat1 = math.radians(coord_a.latitude)
    lat2 = math.radians(coord_b.latitude)
    dlat = math.radians(coord_b.latitude - coord_a.latitude)
    dlon = math.radians(coord_b.longitude - coord_a.longitude)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def to_coordinate(lat: float | None, lon: float | None) -> Coordinate | None:
    """Build a Coordinate, or None when either side is missing or out of range."""
    if lat is None or lon is None:
        return None
    try:
        coord = Coordinate(latitude=float(lat), longitude=float(lon))
    except (TypeError, ValueError):
        return None
    return coord if coord.is_valid() else None


def compute_geo_proximity(
    lat_a: float | None,
    lon_a: float | None,
    lat_b: float | None,
    lon_b: float | None,
) -> dict[str, float | str | None]:
    """
    Distance between two pharmacy locations.

    When either side lacks usable coordinates the distance is None
    (indeterminate), never 0.0.

    Returns
    -------
    dict with keys:
        - distance_km : float or None
        - status      : 'computed' | 'missing_coords'
    """
    coord_a = to_coordinate(lat_a, lon_a)
    coord_b = to_coordinate(lat_b, lon_b)

    if coord_a is None or coord_b is None:
        return {"distance_km": None, "status": "missing_coords"}

    return {
        "distance_km": round(haversine_km(coord_a, coord_b), 4),
        "status": "computed",
    }


def too_far_apart(
    lat_a: float | None,
    lon_a: float | None,
    lat_b: float | None,
    lon_b: float | None,
    reject_radius_km: float = DEFAULT_REJECT_RADIUS_KM,
) -> bool:
    """True only when both locations are known and further apart than the radius."""
    dist = compute_geo_proximity(lat_a, lon_a, lat_b, lon_b)["distance_km"]
    return dist is not None and dist > reject_radius_km


def bounding_box(
    centre: Coordinate,
    radius_km: float,
) -> tuple[tuple[float, float], tuple[float, float]]:
    """
    Latitude and longitude ranges enclosing a circle of *radius_km*.

    Used to narrow a database scan before exact haversine filtering;
    the box always contains the circle.
    """
    dlat = math.degrees(radius_km / EARTH_RADIUS_KM)
    cos_lat = max(math.cos(math.radians(centre.latitude)), 1e-6)
    dlon = math.degrees(radius_km / (EARTH_RADIUS_KM * cos_lat))
    return (
        (centre.latitude - dlat, centre.latitude + dlat),
        (centre.longitude - dlon, centre.longitude + dlon),
    )
