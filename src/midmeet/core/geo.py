from __future__ import annotations

from collections.abc import Sequence
from math import asin, cos, radians, sin, sqrt
from typing import Protocol

from midmeet.domain.errors import InvalidArgumentError

"""
Geospatial helpers.

Meetups happen inside one metro area, so a haversine distance and a flat
latitude/longitude mean are all the geometry the session engine needs.
"""

EARTH_RADIUS_KM = 6371.0


class LatLng(Protocol):
    """Anything with `lat` / `lng` in decimal degrees (Location, Venue)."""

    @property
    def lat(self) -> float: ...

    @property
    def lng(self) -> float: ...


def distance_km(a: LatLng, b: LatLng) -> float:
    """Great-circle distance in kilometres between two points."""
    lat1 = radians(a.lat)
    lng1 = radians(a.lng)
    lat2 = radians(b.lat)
    lng2 = radians(b.lng)

    dlat = lat2 - lat1
    dlng = lng2 - lng1

    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlng / 2) ** 2
    # Rounding can push h a hair above 1 for antipodal points.
    return 2 * EARTH_RADIUS_KM * asin(sqrt(min(1.0, h)))


def centroid(points: Sequence[LatLng]) -> tuple[float, float]:
    """Return the (lat, lng) arithmetic mean of `points`.

    Latitudes and longitudes are averaged independently. This is a flat-earth
    approximation that is fine at city scale but wrong across the antimeridian.

    Raises:
        InvalidArgumentError: If `points` is empty.
    """
    if not points:
        raise InvalidArgumentError("At least one location is needed to compute a midpoint.")
    n = len(points)
    return (sum(p.lat for p in points) / n, sum(p.lng for p in points) / n)
