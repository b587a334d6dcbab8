"""Nearest-region selection for content reads."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from .settings import RegionConfig


EARTH_RADIUS_KM = 6371.0


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    @classmethod
    def from_headers(cls, headers: Mapping[str, str], latitude_header: str, longitude_header: str) -> Optional["GeoPoint"]:
        """Parse the coordinate a CDN attached to the request, if any."""
        raw_lat = headers.get(latitude_header)
        raw_lon = headers.get(longitude_header)
        if raw_lat is None or raw_lon is None:
            return None
        try:
            point = cls(float(raw_lat), float(raw_lon))
        except ValueError:
            return None
        if not (-90.0 <= point.latitude <= 90.0 and -180.0 <= point.longitude <= 180.0):
            return None
        return point


def great_circle_km(a: GeoPoint, b: GeoPoint) -> float:
    lat1, lon1, lat2, lon2 = map(math.radians, (a.latitude, a.longitude, b.latitude, b.longitude))
    h = math.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin((lon2 - lon1) / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


class BucketRouter:
    """Maps a request origin to the closest configured region.

    Never fails: every region eventually holds every object, so the choice
    only affects latency.
    """

    def __init__(self, regions: Sequence[RegionConfig], default_origin: GeoPoint) -> None:
        if not regions:
            raise ValueError("BucketRouter needs at least one region")
        self._regions = list(regions)
        self._by_name = {region.name: region for region in self._regions}
        self._default_origin = default_origin

    @property
    def regions(self) -> list[RegionConfig]:
        return list(self._regions)

    def select(self, origin: Optional[GeoPoint], override: Optional[str] = None) -> RegionConfig:
        if override and override in self._by_name:
            return self._by_name[override]
        point = origin or self._default_origin
        # min() keeps the first of equal keys, so ties go to configured order.
        return min(
            self._regions,
            key=lambda region: great_circle_km(point, GeoPoint(region.latitude, region.longitude)),
        )
