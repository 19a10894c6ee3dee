"""Streetwise Engine - Spatial grid index and great-circle helpers"""

import math

from streetwise.config import GRID_RESOLUTION_DEG
from streetwise.models import BoundingBox

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEG_LAT = 111000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two points in meters."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(dlon / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def bbox_around(lat: float, lon: float, radius_m: float) -> BoundingBox:
    """Square bounding box of half-width radius_m centred on (lat, lon)."""
    lat_delta = radius_m / METERS_PER_DEG_LAT
    lon_delta = radius_m / (METERS_PER_DEG_LAT * max(math.cos(math.radians(lat)), 1e-6))
    return BoundingBox(
        south=lat - lat_delta, west=lon - lon_delta,
        north=lat + lat_delta, east=lon + lon_delta,
    )


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def _round_half_up(x: float) -> int:
    return math.floor(x + 0.5)


class SpatialGridIndex:
    """Fixed-resolution square grid over lat/lon.

    A cell key is a pure function of the coordinates: both are rounded to the
    nearest multiple of the resolution and the two multiples are joined as
    "lat_index,lon_index". Points closer than half a cell to a cell centre
    always land in that cell.
    """

    def __init__(self, resolution: float = GRID_RESOLUTION_DEG):
        if resolution <= 0:
            raise ValueError("grid resolution must be positive")
        self.resolution = resolution

    def cell_index(self, lat: float, lon: float) -> tuple[int, int]:
        return (
            _round_half_up(lat / self.resolution),
            _round_half_up(lon / self.resolution),
        )

    def cell_key(self, lat: float, lon: float) -> str:
        i, j = self.cell_index(lat, lon)
        return f"{i},{j}"

    def cell_center(self, lat: float, lon: float) -> tuple[float, float]:
        i, j = self.cell_index(lat, lon)
        return i * self.resolution, j * self.resolution

    def key_center(self, key: str) -> tuple[float, float]:
        i, j = (int(part) for part in key.split(","))
        return i * self.resolution, j * self.resolution

    def neighbor_keys(self, lat: float, lon: float, radius: int = 1) -> list[str]:
        """Keys of the square ring(s) of cells around (lat, lon), excluding its own cell."""
        ci, cj = self.cell_index(lat, lon)
        keys = []
        for di in range(-radius, radius + 1):
            for dj in range(-radius, radius + 1):
                if di == 0 and dj == 0:
                    continue
                keys.append(f"{ci + di},{cj + dj}")
        return keys

    def rings_for(self, lat: float, radius_m: float) -> int:
        """Neighbour rings needed to cover radius_m around a point at this latitude."""
        cell_m = self.resolution * METERS_PER_DEG_LAT * max(math.cos(math.radians(lat)), 0.1)
        return max(1, math.ceil(radius_m / cell_m))

    def keys_within(self, lat: float, lon: float, radius_m: float) -> list[str]:
        """Own cell plus every neighbour ring needed to cover radius_m.

        The key count grows with the square of the ring count; callers with
        large radii should check rings_for first.
        """
        rings = self.rings_for(lat, radius_m)
        return [self.cell_key(lat, lon)] + self.neighbor_keys(lat, lon, rings)
