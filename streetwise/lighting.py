"""Streetwise Engine - Street lighting coverage cache

Lighting features are fetched per grid cell from a LightingDatasetProvider
(OpenStreetMap via Overpass in production), scored from their tags, and kept
for LIGHTING_CACHE_TTL_DAYS. Queries compute a proximity-weighted lighting
index where 0.0 = well lit and 1.0 = dark.

Concurrent misses on the same cell share one in-flight refresh.
"""

import asyncio
import logging
import math
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from cachetools import TTLCache

from streetwise.cache import LightingFeatureStore
from streetwise.config import (
    DARK_LIGHTING_INDEX, DAYLIGHT_LIGHTING_INDEX, DAYTIME_HOURS,
    LIGHT_SOURCE_FACTORS, LIGHTING_CACHE_TTL_DAYS, LIGHTING_FETCH_RADIUS_KM,
    LIGHTING_REFRESH_TIMEOUT_S, LIGHTING_SEARCH_RADIUS_M, LIT_STATUS_SCORES, MAX_CELL_RINGS,
)
from streetwise.data_fetchers import LightingDatasetProvider
from streetwise.grid import SpatialGridIndex, bbox_around, clamp01, haversine_m
from streetwise.models import LightingElement, LightingFeature

logger = logging.getLogger("streetwise.lighting")

_AUTOMATIC_LIT = {"automatic", "interval", "sunset-sunrise"}
_LAMP_HIGHWAYS = {"street_lamp", "lamp_post"}
_SOURCE_FACTORS = {k.lower(): v for k, v in LIGHT_SOURCE_FACTORS.items()}


# ─────────────────────────── Tag Scoring ────────────────────────

def lit_status(tags: dict[str, str]) -> str:
    lit = tags.get("lit")
    if lit is None and tags.get("highway") in _LAMP_HIGHWAYS:
        lit = "yes"
    if lit in ("yes", "no", "limited"):
        return lit
    if lit in _AUTOMATIC_LIT:
        return "automatic"
    return "unknown"


def _light_source(tags: dict[str, str]) -> Optional[str]:
    return tags.get("light_source") or tags.get("light:source")


def _lamp_type(tags: dict[str, str]) -> Optional[str]:
    return tags.get("lamp_type") or tags.get("lamp:type")


def lighting_score(status: str, light_source: Optional[str]) -> float:
    score = LIT_STATUS_SCORES.get(status, LIT_STATUS_SCORES["unknown"])
    if light_source:
        score *= _SOURCE_FACTORS.get(light_source.lower(), 1.0)
    return clamp01(score)


def coverage_radius_m(tags: dict[str, str]) -> float:
    source = (_light_source(tags) or "").lower()
    if source == "led":
        return 40.0
    if source == "gas_lantern":
        return 15.0
    if tags.get("highway") == "street_lamp":
        return 30.0
    if tags.get("highway") == "lamp_post":
        return 25.0
    return 30.0


def derive_feature(element: LightingElement, cached_at: float) -> LightingFeature:
    status = lit_status(element.tags)
    source = _light_source(element.tags)
    return LightingFeature(
        feature_id=element.element_id,
        source=element.source,
        lat=element.lat,
        lon=element.lon,
        lit_status=status,
        light_source=source,
        lamp_type=_lamp_type(element.tags),
        coverage_radius_m=coverage_radius_m(element.tags),
        lighting_score=lighting_score(status, source),
        cached_at=cached_at,
    )


def weighted_lighting_index(nearby: list[tuple[LightingFeature, float]],
                            search_radius_m: float) -> float:
    """Influence-weighted mean of lighting scores.

    A feature has full influence inside its coverage radius, decaying
    linearly to zero at the search radius.
    """
    total_weight = 0.0
    weighted = 0.0
    for feature, distance in nearby:
        coverage = feature.coverage_radius_m
        if distance <= coverage:
            influence = 1.0
        elif distance >= search_radius_m:
            influence = 0.0
        else:
            influence = (search_radius_m - distance) / (search_radius_m - coverage)
        total_weight += influence
        weighted += feature.lighting_score * influence
    if total_weight == 0:
        return DARK_LIGHTING_INDEX
    return clamp01(weighted / total_weight)


# ─────────────────────────── Cache ──────────────────────────────

class LightingCoverageCache:
    def __init__(
        self,
        provider: LightingDatasetProvider,
        index: SpatialGridIndex,
        ttl_days: float = LIGHTING_CACHE_TTL_DAYS,
        fetch_radius_km: float = LIGHTING_FETCH_RADIUS_KM,
        refresh_timeout_s: float = LIGHTING_REFRESH_TIMEOUT_S,
        store: Optional[LightingFeatureStore] = None,
        clock: Callable[[], float] = time.time,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.provider = provider
        self.index = index
        self.ttl_s = ttl_days * 86400
        self.fetch_radius_m = fetch_radius_km * 1000
        self.refresh_timeout_s = refresh_timeout_s
        self.store = store if store is not None else LightingFeatureStore(index.cell_key)
        self._clock = clock
        self._now = now
        # cell key -> refresh time; entries drop out once the TTL passes
        self._refreshed = TTLCache(maxsize=100_000, ttl=self.ttl_s, timer=clock)
        self._refreshed_lock = threading.Lock()
        self._inflight: dict[str, asyncio.Future] = {}
        self.refresh_count = 0

    # ── day/night gate ──

    def is_daytime(self, lon: float, mode: Optional[str] = None) -> bool:
        """Rough local daylight check from UTC time and a longitude-derived offset.

        mode forces the gate: "night" is dark; "day", "morning-rush" and
        "evening-rush" are daylight.
        """
        if mode == "night":
            return False
        if mode in ("day", "morning-rush", "evening-rush"):
            return True
        utc_hour = self._now().astimezone(timezone.utc).hour
        local_hour = (utc_hour + math.floor(lon / 15 + 0.5) + 24) % 24
        return DAYTIME_HOURS[0] <= local_hour < DAYTIME_HOURS[1]

    # ── freshness / refresh ──

    def _is_fresh(self, cell_key: str) -> bool:
        with self._refreshed_lock:
            return cell_key in self._refreshed

    def _mark_fresh(self, cell_key: str, at: float):
        with self._refreshed_lock:
            self._refreshed[cell_key] = at

    async def _refresh(self, cell_key: str) -> int:
        center_lat, center_lon = self.index.key_center(cell_key)
        bbox = bbox_around(center_lat, center_lon, self.fetch_radius_m)
        logger.info(f"Fetching lighting data for cell {cell_key}")
        elements = await asyncio.wait_for(
            self.provider.query_features(bbox), timeout=self.refresh_timeout_s
        )
        cached_at = self._clock()
        count = self.store.upsert(derive_feature(el, cached_at) for el in elements)
        self._mark_fresh(cell_key, cached_at)
        logger.info(f"Cached {count} lighting features for cell {cell_key}")
        return count

    @staticmethod
    def _settle(task: asyncio.Future):
        # Mark the outcome as retrieved even when every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def ensure_cell(self, lat: float, lon: float) -> bool:
        """Refresh the cell for (lat, lon) if missing or stale. Returns True if fresh afterwards."""
        key = self.index.cell_key(lat, lon)
        if self._is_fresh(key):
            return True
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(key))
            self._inflight[key] = task
            self.refresh_count += 1
            task.add_done_callback(lambda t, k=key: self._inflight.pop(k, None))
            task.add_done_callback(self._settle)
        try:
            await asyncio.shield(task)
        except Exception as e:
            logger.warning(f"Lighting refresh for cell {key} failed, using cached data: {e!r}")
            return False
        return True

    # ── queries ──

    def nearby(self, lat: float, lon: float, radius_m: float) -> list[tuple[LightingFeature, float]]:
        min_cached_at = self._clock() - self.ttl_s
        if self.index.rings_for(lat, radius_m) > MAX_CELL_RINGS:
            candidates = self.store.cached_since(min_cached_at)
        else:
            candidates = self.store.in_cells(self.index.keys_within(lat, lon, radius_m), min_cached_at)
        out = []
        for feature in candidates:
            distance = haversine_m(lat, lon, feature.lat, feature.lon)
            if distance <= radius_m:
                out.append((feature, distance))
        out.sort(key=lambda fd: fd[1])
        return out

    def cached_index(self, lat: float, lon: float,
                     search_radius_m: float = LIGHTING_SEARCH_RADIUS_M) -> Optional[float]:
        """Lighting index from already-cached data only; None if the cell was never fetched."""
        if not self._is_fresh(self.index.cell_key(lat, lon)):
            return None
        return weighted_lighting_index(self.nearby(lat, lon, search_radius_m), search_radius_m)

    async def lighting_index(self, lat: float, lon: float,
                             search_radius_m: float = LIGHTING_SEARCH_RADIUS_M,
                             mode: Optional[str] = None) -> float:
        if self.is_daytime(lon, mode):
            logger.debug(f"Daytime at ({lat:.4f}, {lon:.4f}), lighting not relevant")
            return DAYLIGHT_LIGHTING_INDEX
        await self.ensure_cell(lat, lon)
        nearby = self.nearby(lat, lon, search_radius_m)
        index = weighted_lighting_index(nearby, search_radius_m)
        logger.debug(
            f"Lighting index {index:.3f} at ({lat:.4f}, {lon:.4f}) from {len(nearby)} lights"
        )
        return index

    async def route_lighting(self, coordinates: list[list[float]],
                             search_radius_m: float = 50.0,
                             mode: Optional[str] = None) -> list[float]:
        """Lighting index per coordinate, refreshing every touched cell at most once."""
        if not coordinates:
            return []
        night_points = [(lat, lon) for lat, lon in coordinates if not self.is_daytime(lon, mode)]
        cells = {self.index.cell_key(lat, lon): (lat, lon) for lat, lon in night_points}
        await asyncio.gather(*(self.ensure_cell(lat, lon) for lat, lon in cells.values()))
        out = []
        for lat, lon in coordinates:
            if self.is_daytime(lon, mode):
                out.append(DAYLIGHT_LIGHTING_INDEX)
            else:
                out.append(weighted_lighting_index(self.nearby(lat, lon, search_radius_m), search_radius_m))
        return out
