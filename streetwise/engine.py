"""Streetwise Engine - SafetyEngine facade

Wires the grid builder, lighting cache, hazard aggregator, resolver and route
scorer into one explicitly constructed object. Nothing here is process-global:
tests and callers build as many isolated engines as they need.
"""

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, Mapping, Optional

from streetwise.config import CRIME_DATA_MONTHS, CRIME_FILE_MATCH, TRAVEL_SPEEDS_KMH
from streetwise.crime_grid import CrimeSafetyGridBuilder, GridSnapshot
from streetwise.crime_loader import IngestStats, iter_crime_directory
from streetwise.data_fetchers import (
    CommunityHazardStore, InMemoryHazardStore, LightingDatasetProvider,
    OSRMRoutingProvider, OverpassHazardProvider, OverpassLightingProvider,
    RoadHazardProvider, RoutingProvider, TomTomIncidentProvider, TrafficIncidentProvider,
)
from streetwise.grid import SpatialGridIndex, haversine_m
from streetwise.hazards import HazardDensityAggregator
from streetwise.lighting import LightingCoverageCache
from streetwise.models import (
    CrimeRecord, EngineConfig, EngineStats, FactorWeights, RouteComparison,
    RouteGeometry, RouteSafetyResult, SafetyMetrics,
)
from streetwise.route_scoring import RouteSafetyScorer, compare_routes
from streetwise.scoring import SafetyScoreResolver

logger = logging.getLogger("streetwise.engine")


class SafetyEngine:
    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        routing: Optional[RoutingProvider] = None,
        community: Optional[CommunityHazardStore] = None,
        traffic: Optional[TrafficIncidentProvider] = None,
        lighting_provider: Optional[LightingDatasetProvider] = None,
        osm_hazards: Optional[RoadHazardProvider] = None,
        clock: Callable[[], float] = time.time,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.config = config or EngineConfig()
        cfg = self.config
        self.index = SpatialGridIndex(cfg.grid_resolution)
        self.routing = routing or OSRMRoutingProvider()
        self.community = community or InMemoryHazardStore()
        self.traffic = traffic or TomTomIncidentProvider()
        if osm_hazards is None and cfg.osm_hazards_enabled:
            osm_hazards = OverpassHazardProvider(clock=clock, now=now)
        self.osm_hazards = osm_hazards

        self.lighting = LightingCoverageCache(
            lighting_provider or OverpassLightingProvider(),
            self.index,
            ttl_days=cfg.lighting_ttl_days,
            fetch_radius_km=cfg.lighting_fetch_radius_km,
            refresh_timeout_s=cfg.lighting_refresh_timeout_s,
            clock=clock,
            now=now,
        )
        self.hazards = HazardDensityAggregator(
            self.community,
            self.traffic,
            severity_weights=cfg.hazard_severity_weights,
            timeout_s=cfg.provider_timeout_s,
            default_radius_m=cfg.hazard_radius_m,
            osm=self.osm_hazards,
            dedup_m=cfg.osm_hazard_dedup_m,
        )
        self.builder = CrimeSafetyGridBuilder(
            self.index,
            severity_defaults=cfg.crime_severity_weights,
            study_area_center=cfg.study_area_center,
            lighting_lookup=self.lighting.cached_index,
        )

        self._snapshot = GridSnapshot(factor_weights=cfg.factor_weights)
        self._write_lock = threading.Lock()
        self._rows_skipped = 0

        self.resolver = SafetyScoreResolver(self.builder, lambda: self._snapshot)
        self.route_scorer = RouteSafetyScorer(self.resolver.resolve, cfg.route_sample_interval_m)

    # ─────────────────────────── Grid lifecycle ─────────────────

    @property
    def snapshot(self) -> GridSnapshot:
        return self._snapshot

    def rebuild_grid(
        self,
        records: Iterable[CrimeRecord],
        factor_weights: Optional[FactorWeights] = None,
        severity_overrides: Optional[Mapping[str, float]] = None,
    ) -> GridSnapshot:
        """Build a new snapshot and publish it in one reference swap.

        Readers keep using the previous snapshot until the swap.
        """
        with self._write_lock:
            snapshot = self.builder.build(
                records,
                severity_overrides=severity_overrides,
                factor_weights=factor_weights or self.config.factor_weights,
                version=self._snapshot.version + 1,
            )
            self._snapshot = snapshot
        return snapshot

    def load_crime_directory(
        self,
        data_dir: Path,
        months: int = CRIME_DATA_MONTHS,
        match: str = CRIME_FILE_MATCH,
        factor_weights: Optional[FactorWeights] = None,
        severity_overrides: Optional[Mapping[str, float]] = None,
    ) -> GridSnapshot:
        stats = IngestStats()
        records = iter_crime_directory(
            Path(data_dir), months, match, study_area=self.config.study_area, stats=stats,
        )
        snapshot = self.rebuild_grid(records, factor_weights, severity_overrides)
        self._rows_skipped = stats.skipped
        return snapshot

    # ─────────────────────────── Point queries ──────────────────

    def resolve_safety(
        self,
        lat: float,
        lon: float,
        weights: Optional[FactorWeights] = None,
        severity_override: Optional[Mapping[str, float]] = None,
    ) -> SafetyMetrics:
        return self.resolver.resolve(lat, lon, weights, severity_override)

    async def hazard_density(self, lat: float, lon: float,
                             radius_m: Optional[float] = None) -> float:
        return await self.hazards.hazard_density(lat, lon, radius_m)

    async def collision_density(self, lat: float, lon: float,
                                radius_m: Optional[float] = None) -> float:
        return await self.hazards.collision_density(lat, lon, radius_m)

    async def lighting_index(self, lat: float, lon: float,
                             radius_m: Optional[float] = None,
                             mode: Optional[str] = None) -> float:
        if radius_m is None:
            return await self.lighting.lighting_index(lat, lon, mode=mode)
        return await self.lighting.lighting_index(lat, lon, radius_m, mode)

    async def resolve_live(self, lat: float, lon: float,
                           weights: Optional[FactorWeights] = None,
                           mode: Optional[str] = None) -> SafetyMetrics:
        """Grid crime signal blended with live lighting, hazard and collision values."""
        grid = self.resolve_safety(lat, lon)
        lighting, hazard, collision = await asyncio.gather(
            self.lighting_index(lat, lon, mode=mode),
            self.hazard_density(lat, lon),
            self.collision_density(lat, lon),
        )
        weights = weights or self._snapshot.factor_weights
        return SafetyMetrics(
            crime_rate=grid.crime_rate,
            lighting_index=lighting,
            collision_density=collision,
            hazard_density=hazard,
            safety_score=weights.blend(grid.crime_rate, collision, lighting, hazard),
            crime_count=grid.crime_count,
            source="live",
        )

    # ─────────────────────────── Routes ─────────────────────────

    def score_route(self, coordinates: list[list[float]]) -> RouteSafetyResult:
        return self.route_scorer.score_route(coordinates)

    async def route_lighting(self, coordinates: list[list[float]],
                             mode: Optional[str] = None) -> list[float]:
        return await self.lighting.route_lighting(coordinates, mode=mode)

    def straight_line_route(self, from_lat: float, from_lon: float,
                            to_lat: float, to_lon: float,
                            mode: str = "walking") -> RouteGeometry:
        distance = haversine_m(from_lat, from_lon, to_lat, to_lon)
        speed_ms = TRAVEL_SPEEDS_KMH.get(mode, TRAVEL_SPEEDS_KMH["walking"]) * 1000 / 3600
        return RouteGeometry(
            coordinates=[[from_lat, from_lon], [to_lat, to_lon]],
            distance_m=distance,
            duration_s=distance / speed_ms,
            provider="straight_line",
        )

    async def find_routes(self, from_lat: float, from_lon: float,
                          to_lat: float, to_lon: float,
                          mode: str = "walking") -> RouteComparison:
        try:
            routes = await asyncio.wait_for(
                self.routing.get_routes(from_lat, from_lon, to_lat, to_lon, mode),
                timeout=self.config.provider_timeout_s,
            )
        except Exception as e:
            logger.warning(f"Routing failed, falling back to straight line: {e!r}")
            routes = []

        if not routes:
            line = self.straight_line_route(from_lat, from_lon, to_lat, to_lon, mode)
            return compare_routes(self.route_scorer.score_geometry(line), [], fallback=True)

        scored = [self.route_scorer.score_geometry(r) for r in routes]
        comparison = compare_routes(scored[0], scored[1:])
        logger.info(
            f"Routes: fastest={comparison.fastest.safety.composite_score:.3f} "
            f"safest={comparison.safest.safety.composite_score:.3f} "
            f"alternative={comparison.safer_alternative_found}"
        )
        return comparison

    # ─────────────────────────── Stats ──────────────────────────

    def stats(self) -> EngineStats:
        snapshot = self._snapshot
        return EngineStats(
            records_folded=snapshot.records_folded,
            rows_skipped=self._rows_skipped,
            grid_cells=len(snapshot),
            snapshot_version=snapshot.version,
            built_at=snapshot.built_at,
            lighting_features=len(self.lighting.store),
        )
