"""Streetwise Engine - Hazard density from community reports and verified traffic incidents

Impact per hazard within the search radius:

    community:  (severity + traffic_bonus) * distance_factor
                traffic_bonus = 0.3 if the report affects traffic
    verified:   (severity + traffic_bonus) * distance_factor * verified_bonus
                verified_bonus = 2.5 for accidents, else 1.3
                traffic_bonus  = 1.0 for accidents, else 0.5

distance_factor = max(0, 1 - distance / radius). The summed impact is divided
by 3.0, so about three high-severity hazards in range saturate the score.
Mapped OSM hazards are weighed as community reports, minus any lying within
the dedup distance (50 m by default) of a community report. Reports are read fresh on every call.
"""

import asyncio
import logging
from typing import Mapping, Optional

from streetwise.config import (
    COLLISION_BASELINE, COLLISION_FALLBACK, COLLISION_ICON_CATEGORIES, COLLISION_SATURATION,
    COLLISION_SEVERITY_WEIGHTS, HAZARD_BASELINE, HAZARD_RADIUS_M,
    HAZARD_SATURATION, HAZARD_SEVERITY_WEIGHTS, OSM_HAZARD_DEDUP_M, PROVIDER_TIMEOUT_S,
)
from streetwise.data_fetchers import CommunityHazardStore, RoadHazardProvider, TrafficIncidentProvider
from streetwise.grid import haversine_m
from streetwise.models import HazardReport

logger = logging.getLogger("streetwise.hazards")

NearbyReport = tuple[HazardReport, float]  # (report, distance in meters)


def distance_factor(distance_m: float, radius_m: float) -> float:
    if radius_m <= 0:
        return 0.0
    return max(0.0, 1.0 - distance_m / radius_m)


def _is_accident(report: HazardReport) -> bool:
    return report.type == "accident"


def _is_collision(report: HazardReport) -> bool:
    return report.metadata.get("icon_category") in COLLISION_ICON_CATEGORIES


def _affects_traffic(report: HazardReport) -> bool:
    meta = report.metadata or {}
    return bool(meta.get("affectsTraffic") or meta.get("affects_traffic"))


def merge_hazards(community: list[HazardReport], mapped: list[HazardReport],
                  dedup_m: float = OSM_HAZARD_DEDUP_M) -> list[HazardReport]:
    """Community reports plus mapped hazards not already reported within dedup_m."""
    merged = list(community)
    for report in mapped:
        if not any(haversine_m(report.lat, report.lon, c.lat, c.lon) < dedup_m for c in community):
            merged.append(report)
    return merged


class HazardDensityAggregator:
    def __init__(
        self,
        community: CommunityHazardStore,
        traffic: TrafficIncidentProvider,
        severity_weights: Mapping[str, float] = HAZARD_SEVERITY_WEIGHTS,
        timeout_s: float = PROVIDER_TIMEOUT_S,
        default_radius_m: float = HAZARD_RADIUS_M,
        osm: Optional[RoadHazardProvider] = None,
        dedup_m: float = OSM_HAZARD_DEDUP_M,
    ):
        self.community = community
        self.traffic = traffic
        self.osm = osm
        self.dedup_m = dedup_m
        self.severity_weights = dict(severity_weights)
        self.timeout_s = timeout_s
        self.default_radius_m = default_radius_m

    def severity_weight(self, severity: str) -> float:
        fallback = self.severity_weights.get("high", HAZARD_SEVERITY_WEIGHTS["high"])
        return self.severity_weights.get(severity, fallback)

    def community_impact(self, report: HazardReport, distance_m: float, radius_m: float) -> float:
        traffic_bonus = 0.3 if _affects_traffic(report) else 0.0
        return (self.severity_weight(report.severity) + traffic_bonus) * distance_factor(distance_m, radius_m)

    def verified_impact(self, report: HazardReport, distance_m: float, radius_m: float) -> float:
        accident = _is_accident(report)
        verified_bonus = 2.5 if accident else 1.3
        traffic_bonus = 1.0 if accident else 0.5
        return (
            (self.severity_weight(report.severity) + traffic_bonus)
            * distance_factor(distance_m, radius_m)
            * verified_bonus
        )

    async def _query(self, label: str, source, lat: float, lon: float,
                     radius_m: float) -> Optional[list[HazardReport]]:
        """Query one source with its own timeout. None means the source failed."""
        try:
            return await asyncio.wait_for(source.query_near(lat, lon, radius_m), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"{label} hazard query timed out after {self.timeout_s}s")
        except Exception as e:
            logger.warning(f"{label} hazard query failed: {e!r}")
        return None

    @staticmethod
    def _within(reports: Optional[list[HazardReport]], lat: float, lon: float,
                radius_m: float) -> list[NearbyReport]:
        out = []
        for report in reports or []:
            d = haversine_m(lat, lon, report.lat, report.lon)
            if d <= radius_m:
                out.append((report, d))
        return out

    async def nearby_reports(self, lat: float, lon: float, radius_m: float
                             ) -> tuple[Optional[list[HazardReport]], Optional[list[HazardReport]]]:
        """Raw (community, verified) results, queried concurrently. None marks a failed source.

        OSM hazards, when configured, are merged into the community branch.
        """
        queries = [
            self._query("Community", self.community, lat, lon, radius_m),
            self._query("Traffic", self.traffic, lat, lon, radius_m),
        ]
        if self.osm is not None:
            queries.append(self._query("OSM", self.osm, lat, lon, radius_m))
        community, verified, *rest = await asyncio.gather(*queries)
        mapped = rest[0] if rest else None
        if mapped:
            community = merge_hazards(community or [], mapped, self.dedup_m)
        return community, verified

    def density(self, community: list[NearbyReport], verified: list[NearbyReport],
                radius_m: float) -> float:
        if not community and not verified:
            return HAZARD_BASELINE
        total = 0.0
        for report, d in community:
            impact = self.community_impact(report, d, radius_m)
            logger.debug(f"  [community] {report.type} ({report.severity}) {d:.0f}m impact={impact:.3f}")
            total += impact
        for report, d in verified:
            impact = self.verified_impact(report, d, radius_m)
            logger.debug(f"  [verified] {report.type} ({report.severity}) {d:.0f}m impact={impact:.3f}")
            total += impact
        return min(1.0, total / HAZARD_SATURATION)

    async def hazard_density(self, lat: float, lon: float,
                             radius_m: Optional[float] = None) -> float:
        if radius_m is None:
            radius_m = self.default_radius_m
        community_raw, verified_raw = await self.nearby_reports(lat, lon, radius_m)
        community = self._within(community_raw, lat, lon, radius_m)
        verified = self._within(verified_raw, lat, lon, radius_m)
        score = self.density(community, verified, radius_m)
        logger.info(
            f"Hazard density {score:.3f} at ({lat:.4f}, {lon:.4f}): "
            f"{len(community)} community + {len(verified)} verified within {radius_m:.0f}m"
        )
        return score

    async def collision_density(self, lat: float, lon: float,
                                radius_m: Optional[float] = None) -> float:
        """Collision risk from verified accident, jam and broken-down-vehicle incidents."""
        if radius_m is None:
            radius_m = self.default_radius_m
        raw = await self._query("Traffic", self.traffic, lat, lon, radius_m)
        if raw is None:
            return COLLISION_FALLBACK
        accidents = [(r, d) for r, d in self._within(raw, lat, lon, radius_m) if _is_collision(r)]
        if not accidents:
            return COLLISION_BASELINE
        total = 0.0
        for report, d in accidents:
            # Jams and broken-down vehicles count, at a lower urgency than accidents
            urgency = 1.5 if report.metadata.get("icon_category") == 1 else 1.0
            weight = COLLISION_SEVERITY_WEIGHTS.get(report.severity, 1.0)
            total += weight * distance_factor(d, radius_m) * urgency
        return min(1.0, total / COLLISION_SATURATION)
