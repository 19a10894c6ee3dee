"""Streetwise Engine - Pydantic Models"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from streetwise.config import (
    CRIME_SEVERITY_WEIGHTS, DEFAULT_FACTOR_WEIGHTS, GRID_RESOLUTION_DEG,
    HAZARD_RADIUS_M, HAZARD_SEVERITY_WEIGHTS, LIGHTING_CACHE_TTL_DAYS,
    LIGHTING_FETCH_RADIUS_KM, LIGHTING_REFRESH_TIMEOUT_S, OSM_HAZARD_DEDUP_M,
    OSM_HAZARDS_ENABLED, PROVIDER_TIMEOUT_S,
    ROUTE_SAMPLE_INTERVAL_M, STUDY_AREA, STUDY_AREA_CENTER,
)

LitStatus = Literal["yes", "no", "automatic", "limited", "unknown"]
HazardSource = Literal["community", "verified", "osm"]
MetricsSource = Literal["cell", "neighbors", "default", "live"]


# ─────────────────────────── Domain ─────────────────────────────

class FactorWeights(BaseModel):
    """Blend weights for the four risk signals. They need not sum to 1."""

    model_config = ConfigDict(frozen=True)

    crime: float = Field(default=DEFAULT_FACTOR_WEIGHTS["crime"], ge=0)
    collision: float = Field(default=DEFAULT_FACTOR_WEIGHTS["collision"], ge=0)
    lighting: float = Field(default=DEFAULT_FACTOR_WEIGHTS["lighting"], ge=0)
    hazard: float = Field(default=DEFAULT_FACTOR_WEIGHTS["hazard"], ge=0)

    def blend(self, crime: float, collision: float, lighting: float, hazard: float) -> float:
        """Weighted safety score, clamped to 1.0 (0 = safest)."""
        score = (
            crime * self.crime
            + collision * self.collision
            + lighting * self.lighting
            + hazard * self.hazard
        )
        return max(0.0, min(1.0, score))


class CrimeRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    crime_type: str = Field(min_length=1)
    severity: float = Field(default=0.5, ge=0, le=1)
    month: str = ""


class SafetyCell(BaseModel):
    model_config = ConfigDict(frozen=True)

    cell_key: str
    center_lat: float
    center_lon: float
    crime_count: int = Field(ge=0)
    total_severity: float = Field(ge=0)
    crime_score: float = Field(ge=0, le=1)
    lighting_index: float = Field(ge=0, le=1)   # 0 = best lit
    collision_density: float = Field(ge=0, le=1)
    hazard_density: float = Field(ge=0, le=1)
    safety_score: float = Field(ge=0, le=1)     # 0 = safest
    factor_weights: FactorWeights
    crime_type_counts: dict[str, int] = {}


class BoundingBox(BaseModel):
    south: float
    west: float
    north: float
    east: float


class LightingElement(BaseModel):
    """A raw lighting element as returned by a lighting dataset provider."""

    element_id: str
    source: str = "osm"
    lat: float
    lon: float
    tags: dict[str, str] = {}


class LightingFeature(BaseModel):
    feature_id: str
    source: str = "osm"
    lat: float
    lon: float
    lit_status: LitStatus = "unknown"
    light_source: Optional[str] = None
    lamp_type: Optional[str] = None
    coverage_radius_m: float = 30.0
    lighting_score: float = Field(default=0.3, ge=0, le=1)
    cached_at: float = 0.0  # epoch seconds


class HazardReport(BaseModel):
    id: str
    lat: float
    lon: float
    type: str = "other"
    severity: str = "high"  # low, medium, high, critical
    source: HazardSource = "community"
    metadata: dict = {}
    reported_at: Optional[datetime] = None
    status: str = "active"


class SafetyMetrics(BaseModel):
    crime_rate: float = Field(ge=0, le=1)
    lighting_index: float = Field(ge=0, le=1)
    collision_density: float = Field(ge=0, le=1)
    hazard_density: float = Field(ge=0, le=1)
    safety_score: float = Field(ge=0, le=1)
    crime_count: int = Field(default=0, ge=0)
    source: MetricsSource = "cell"


class RouteGeometry(BaseModel):
    coordinates: list[list[float]]  # [[lat, lon], ...]
    distance_m: float = 0.0
    duration_s: float = 0.0
    provider: str = "osrm"


class RouteSafetyResult(BaseModel):
    composite_score: float = Field(ge=0, le=1)
    rating: float = Field(ge=0, le=10)
    sampled_points: list[list[float]] = []
    sample_scores: list[float] = []


class ScoredRoute(BaseModel):
    route: RouteGeometry
    safety: RouteSafetyResult


class RouteComparison(BaseModel):
    fastest: ScoredRoute
    safest: ScoredRoute
    safer_alternative_found: bool
    fallback: bool = False  # straight-line route, routing provider unavailable


class EngineConfig(BaseModel):
    """Per-instance engine settings. Defaults come from streetwise.config."""

    grid_resolution: float = Field(default=GRID_RESOLUTION_DEG, gt=0)
    lighting_ttl_days: float = Field(default=LIGHTING_CACHE_TTL_DAYS, gt=0)
    lighting_fetch_radius_km: float = Field(default=LIGHTING_FETCH_RADIUS_KM, gt=0)
    route_sample_interval_m: float = Field(default=ROUTE_SAMPLE_INTERVAL_M, gt=0)
    hazard_radius_m: float = Field(default=HAZARD_RADIUS_M, gt=0)
    factor_weights: FactorWeights = FactorWeights()
    hazard_severity_weights: dict[str, float] = dict(HAZARD_SEVERITY_WEIGHTS)
    crime_severity_weights: dict[str, float] = dict(CRIME_SEVERITY_WEIGHTS)
    study_area: tuple[float, float, float, float] = STUDY_AREA
    study_area_center: tuple[float, float] = STUDY_AREA_CENTER
    provider_timeout_s: float = Field(default=PROVIDER_TIMEOUT_S, gt=0)
    lighting_refresh_timeout_s: float = Field(default=LIGHTING_REFRESH_TIMEOUT_S, gt=0)
    osm_hazards_enabled: bool = OSM_HAZARDS_ENABLED
    osm_hazard_dedup_m: float = Field(default=OSM_HAZARD_DEDUP_M, ge=0)


class EngineStats(BaseModel):
    records_folded: int
    rows_skipped: int
    grid_cells: int
    snapshot_version: int
    built_at: Optional[float] = None
    lighting_features: int = 0


# ─────────────────────────── API Payloads ───────────────────────

class SafetyRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    live: bool = False


class RouteScoreRequest(BaseModel):
    coordinates: list[list[float]]  # [[lat, lng], ...]


class RouteRequest(BaseModel):
    originLat: float
    originLng: float
    destLat: float
    destLng: float
    mode: str = "walking"  # walking, cycling, driving


class GridRebuildRequest(BaseModel):
    factorWeights: Optional[FactorWeights] = None
    severityWeights: Optional[dict[str, float]] = None


class HazardDensityResponse(BaseModel):
    hazardDensity: float
    radiusMeters: float


class LightingResponse(BaseModel):
    lightingIndex: float
    radiusMeters: float


class HazardReportRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    type: str = "other"
    severity: Literal["low", "medium", "high", "critical"] = "high"
    description: str = ""
    affectsTraffic: bool = False
