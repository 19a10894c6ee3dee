"""Streetwise Engine - Crime safety grid (percentile-normalised per-cell scores)

Crime records are bucketed into grid cells, the crime-count distribution is
cut at p25/p50/p75/p90/p95, and each cell's count is mapped piecewise-linearly
onto a 0-1 crime rate:

    count <= p25        0.0 - 0.2
    p25 < count <= p50  0.2 - 0.4
    p50 < count <= p75  0.4 - 0.6
    p75 < count <= p90  0.6 - 0.8
    count > p90         0.8 - 1.0   (1.0 at or above p95)

The rate is scaled by a severity multiplier 0.7 + avg_severity * 0.6 and
blended with lighting, collision and hazard estimates into a safety score.
A build produces a new GridSnapshot; snapshots are never mutated.
"""

import logging
import math
import time
from collections import Counter
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional

import numpy as np

from streetwise.config import CRIME_SEVERITY_WEIGHTS, STUDY_AREA_CENTER
from streetwise.crime_loader import crime_severity
from streetwise.grid import SpatialGridIndex, clamp01
from streetwise.models import CrimeRecord, FactorWeights, SafetyCell

logger = logging.getLogger("streetwise.grid")

PERCENTILES = (25, 50, 75, 90, 95)
NEUTRAL_CRIME_SCORE = 0.5

LightingLookup = Callable[[float, float], Optional[float]]


@dataclass(frozen=True)
class Breakpoints:
    p25: float
    p50: float
    p75: float
    p90: float
    p95: float


def percentile_breakpoints(counts: Iterable[int]) -> Optional[Breakpoints]:
    """Lower-order-statistic percentiles of the count distribution, or None if empty."""
    values = np.asarray(list(counts), dtype=float)
    if values.size == 0:
        return None
    p = np.percentile(values, PERCENTILES, method="lower")
    return Breakpoints(*(float(v) for v in p))


def _band(count: float, lo: float, hi: float, base: float) -> float:
    return base + (count - lo) / (hi - lo) * 0.2


def crime_rate(count: float, bp: Breakpoints) -> float:
    if count <= bp.p25:
        return (count / bp.p25) * 0.2 if bp.p25 > 0 else 0.0
    if count <= bp.p50:
        return _band(count, bp.p25, bp.p50, 0.2)
    if count <= bp.p75:
        return _band(count, bp.p50, bp.p75, 0.4)
    if count <= bp.p90:
        return _band(count, bp.p75, bp.p90, 0.6)
    if count >= bp.p95 or bp.p95 <= bp.p90:
        return 1.0
    return _band(count, bp.p90, bp.p95, 0.8)


def severity_multiplier(avg_severity: float) -> float:
    return 0.7 + avg_severity * 0.6  # 0.7 - 1.3


def crime_score(count: int, total_severity: float, bp: Optional[Breakpoints]) -> float:
    if bp is None:
        return NEUTRAL_CRIME_SCORE
    avg_severity = total_severity / count if count > 0 else 0.5
    return min(1.0, crime_rate(count, bp) * severity_multiplier(avg_severity))


def estimate_lighting(lat: float, lon: float,
                      center: tuple[float, float] = STUDY_AREA_CENTER) -> float:
    """Distance-from-centre lighting heuristic, used when no lighting data is cached.

    Central areas are well lit (0.2); built-up outer areas never exceed 0.5.
    """
    distance = math.hypot(lat - center[0], lon - center[1])
    if distance < 0.1:
        return 0.2
    if distance < 0.25:
        return 0.25 + (distance - 0.1) * 0.5
    return min(0.5, 0.325 + (distance - 0.25) * 0.3)


def estimate_collision_density(score: float) -> float:
    # Stand-in until a collision feed is folded into the grid
    return clamp01(score * 0.3 + 0.175)


def estimate_hazard_density(score: float) -> float:
    return clamp01(score * 0.2 + 0.15)


@dataclass(frozen=True)
class GridSnapshot:
    """Immutable result of one grid build."""

    cells: Mapping[str, SafetyCell] = field(default_factory=lambda: MappingProxyType({}))
    breakpoints: Optional[Breakpoints] = None
    factor_weights: FactorWeights = field(default_factory=FactorWeights)
    severity_overrides: Optional[Mapping[str, float]] = None
    version: int = 0
    built_at: Optional[float] = None
    records_folded: int = 0

    def get(self, key: str) -> Optional[SafetyCell]:
        return self.cells.get(key)

    def __len__(self) -> int:
        return len(self.cells)


class CrimeSafetyGridBuilder:
    def __init__(
        self,
        index: SpatialGridIndex,
        severity_defaults: Mapping[str, float] = CRIME_SEVERITY_WEIGHTS,
        study_area_center: tuple[float, float] = STUDY_AREA_CENTER,
        lighting_lookup: Optional[LightingLookup] = None,
    ):
        self.index = index
        self.severity_defaults = dict(severity_defaults)
        self.study_area_center = study_area_center
        self.lighting_lookup = lighting_lookup

    def _lighting_for(self, lat: float, lon: float) -> float:
        if self.lighting_lookup is not None:
            try:
                cached = self.lighting_lookup(lat, lon)
            except Exception as e:
                logger.warning(f"Lighting lookup failed for ({lat:.4f}, {lon:.4f}): {e}")
                cached = None
            if cached is not None:
                return clamp01(cached)
        return estimate_lighting(lat, lon, self.study_area_center)

    def score_cell(
        self,
        key: str,
        type_counts: Mapping[str, int],
        breakpoints: Optional[Breakpoints],
        weights: FactorWeights,
        severity_overrides: Optional[Mapping[str, float]] = None,
        lighting_index: Optional[float] = None,
    ) -> SafetyCell:
        center_lat, center_lon = self.index.key_center(key)
        count = sum(type_counts.values())
        total_severity = sum(
            n * crime_severity(t, severity_overrides, self.severity_defaults)
            for t, n in type_counts.items()
        )
        score = crime_score(count, total_severity, breakpoints)
        if lighting_index is None:
            lighting_index = self._lighting_for(center_lat, center_lon)
        collision = estimate_collision_density(score)
        hazard = estimate_hazard_density(score)
        return SafetyCell(
            cell_key=key,
            center_lat=center_lat,
            center_lon=center_lon,
            crime_count=count,
            total_severity=total_severity,
            crime_score=score,
            lighting_index=lighting_index,
            collision_density=collision,
            hazard_density=hazard,
            safety_score=weights.blend(score, collision, lighting_index, hazard),
            factor_weights=weights,
            crime_type_counts=dict(type_counts),
        )

    def rescore(
        self,
        cell: SafetyCell,
        breakpoints: Optional[Breakpoints],
        weights: FactorWeights,
        severity_overrides: Optional[Mapping[str, float]] = None,
    ) -> SafetyCell:
        """Recompute a stored cell against other weights, keeping its lighting estimate."""
        if not severity_overrides:
            return cell.model_copy(update={
                "factor_weights": weights,
                "safety_score": weights.blend(
                    cell.crime_score, cell.collision_density,
                    cell.lighting_index, cell.hazard_density,
                ),
            })
        return self.score_cell(
            cell.cell_key, cell.crime_type_counts, breakpoints, weights,
            severity_overrides, lighting_index=cell.lighting_index,
        )

    def build(
        self,
        records: Iterable[CrimeRecord],
        severity_overrides: Optional[Mapping[str, float]] = None,
        factor_weights: Optional[FactorWeights] = None,
        version: int = 1,
    ) -> GridSnapshot:
        """Fold every record into its cell and score all cells into a fresh snapshot."""
        start = time.time()
        weights = factor_weights or FactorWeights()
        buckets: dict[str, Counter] = {}
        folded = 0
        for record in records:
            key = self.index.cell_key(record.lat, record.lon)
            buckets.setdefault(key, Counter())[record.crime_type] += 1
            folded += 1

        breakpoints = percentile_breakpoints(sum(c.values()) for c in buckets.values())
        if breakpoints is None:
            logger.info("Empty crime-count distribution, crime scores default to neutral")
        else:
            logger.info(
                f"Percentiles p25:{breakpoints.p25:g} p50:{breakpoints.p50:g} "
                f"p75:{breakpoints.p75:g} p90:{breakpoints.p90:g} p95:{breakpoints.p95:g}"
            )

        cells = {
            key: self.score_cell(key, counts, breakpoints, weights, severity_overrides)
            for key, counts in buckets.items()
        }
        overrides = MappingProxyType(dict(severity_overrides)) if severity_overrides else None
        snapshot = GridSnapshot(
            cells=MappingProxyType(cells),
            breakpoints=breakpoints,
            factor_weights=weights,
            severity_overrides=overrides,
            version=version,
            built_at=time.time(),
            records_folded=folded,
        )
        logger.info(
            f"Safety grid built: {len(cells)} cells from {folded} records "
            f"in {(time.time() - start) * 1000:.0f}ms"
        )
        return snapshot
