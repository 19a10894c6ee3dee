"""Streetwise Engine - Point safety resolution against the current grid snapshot"""

import logging
import threading
from typing import Callable, Mapping, Optional

from cachetools import LRUCache

from streetwise.crime_grid import CrimeSafetyGridBuilder, GridSnapshot
from streetwise.grid import clamp01
from streetwise.models import FactorWeights, SafetyCell, SafetyMetrics

logger = logging.getLogger("streetwise.scoring")

# No reported crime is treated as a safe area
DEFAULT_METRICS = SafetyMetrics(
    crime_rate=0.1,
    lighting_index=0.3,
    collision_density=0.2,
    hazard_density=0.2,
    safety_score=0.1,
    crime_count=0,
    source="default",
)


def metrics_from_cell(cell: SafetyCell) -> SafetyMetrics:
    return SafetyMetrics(
        crime_rate=cell.crime_score,
        lighting_index=cell.lighting_index,
        collision_density=cell.collision_density,
        hazard_density=cell.hazard_density,
        safety_score=cell.safety_score,
        crime_count=cell.crime_count,
        source="cell",
    )


def average_metrics(cells: list[SafetyCell]) -> SafetyMetrics:
    n = len(cells)
    return SafetyMetrics(
        crime_rate=clamp01(sum(c.crime_score for c in cells) / n),
        lighting_index=clamp01(sum(c.lighting_index for c in cells) / n),
        collision_density=clamp01(sum(c.collision_density for c in cells) / n),
        hazard_density=clamp01(sum(c.hazard_density for c in cells) / n),
        safety_score=clamp01(sum(c.safety_score for c in cells) / n),
        crime_count=0,
        source="neighbors",
    )


class SafetyScoreResolver:
    """Resolve safety metrics for a point: exact cell, then neighbour ring, then default.

    Reads whatever snapshot `snapshot_source` returns at call time, so a grid
    rebuild is picked up without coordination. Per-request weight or severity
    overrides recompute cells from the shared snapshot; the results are memoised.
    """

    def __init__(
        self,
        builder: CrimeSafetyGridBuilder,
        snapshot_source: Callable[[], GridSnapshot],
        cache_size: int = 10000,
    ):
        self.builder = builder
        self.index = builder.index
        self._snapshot_source = snapshot_source
        self._rescored: LRUCache = LRUCache(maxsize=cache_size)
        self._lock = threading.Lock()

    def _cell(
        self,
        snapshot: GridSnapshot,
        key: str,
        weights: Optional[FactorWeights],
        severity_override: Optional[Mapping[str, float]],
    ) -> Optional[SafetyCell]:
        cell = snapshot.get(key)
        if cell is None:
            return None
        if not severity_override and (weights is None or weights == snapshot.factor_weights):
            return cell

        weights = weights or snapshot.factor_weights
        memo_key = (
            snapshot.version, snapshot.built_at, key, weights,
            tuple(sorted(severity_override.items())) if severity_override else None,
        )
        with self._lock:
            hit = self._rescored.get(memo_key)
        if hit is not None:
            return hit
        rescored = self.builder.rescore(cell, snapshot.breakpoints, weights, severity_override)
        with self._lock:
            self._rescored[memo_key] = rescored
        return rescored

    def resolve(
        self,
        lat: float,
        lon: float,
        weights: Optional[FactorWeights] = None,
        severity_override: Optional[Mapping[str, float]] = None,
    ) -> SafetyMetrics:
        snapshot = self._snapshot_source()
        cell = self._cell(snapshot, self.index.cell_key(lat, lon), weights, severity_override)
        if cell is not None:
            return metrics_from_cell(cell)

        neighbors = [
            c for c in (
                self._cell(snapshot, k, weights, severity_override)
                for k in self.index.neighbor_keys(lat, lon)
            )
            if c is not None
        ]
        if neighbors:
            return average_metrics(neighbors)

        logger.debug(f"No grid data near ({lat:.4f}, {lon:.4f}), defaulting to safe")
        return DEFAULT_METRICS.model_copy()

    def safety_score(self, lat: float, lon: float) -> float:
        return self.resolve(lat, lon).safety_score
