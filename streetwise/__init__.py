"""Streetwise - pedestrian and cyclist safety scoring engine."""

from streetwise.crime_grid import CrimeSafetyGridBuilder, GridSnapshot
from streetwise.engine import SafetyEngine
from streetwise.grid import SpatialGridIndex
from streetwise.hazards import HazardDensityAggregator
from streetwise.lighting import LightingCoverageCache
from streetwise.models import (
    CrimeRecord, EngineConfig, FactorWeights, HazardReport, RouteSafetyResult,
    SafetyCell, SafetyMetrics,
)
from streetwise.route_scoring import RouteSafetyScorer
from streetwise.scoring import SafetyScoreResolver

__all__ = [
    "CrimeRecord", "CrimeSafetyGridBuilder", "EngineConfig", "FactorWeights",
    "GridSnapshot", "HazardDensityAggregator", "HazardReport",
    "LightingCoverageCache", "RouteSafetyResult", "RouteSafetyScorer",
    "SafetyCell", "SafetyEngine", "SafetyMetrics", "SafetyScoreResolver",
    "SpatialGridIndex",
]
