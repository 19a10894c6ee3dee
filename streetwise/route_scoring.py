"""Streetwise Engine - Route safety scoring and route comparison"""

import logging
from typing import Callable, Optional

from streetwise.config import NEUTRAL_ROUTE_SCORE, ROUTE_SAMPLE_INTERVAL_M
from streetwise.grid import clamp01, haversine_m
from streetwise.models import (
    RouteComparison, RouteGeometry, RouteSafetyResult, SafetyMetrics, ScoredRoute,
)

logger = logging.getLogger("streetwise.routes")

AVERAGE_WEIGHT = 0.7
WORST_CASE_WEIGHT = 0.3


def sample_polyline(coordinates: list[list[float]],
                    interval_m: float = ROUTE_SAMPLE_INTERVAL_M) -> list[list[float]]:
    """Points roughly every interval_m along the path, always including both ends."""
    if not coordinates:
        return []
    samples = [list(coordinates[0])]
    last_index = 0
    accumulated = 0.0
    for i in range(1, len(coordinates)):
        prev, cur = coordinates[i - 1], coordinates[i]
        accumulated += haversine_m(prev[0], prev[1], cur[0], cur[1])
        if accumulated >= interval_m:
            samples.append(list(cur))
            last_index = i
            accumulated = 0.0
    if last_index != len(coordinates) - 1:
        samples.append(list(coordinates[-1]))
    return samples


def composite_score(scores: list[float]) -> float:
    """Blend of mean and worst sample, so one dangerous pocket still counts."""
    if not scores:
        return NEUTRAL_ROUTE_SCORE
    average = sum(scores) / len(scores)
    return clamp01(AVERAGE_WEIGHT * average + WORST_CASE_WEIGHT * max(scores))


def rating_for(score: float) -> float:
    return max(0.0, min(10.0, (1.0 - score) * 10.0))


class RouteSafetyScorer:
    def __init__(self, resolve: Callable[[float, float], SafetyMetrics],
                 interval_m: float = ROUTE_SAMPLE_INTERVAL_M):
        self.resolve = resolve
        self.interval_m = interval_m

    def score_route(self, coordinates: list[list[float]]) -> RouteSafetyResult:
        if len(coordinates) <= 2:
            return RouteSafetyResult(
                composite_score=NEUTRAL_ROUTE_SCORE,
                rating=rating_for(NEUTRAL_ROUTE_SCORE),
            )
        samples = sample_polyline(coordinates, self.interval_m)
        scores = [self.resolve(lat, lon).safety_score for lat, lon in samples]
        score = composite_score(scores)
        logger.debug(f"Route scored {score:.3f} from {len(samples)} samples")
        return RouteSafetyResult(
            composite_score=score,
            rating=rating_for(score),
            sampled_points=samples,
            sample_scores=scores,
        )

    def score_geometry(self, route: RouteGeometry) -> ScoredRoute:
        return ScoredRoute(route=route, safety=self.score_route(route.coordinates))


def compare_routes(baseline: ScoredRoute, candidates: list[ScoredRoute],
                   fallback: bool = False) -> RouteComparison:
    """Baseline is the fastest route; a candidate wins only if strictly safer."""
    best: Optional[ScoredRoute] = min(
        candidates, key=lambda r: r.safety.composite_score, default=None
    )
    if best is not None and best.safety.composite_score < baseline.safety.composite_score:
        return RouteComparison(
            fastest=baseline, safest=best, safer_alternative_found=True, fallback=fallback,
        )
    return RouteComparison(
        fastest=baseline, safest=baseline, safer_alternative_found=False, fallback=fallback,
    )
