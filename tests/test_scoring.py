"""Tests for point safety resolution."""

import pytest

from streetwise.crime_grid import CrimeSafetyGridBuilder, GridSnapshot
from streetwise.grid import SpatialGridIndex
from streetwise.models import CrimeRecord, FactorWeights
from streetwise.scoring import SafetyScoreResolver

LAT, LON = 51.5074, -0.1278


def build(records):
    index = SpatialGridIndex(0.01)
    builder = CrimeSafetyGridBuilder(index)
    snapshot = builder.build(records)
    return builder, snapshot


def crimes(lat, lon, n, crime_type="Robbery"):
    return [CrimeRecord(lat=lat, lon=lon, crime_type=crime_type) for _ in range(n)]


class TestResolve:
    def test_empty_grid_returns_defaults(self):
        builder = CrimeSafetyGridBuilder(SpatialGridIndex(0.01))
        resolver = SafetyScoreResolver(builder, lambda: GridSnapshot())
        metrics = resolver.resolve(LAT, LON)
        assert metrics.safety_score == 0.1
        assert metrics.crime_count == 0
        assert metrics.crime_rate == 0.1
        assert metrics.lighting_index == 0.3
        assert metrics.source == "default"

    def test_exact_cell(self):
        builder, snapshot = build(crimes(LAT, LON, 4) + crimes(LAT + 0.05, LON, 1))
        resolver = SafetyScoreResolver(builder, lambda: snapshot)
        cell = snapshot.get(builder.index.cell_key(LAT, LON))
        metrics = resolver.resolve(LAT, LON)
        assert metrics.source == "cell"
        assert metrics.crime_count == 4
        assert metrics.safety_score == cell.safety_score
        assert metrics.crime_rate == cell.crime_score

    def test_neighbor_average(self):
        builder, snapshot = build(crimes(LAT, LON, 4) + crimes(LAT + 0.01, LON, 1))
        resolver = SafetyScoreResolver(builder, lambda: snapshot)
        a = snapshot.get(builder.index.cell_key(LAT, LON))
        b = snapshot.get(builder.index.cell_key(LAT + 0.01, LON))
        metrics = resolver.resolve(LAT, LON + 0.01)
        assert metrics.source == "neighbors"
        assert metrics.crime_count == 0
        assert metrics.safety_score == pytest.approx((a.safety_score + b.safety_score) / 2)
        assert metrics.lighting_index == pytest.approx((a.lighting_index + b.lighting_index) / 2)

    def test_far_point_is_default(self):
        builder, snapshot = build(crimes(LAT, LON, 4))
        resolver = SafetyScoreResolver(builder, lambda: snapshot)
        assert resolver.resolve(LAT + 0.05, LON).source == "default"

    def test_metrics_bounded(self):
        builder, snapshot = build(crimes(LAT, LON, 30, "Violence and sexual offences") + crimes(LAT + 0.03, LON, 1))
        resolver = SafetyScoreResolver(builder, lambda: snapshot)
        for lat in (LAT, LAT + 0.01, LAT + 0.03, LAT + 0.2):
            m = resolver.resolve(lat, LON)
            for value in (m.crime_rate, m.lighting_index, m.collision_density,
                          m.hazard_density, m.safety_score):
                assert 0.0 <= value <= 1.0

    def test_picks_up_new_snapshot(self):
        builder, first = build(crimes(LAT, LON, 4))
        current = {"snapshot": GridSnapshot()}
        resolver = SafetyScoreResolver(builder, lambda: current["snapshot"])
        assert resolver.resolve(LAT, LON).source == "default"
        current["snapshot"] = first
        assert resolver.resolve(LAT, LON).source == "cell"

    def test_safety_score_shortcut(self):
        builder, snapshot = build(crimes(LAT, LON, 4))
        resolver = SafetyScoreResolver(builder, lambda: snapshot)
        assert resolver.safety_score(LAT, LON) == resolver.resolve(LAT, LON).safety_score


class TestOverrides:
    def setup_method(self):
        records = (crimes(LAT, LON, 1, "Shoplifting") + crimes(LAT + 0.02, LON, 2)
                   + crimes(LAT + 0.04, LON, 5))
        self.builder, self.snapshot = build(records)
        self.resolver = SafetyScoreResolver(self.builder, lambda: self.snapshot)

    def test_weights_override_reblends(self):
        weights = FactorWeights(crime=1.0, collision=0.0, lighting=0.0, hazard=0.0)
        metrics = self.resolver.resolve(LAT, LON, weights=weights)
        assert metrics.safety_score == pytest.approx(metrics.crime_rate)

    def test_default_weights_are_not_an_override(self):
        base = self.resolver.resolve(LAT, LON)
        same = self.resolver.resolve(LAT, LON, weights=self.snapshot.factor_weights)
        assert base == same

    def test_severity_override_uses_shared_breakpoints(self):
        base = self.resolver.resolve(LAT, LON)
        harsher = self.resolver.resolve(LAT, LON, severity_override={"Shoplifting": 1.0})
        assert harsher.crime_rate > base.crime_rate
        # 1 crime at p25 = 1 -> 0.2 * (0.7 + 1.0 * 0.6)
        assert harsher.crime_rate == pytest.approx(0.26)

    def test_override_leaves_snapshot_untouched(self):
        key = self.builder.index.cell_key(LAT, LON)
        before = self.snapshot.get(key)
        self.resolver.resolve(LAT, LON, severity_override={"Shoplifting": 1.0})
        assert self.snapshot.get(key) is before

    def test_override_results_are_memoised(self):
        weights = FactorWeights(crime=0.9, collision=0.0, lighting=0.0, hazard=0.1)
        first = self.resolver.resolve(LAT, LON, weights=weights)
        second = self.resolver.resolve(LAT, LON, weights=weights)
        assert first == second
        assert len(self.resolver._rescored) == 1
