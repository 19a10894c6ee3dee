"""Tests for the SafetyEngine facade."""

import asyncio
import threading

import pytest

from streetwise.data_fetchers import InMemoryHazardStore
from streetwise.engine import SafetyEngine
from streetwise.models import CrimeRecord, EngineConfig, FactorWeights
from tests.fakes import (
    NIGHT, NOON, FakeHazardSource, FakeLightingProvider, FakeRouting, hazard, lamp, route,
)
from tests.test_crime_loader import csv_row, write_csv

LAT, LON = 51.5074, -0.1278

BASELINE = [[51.50, -0.12], [51.50, -0.11], [51.50, -0.10]]
ALTERNATIVE = [[51.53, -0.12], [51.53, -0.11], [51.53, -0.10]]


def make_engine(routing=None, community=None, traffic=None, lighting=None, osm=None,
                now=NIGHT, **config):
    return SafetyEngine(
        config=EngineConfig(**config),
        routing=routing or FakeRouting(),
        community=community or InMemoryHazardStore(),
        traffic=traffic or FakeHazardSource(),
        lighting_provider=lighting or FakeLightingProvider(),
        osm_hazards=osm or FakeHazardSource(),
        now=lambda: now,
    )


def dangerous_baseline_records():
    records = []
    for lat, lon in BASELINE:
        records += [CrimeRecord(lat=lat, lon=lon, crime_type="Robbery") for _ in range(20)]
    for lat, lon in ALTERNATIVE:
        records.append(CrimeRecord(lat=lat, lon=lon, crime_type="Anti-social behaviour"))
    return records


class TestGridLifecycle:
    def test_starts_empty(self):
        engine = make_engine()
        assert engine.snapshot.version == 0
        assert engine.resolve_safety(LAT, LON).source == "default"

    def test_rebuild_swaps_snapshot(self):
        engine = make_engine()
        old = engine.snapshot
        new = engine.rebuild_grid(dangerous_baseline_records())
        assert engine.snapshot is new
        assert new.version == old.version + 1
        assert len(old) == 0
        assert len(new) == 6

    def test_reader_holding_old_snapshot_is_unaffected(self):
        engine = make_engine()
        engine.rebuild_grid([CrimeRecord(lat=LAT, lon=LON, crime_type="Robbery")])
        held = engine.snapshot
        engine.rebuild_grid([])
        assert len(held) == 1
        assert len(engine.snapshot) == 0

    def test_concurrent_rebuilds_publish_distinct_versions(self):
        engine = make_engine()
        threads = [
            threading.Thread(target=engine.rebuild_grid, args=(dangerous_baseline_records(),))
            for _ in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert engine.snapshot.version == 5

    def test_rebuild_with_weights(self):
        engine = make_engine()
        weights = FactorWeights(crime=1.0, collision=0.0, lighting=0.0, hazard=0.0)
        engine.rebuild_grid(dangerous_baseline_records(), factor_weights=weights)
        m = engine.resolve_safety(*BASELINE[0])
        assert m.safety_score == pytest.approx(m.crime_rate)

    def test_load_directory_and_stats(self, tmp_path):
        write_csv(tmp_path / "2024-03" / "2024-03-metropolitan-street.csv", [
            csv_row(-0.1278, 51.5074, "Robbery"),
            csv_row(-0.1278, 51.5074, "Burglary"),
            csv_row("", "", "Drugs"),
        ])
        engine = make_engine()
        engine.load_crime_directory(tmp_path)
        stats = engine.stats()
        assert stats.records_folded == 2
        assert stats.rows_skipped == 1
        assert stats.grid_cells == 1
        assert stats.snapshot_version == 1
        assert stats.built_at is not None

    def test_undecodable_csv_still_publishes_snapshot(self, tmp_path):
        path = write_csv(tmp_path / "2024-03" / "2024-03-metropolitan-street.csv", [
            csv_row(-0.1278, 51.5074, "Robbery"),
        ])
        path.write_bytes(path.read_bytes() + b"\xff\xfe,broken\n")
        engine = make_engine()
        snapshot = engine.load_crime_directory(tmp_path)
        assert snapshot.version == 1
        assert snapshot.records_folded == 1


class TestLiveMetrics:
    def test_resolve_live_blends_live_signals(self):
        engine = make_engine(lighting=FakeLightingProvider([lamp("node/1", LAT, LON)]))
        m = asyncio.run(engine.resolve_live(LAT, LON))
        assert m.source == "live"
        assert m.lighting_index == pytest.approx(0.1)
        assert m.hazard_density == 0.1
        assert m.collision_density == 0.1
        assert m.safety_score == pytest.approx(FactorWeights().blend(0.1, 0.1, 0.1, 0.1))

    def test_resolve_live_uses_community_hazards(self):
        community = InMemoryHazardStore([hazard("h1", LAT, LON, "pothole", "critical")])
        engine = make_engine(community=community, now=NOON)
        m = asyncio.run(engine.resolve_live(LAT, LON))
        assert m.hazard_density == pytest.approx(1.0)
        assert m.lighting_index == 0.1

    def test_osm_hazards_join_hazard_density(self):
        osm = FakeHazardSource([hazard("osm-way-1", LAT, LON, "construction", "high", "osm")])
        engine = make_engine(osm=osm)
        assert asyncio.run(engine.hazard_density(LAT, LON)) == pytest.approx(2.5 / 3)
        assert osm.calls == 1

    def test_osm_hazards_can_be_disabled(self):
        engine = SafetyEngine(
            config=EngineConfig(osm_hazards_enabled=False),
            routing=FakeRouting(), traffic=FakeHazardSource(),
            lighting_provider=FakeLightingProvider(),
        )
        assert engine.osm_hazards is None
        assert engine.hazards.osm is None

    def test_collision_feed_failure(self):
        engine = make_engine(traffic=FakeHazardSource(fail=True))
        assert asyncio.run(engine.collision_density(LAT, LON)) == 0.2

    def test_route_lighting(self):
        provider = FakeLightingProvider([lamp("node/1", 51.50, -0.12)])
        engine = make_engine(lighting=provider)
        values = asyncio.run(engine.route_lighting(BASELINE))
        assert len(values) == 3
        assert values[0] == pytest.approx(0.1)
        assert values[2] == 0.7
        assert provider.calls == 3

    def test_lighting_radius_passthrough(self):
        engine = make_engine(lighting=FakeLightingProvider([lamp("node/1", LAT + 0.0005, LON)]))
        assert asyncio.run(engine.lighting_index(LAT, LON, radius_m=20)) == 0.7
        assert asyncio.run(engine.lighting_index(LAT, LON, radius_m=200)) == pytest.approx(0.1)


class TestFindRoutes:
    def test_prefers_strictly_safer_alternative(self):
        routing = FakeRouting([route(BASELINE), route(ALTERNATIVE, distance_m=1400)])
        engine = make_engine(routing=routing)
        engine.rebuild_grid(dangerous_baseline_records())
        comparison = asyncio.run(engine.find_routes(51.50, -0.12, 51.50, -0.10))
        assert comparison.safer_alternative_found
        assert comparison.safest.route.coordinates == ALTERNATIVE
        assert comparison.fastest.route.coordinates == BASELINE
        assert comparison.safest.safety.composite_score < comparison.fastest.safety.composite_score
        assert routing.calls == [(51.50, -0.12, 51.50, -0.10, "walking")]

    def test_single_route_is_both(self):
        engine = make_engine(routing=FakeRouting([route(BASELINE)]))
        comparison = asyncio.run(engine.find_routes(51.50, -0.12, 51.50, -0.10))
        assert not comparison.safer_alternative_found
        assert comparison.safest == comparison.fastest

    def test_routing_failure_falls_back_to_straight_line(self):
        engine = make_engine(routing=FakeRouting(fail=True))
        comparison = asyncio.run(engine.find_routes(51.50, -0.12, 51.51, -0.12, "cycling"))
        line = comparison.fastest.route
        assert comparison.fallback
        assert line.provider == "straight_line"
        assert line.coordinates == [[51.50, -0.12], [51.51, -0.12]]
        assert line.duration_s == pytest.approx(line.distance_m / (15 / 3.6))
        assert comparison.fastest.safety.composite_score == 0.5

    def test_empty_routing_answer_falls_back(self):
        engine = make_engine(routing=FakeRouting([]))
        assert asyncio.run(engine.find_routes(51.50, -0.12, 51.51, -0.12)).fallback

    def test_score_route_uses_grid(self):
        engine = make_engine()
        engine.rebuild_grid(dangerous_baseline_records())
        dangerous = engine.score_route(BASELINE)
        quiet = engine.score_route(ALTERNATIVE)
        assert dangerous.composite_score > quiet.composite_score
        assert len(dangerous.sample_scores) == 3
