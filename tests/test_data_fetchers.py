"""Tests for the HTTP providers, using httpx.MockTransport."""

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from streetwise.data_fetchers import (
    InMemoryHazardStore, OSRMRoutingProvider, OverpassHazardProvider,
    OverpassLightingProvider, ProviderError, TomTomIncidentProvider,
    build_overpass_hazard_query, build_overpass_lighting_query, parse_osm_hazards,
    parse_osrm_routes, parse_overpass_elements, parse_tomtom_incidents,
)
from streetwise.models import BoundingBox
from tests.fakes import FakeClock, hazard

OSRM_OK = {
    "code": "Ok",
    "routes": [
        {"geometry": {"type": "LineString", "coordinates": [[-0.12, 51.50], [-0.11, 51.51]]},
         "distance": 1500.0, "duration": 1080.0},
        {"geometry": {"type": "LineString", "coordinates": [[-0.12, 51.50], [-0.13, 51.51]]},
         "distance": 1900.0, "duration": 1370.0},
    ],
}

TOMTOM_OK = {
    "incidents": [
        {"type": "Feature",
         "geometry": {"type": "Point", "coordinates": [-0.1278, 51.5074]},
         "properties": {"id": "abc", "iconCategory": 1, "magnitudeOfDelay": 3,
                        "events": [{"description": "Accident", "code": 1}],
                        "from": "A4", "to": "A40", "startTime": "2024-01-15T08:00:00Z"}},
        {"type": "Feature",
         "geometry": {"type": "LineString",
                      "coordinates": [[-0.10, 51.50], [-0.11, 51.51], [-0.12, 51.52]]},
         "properties": {"id": "def", "iconCategory": 9, "magnitudeOfDelay": 1}},
        {"type": "Feature", "geometry": {"type": "Polygon"}, "properties": {"id": "skip"}},
    ]
}

OVERPASS_OK = {
    "elements": [
        {"type": "node", "id": 1, "lat": 51.5, "lon": -0.12,
         "tags": {"highway": "street_lamp", "light:source": "LED"}},
        {"type": "way", "id": 2, "tags": {"highway": "residential", "lit": "yes"},
         "geometry": [{"lat": 51.50, "lon": -0.12}, {"lat": 51.52, "lon": -0.10}]},
        {"type": "relation", "id": 3},
    ]
}

OSM_NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)

OSM_OK = {
    "elements": [
        {"type": "way", "id": 10, "center": {"lat": 51.5074, "lon": -0.1278},
         "timestamp": "2024-05-20T10:00:00Z",
         "tags": {"highway": "construction", "name": "Strand", "note": "lane shut"}},
        {"type": "way", "id": 11, "center": {"lat": 51.5100, "lon": -0.1300},
         "tags": {"highway": "residential", "access": "no"}},
        {"type": "way", "id": 12, "center": {"lat": 51.5100, "lon": -0.1300},
         "tags": {"highway": "construction", "end_date": "2024-01-01"}},
        {"type": "way", "id": 13, "center": {"lat": 51.5100, "lon": -0.1300},
         "tags": {"highway": "construction", "start_date": "2019-03-01"}},
        {"type": "node", "id": 14, "lat": 51.5080, "lon": -0.1280,
         "tags": {"barrier": "gate", "access": "no"}},
        {"type": "way", "id": 15, "tags": {"highway": "construction"}},
        {"type": "relation", "id": 16},
    ]
}


def mock_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestOSRM:
    def test_parse_flips_to_lat_lon(self):
        routes = parse_osrm_routes(OSRM_OK)
        assert len(routes) == 2
        assert routes[0].coordinates == [[51.50, -0.12], [51.51, -0.11]]
        assert routes[0].distance_m == 1500.0
        assert routes[1].duration_s == 1370.0

    def test_parse_rejects_no_route(self):
        with pytest.raises(ProviderError):
            parse_osrm_routes({"code": "NoRoute", "message": "Impossible route"})

    def test_request(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json=OSRM_OK)

        provider = OSRMRoutingProvider(mock_client(handler), base_url="https://osrm.test")
        routes = asyncio.run(provider.get_routes(51.50, -0.12, 51.51, -0.11, "cycling"))
        assert len(routes) == 2
        assert seen["url"].path == "/route/v1/bike/-0.12,51.5;-0.11,51.51"
        assert seen["url"].params["alternatives"] == "true"
        assert seen["url"].params["geometries"] == "geojson"

    def test_http_error(self):
        provider = OSRMRoutingProvider(
            mock_client(lambda request: httpx.Response(503, text="busy")), base_url="https://osrm.test"
        )
        with pytest.raises(ProviderError):
            asyncio.run(provider.get_routes(51.50, -0.12, 51.51, -0.11))


class TestTomTom:
    def test_parse(self):
        reports = parse_tomtom_incidents(TOMTOM_OK)
        assert len(reports) == 2
        accident, works = reports
        assert accident.id == "tomtom-abc"
        assert accident.type == "accident"
        assert accident.severity == "high"
        assert accident.source == "verified"
        assert (accident.lat, accident.lon) == (51.5074, -0.1278)
        assert accident.metadata["icon_category"] == 1
        assert "From A4 to A40" in accident.metadata["description"]
        assert accident.reported_at is not None
        assert works.type == "construction"
        assert works.severity == "low"
        assert (works.lat, works.lon) == (51.51, -0.11)

    def test_no_key_returns_nothing(self):
        def handler(request):
            raise AssertionError("no request expected")

        provider = TomTomIncidentProvider(mock_client(handler), api_key="")
        assert asyncio.run(provider.query_near(51.5, -0.12, 500)) == []

    def test_request_uses_bbox(self):
        seen = {}

        def handler(request):
            seen["params"] = request.url.params
            return httpx.Response(200, json=TOMTOM_OK)

        provider = TomTomIncidentProvider(mock_client(handler), api_key="k", url="https://tomtom.test/incidents")
        reports = asyncio.run(provider.query_near(51.5, -0.12, 500))
        assert len(reports) == 2
        assert seen["params"]["key"] == "k"
        west, south, east, north = (float(v) for v in seen["params"]["bbox"].split(","))
        assert west < -0.12 < east
        assert south < 51.5 < north

    def test_error_status(self):
        provider = TomTomIncidentProvider(
            mock_client(lambda request: httpx.Response(403, text="forbidden")),
            api_key="k", url="https://tomtom.test/incidents",
        )
        with pytest.raises(ProviderError):
            asyncio.run(provider.query_near(51.5, -0.12, 500))


class TestOverpass:
    def test_query_covers_lamps_and_lit_ways(self):
        query = build_overpass_lighting_query(BoundingBox(south=51.4, west=-0.2, north=51.6, east=0.0))
        assert 'node["highway"="street_lamp"](51.4,-0.2,51.6,0.0)' in query
        assert 'way["lit"="yes"]' in query
        assert "out geom;" in query

    def test_parse(self):
        elements = parse_overpass_elements(OVERPASS_OK)
        assert [e.element_id for e in elements] == ["node/1", "way/2"]
        assert elements[0].tags["light:source"] == "LED"
        assert elements[1].lat == pytest.approx(51.51)
        assert elements[1].lon == pytest.approx(-0.11)

    def test_endpoint_failover(self):
        hits = []

        def handler(request):
            hits.append(request.url.host)
            if request.url.host == "first.test":
                return httpx.Response(429, text="slow down")
            return httpx.Response(200, json=OVERPASS_OK)

        provider = OverpassLightingProvider(
            mock_client(handler), endpoints=["https://first.test/api", "https://second.test/api"]
        )
        bbox = BoundingBox(south=51.4, west=-0.2, north=51.6, east=0.0)
        elements = asyncio.run(provider.query_features(bbox))
        assert len(elements) == 2
        assert hits == ["first.test", "second.test"]

    def test_all_endpoints_fail(self):
        provider = OverpassLightingProvider(
            mock_client(lambda request: httpx.Response(500)), endpoints=["https://a.test", "https://b.test"]
        )
        with pytest.raises(ProviderError):
            asyncio.run(provider.query_features(BoundingBox(south=0, west=0, north=1, east=1)))


class TestInMemoryHazardStore:
    def test_query_near_filters_radius_and_status(self):
        store = InMemoryHazardStore([
            hazard("near", 51.5074, -0.1278),
            hazard("far", 51.6, -0.1278),
            hazard("fixed", 51.5075, -0.1278),
        ])
        assert store.resolve("fixed")
        found = asyncio.run(store.query_near(51.5074, -0.1278, 500))
        assert [r.id for r in found] == ["near"]

    def test_add_stamps_time(self):
        store = InMemoryHazardStore()
        assert store.add(hazard("h1", 51.5, -0.12)).reported_at is not None

    def test_resolve_unknown(self):
        assert not InMemoryHazardStore().resolve("missing")


class TestOSMHazards:
    def test_query_targets_construction_and_closures(self):
        query = build_overpass_hazard_query(51.5, -0.12, 500)
        assert 'way["highway"="construction"](around:500,51.5,-0.12)' in query
        assert 'way["highway"]["access"="no"]' in query
        assert "out center meta;" in query

    def test_parse_maps_tags_to_type_and_severity(self):
        reports = {r.id: r for r in parse_osm_hazards(OSM_OK, OSM_NOW)}
        assert set(reports) == {"osm-way-10", "osm-way-11", "osm-node-14"}

        works = reports["osm-way-10"]
        assert (works.type, works.severity, works.source) == ("construction", "high", "osm")
        assert (works.lat, works.lon) == (51.5074, -0.1278)
        assert works.metadata["description"] == "New road construction: Strand - lane shut"
        assert works.reported_at is not None

        assert (reports["osm-way-11"].type, reports["osm-way-11"].severity) == ("road_closure", "critical")
        assert (reports["osm-node-14"].type, reports["osm-node-14"].severity) == ("barrier", "high")

    def test_finished_and_stale_works_are_dropped(self):
        ids = [r.id for r in parse_osm_hazards(OSM_OK, OSM_NOW)]
        assert "osm-way-12" not in ids
        assert "osm-way-13" not in ids
        later = parse_osm_hazards(OSM_OK, datetime(2023, 6, 1, tzinfo=timezone.utc))
        assert "osm-way-12" in [r.id for r in later]

    def test_unparseable_dates_keep_the_hazard(self):
        data = {"elements": [{"type": "way", "id": 1, "center": {"lat": 51.5, "lon": -0.12},
                              "tags": {"highway": "construction", "end_date": "soon"}}]}
        assert len(parse_osm_hazards(data, OSM_NOW)) == 1

    def test_provider_posts_and_caches(self):
        hits = []

        def handler(request):
            hits.append(request.url.host)
            return httpx.Response(200, json=OSM_OK)

        clock = FakeClock()
        provider = OverpassHazardProvider(
            mock_client(handler), endpoints=["https://osm.test/api"],
            cache_ttl_s=900, clock=clock, now=lambda: OSM_NOW,
        )

        async def run():
            first = await provider.query_near(51.5074, -0.1278, 500)
            second = await provider.query_near(51.5071, -0.1281, 500)
            clock.advance(901)
            third = await provider.query_near(51.5074, -0.1278, 500)
            return first, second, third

        first, second, third = asyncio.run(run())
        assert len(first) == len(second) == len(third) == 3
        assert hits == ["osm.test", "osm.test"]

    def test_provider_failover_and_exhaustion(self):
        def handler(request):
            if request.url.host == "first.test":
                return httpx.Response(504)
            return httpx.Response(200, json=OSM_OK)

        provider = OverpassHazardProvider(
            mock_client(handler), endpoints=["https://first.test/api", "https://second.test/api"],
            now=lambda: OSM_NOW,
        )
        assert len(asyncio.run(provider.query_near(51.5, -0.12, 500))) == 3

        broken = OverpassHazardProvider(
            mock_client(lambda request: httpx.Response(500)), endpoints=["https://a.test"],
        )
        with pytest.raises(ProviderError):
            asyncio.run(broken.query_near(51.5, -0.12, 500))
