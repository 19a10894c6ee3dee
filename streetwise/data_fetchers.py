"""Streetwise Engine - External Data Providers (OSRM, TomTom, Overpass, OSM hazards, hazard store)"""

import logging
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

import httpx
from cachetools import TTLCache

from streetwise.config import (
    OSM_HAZARD_CACHE_TTL_S, OSM_HAZARD_MAX_AGE_DAYS, OSRM_BASE_URL,
    OVERPASS_ENDPOINTS, PROVIDER_TIMEOUT_S, TOMTOM_API_KEY, TOMTOM_INCIDENTS_URL,
)
from streetwise.grid import bbox_around, haversine_m
from streetwise.models import BoundingBox, HazardReport, LightingElement, RouteGeometry

logger = logging.getLogger("streetwise.fetchers")

# Shared async HTTP client
client = httpx.AsyncClient(timeout=PROVIDER_TIMEOUT_S)


class ProviderError(Exception):
    """An upstream provider could not produce a usable answer."""


# ─────────────────────────── Collaborator Contracts ─────────────

class RoutingProvider(Protocol):
    async def get_routes(self, from_lat: float, from_lon: float,
                         to_lat: float, to_lon: float,
                         mode: str = "walking") -> list[RouteGeometry]:
        """Baseline route first, then any alternatives. Raises ProviderError."""
        ...


class CommunityHazardStore(Protocol):
    async def query_near(self, lat: float, lon: float, radius_m: float) -> list[HazardReport]:
        ...


class TrafficIncidentProvider(Protocol):
    async def query_near(self, lat: float, lon: float, radius_m: float) -> list[HazardReport]:
        ...


class RoadHazardProvider(Protocol):
    """Mapped hazards (construction, closures, barriers) that join community reports."""

    async def query_near(self, lat: float, lon: float, radius_m: float) -> list[HazardReport]:
        ...


class LightingDatasetProvider(Protocol):
    async def query_features(self, bbox: BoundingBox) -> list[LightingElement]:
        ...


# ─────────────────────────── OSRM Routing ───────────────────────

_OSRM_PROFILES = {"walking": "foot", "cycling": "bike", "driving": "driving"}


def parse_osrm_routes(data: dict) -> list[RouteGeometry]:
    if data.get("code") != "Ok":
        raise ProviderError(f"OSRM returned {data.get('code')}: {data.get('message', '')}")
    routes = []
    for route in data.get("routes", []):
        coords = route.get("geometry", {}).get("coordinates", [])
        routes.append(RouteGeometry(
            coordinates=[[lat, lon] for lon, lat in coords],
            distance_m=float(route.get("distance", 0.0)),
            duration_s=float(route.get("duration", 0.0)),
            provider="osrm",
        ))
    if not routes:
        raise ProviderError("OSRM returned no routes")
    return routes


class OSRMRoutingProvider:
    def __init__(self, http: Optional[httpx.AsyncClient] = None, base_url: str = OSRM_BASE_URL):
        self.http = http or client
        self.base_url = base_url.rstrip("/")

    async def get_routes(self, from_lat: float, from_lon: float,
                         to_lat: float, to_lon: float,
                         mode: str = "walking") -> list[RouteGeometry]:
        profile = _OSRM_PROFILES.get(mode, "foot")
        url = f"{self.base_url}/route/v1/{profile}/{from_lon},{from_lat};{to_lon},{to_lat}"
        params = {"overview": "full", "geometries": "geojson", "alternatives": "true"}
        try:
            r = await self.http.get(url, params=params)
        except httpx.HTTPError as e:
            raise ProviderError(f"OSRM request failed: {e}") from e
        if r.status_code != 200:
            raise ProviderError(f"OSRM error {r.status_code}: {r.text[:200]}")
        routes = parse_osrm_routes(r.json())
        logger.info(f"OSRM: {len(routes)} route(s) for mode={mode}")
        return routes


# ─────────────────────────── TomTom Traffic Incidents ───────────

# TomTom icon categories: 0 Unknown, 1 Accident, 2 Fog, 3 Dangerous Conditions,
# 4 Rain, 5 Ice, 6 Jam, 7 Lane Closed, 8 Road Closed, 9 Road Works, 10 Wind,
# 11 Flooding, 14 Broken Down Vehicle
_TOMTOM_CATEGORY_TYPES = {
    0: "accident", 1: "accident", 2: "poor_lighting", 3: "road_damage",
    4: "flooding", 5: "road_damage", 6: "accident", 7: "road_closure",
    8: "road_closure", 9: "construction", 10: "road_damage", 11: "flooding",
    14: "accident",
}

# magnitudeOfDelay: 0 Unknown, 1 Minor, 2 Moderate, 3 Major, 4 Undefined
_TOMTOM_MAGNITUDE_SEVERITY = {0: "medium", 1: "low", 2: "medium", 3: "high", 4: "critical"}

_TOMTOM_FIELDS = (
    "{incidents{type,geometry{type,coordinates},properties{id,iconCategory,"
    "magnitudeOfDelay,events{description,code,iconCategory},startTime,endTime,"
    "from,to,length,delay,roadNumbers,timeValidity}}}"
)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _tomtom_incident_to_report(incident: dict) -> Optional[HazardReport]:
    props = incident.get("properties") or {}
    geometry = incident.get("geometry") or {}
    coords = geometry.get("coordinates")
    if geometry.get("type") == "Point" and coords:
        lon, lat = coords[0], coords[1]
    elif geometry.get("type") == "LineString" and coords:
        lon, lat = coords[len(coords) // 2][:2]
    else:
        return None

    category = props.get("iconCategory")
    description = ". ".join(e.get("description", "") for e in props.get("events") or [] if e)
    if props.get("from") and props.get("to"):
        description += f" From {props['from']} to {props['to']}."
    elif props.get("from"):
        description += f" At {props['from']}."

    return HazardReport(
        id=f"tomtom-{props.get('id', uuid.uuid4().hex)}",
        lat=float(lat),
        lon=float(lon),
        type=_TOMTOM_CATEGORY_TYPES.get(category, "accident"),
        severity=_TOMTOM_MAGNITUDE_SEVERITY.get(props.get("magnitudeOfDelay"), "medium"),
        source="verified",
        metadata={
            "provider": "tomtom",
            "icon_category": category,
            "magnitude_of_delay": props.get("magnitudeOfDelay"),
            "description": description.strip() or "Traffic incident",
            "delay_s": props.get("delay"),
            "length_m": props.get("length"),
            "affects_traffic": True,
        },
        reported_at=_parse_timestamp(props.get("startTime")),
    )


def parse_tomtom_incidents(data: dict) -> list[HazardReport]:
    reports = []
    for incident in data.get("incidents") or []:
        try:
            report = _tomtom_incident_to_report(incident)
        except (TypeError, ValueError, IndexError) as e:
            logger.warning(f"Error parsing TomTom incident: {e}")
            continue
        if report is not None:
            reports.append(report)
    return reports


class TomTomIncidentProvider:
    """Verified traffic incidents. Without an API key every query is empty."""

    def __init__(self, http: Optional[httpx.AsyncClient] = None,
                 api_key: str = TOMTOM_API_KEY, url: str = TOMTOM_INCIDENTS_URL):
        self.http = http or client
        self.api_key = api_key
        self.url = url
        if not api_key:
            logger.warning("TOMTOM_API_KEY not set, traffic incidents will not be available")

    async def query_near(self, lat: float, lon: float, radius_m: float) -> list[HazardReport]:
        if not self.api_key:
            return []
        bbox = bbox_around(lat, lon, radius_m)
        params = {
            "key": self.api_key,
            "bbox": f"{bbox.west},{bbox.south},{bbox.east},{bbox.north}",
            "fields": _TOMTOM_FIELDS,
            "language": "en-GB",
            "categoryFilter": "0,1,2,3,4,5,6,7,8,9,10,11,14",
            "timeValidityFilter": "present",
        }
        try:
            r = await self.http.get(self.url, params=params)
        except httpx.HTTPError as e:
            raise ProviderError(f"TomTom request failed: {e}") from e
        if r.status_code != 200:
            raise ProviderError(f"TomTom error {r.status_code}: {r.text[:200]}")
        reports = parse_tomtom_incidents(r.json())
        logger.info(f"TomTom: {len(reports)} incidents near ({lat:.4f}, {lon:.4f})")
        return reports


# ─────────────────────────── OSM Street Lighting ────────────────

def build_overpass_lighting_query(bbox: BoundingBox) -> str:
    b = f"{bbox.south},{bbox.west},{bbox.north},{bbox.east}"
    return f"""
      [out:json][timeout:25];
      (
        node["highway"="street_lamp"]({b});
        node["highway"="lamp_post"]({b});
        way["lit"="yes"]({b});
        way["highway"]["lit"]({b});
      );
      out geom;
    """


def parse_overpass_elements(data: dict) -> list[LightingElement]:
    elements = []
    for el in data.get("elements") or []:
        kind = el.get("type")
        if kind == "node" and "lat" in el and "lon" in el:
            lat, lon = el["lat"], el["lon"]
        elif kind == "way" and el.get("geometry"):
            pts = el["geometry"]
            lat = sum(p["lat"] for p in pts) / len(pts)
            lon = sum(p["lon"] for p in pts) / len(pts)
        else:
            continue
        tags = {str(k): str(v) for k, v in (el.get("tags") or {}).items()}
        elements.append(LightingElement(
            element_id=f"{kind}/{el.get('id')}",
            source="osm",
            lat=lat,
            lon=lon,
            tags=tags,
        ))
    return elements


class OverpassLightingProvider:
    def __init__(self, http: Optional[httpx.AsyncClient] = None,
                 endpoints: Optional[list[str]] = None):
        self.http = http or client
        self.endpoints = list(endpoints or OVERPASS_ENDPOINTS)

    async def query_features(self, bbox: BoundingBox) -> list[LightingElement]:
        query = build_overpass_lighting_query(bbox)
        last_error: Optional[Exception] = None
        for endpoint in self.endpoints:
            try:
                r = await self.http.post(endpoint, data={"data": query})
                if r.status_code != 200:
                    raise ProviderError(f"HTTP {r.status_code}")
                elements = parse_overpass_elements(r.json())
                logger.info(f"Overpass ({endpoint}): {len(elements)} lighting elements")
                return elements
            except (httpx.HTTPError, ProviderError, ValueError) as e:
                logger.warning(f"Overpass endpoint {endpoint} failed: {e}")
                last_error = e
        raise ProviderError(f"All Overpass endpoints failed: {last_error}")


# ─────────────────────────── OSM Road Hazards ───────────────────

_OSM_END_DATE_TAGS = ("end_date", "construction:end_date", "temporary:end_date", "expected_end_date")
_OSM_START_DATE_TAGS = ("construction:date", "start_date", "construction:start_date")


def build_overpass_hazard_query(lat: float, lon: float, radius_m: float) -> str:
    around = f"around:{radius_m:.0f},{lat},{lon}"
    return f"""
      [out:json][timeout:30];
      (
        way["highway"="construction"]({around});
        way["highway"]["access"="no"]({around});
        node["barrier"]["access"="no"]({around});
      );
      out center meta;
    """


def _first_tag(tags: dict, names: tuple[str, ...]) -> Optional[str]:
    return next((tags[n] for n in names if tags.get(n)), None)


def _parse_osm_date(value: Optional[str]) -> Optional[datetime]:
    parsed = _parse_timestamp(value)
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _classify_osm_way(tags: dict) -> tuple[str, str, str]:
    """(type, severity, label) for a way, most specific tag first."""
    if tags.get("construction"):
        return "construction", "high", "Road under construction"
    if tags.get("highway") == "construction":
        return "construction", "high", "New road construction"
    if tags.get("access") == "no":
        return "road_closure", "critical", "Road closed"
    if tags.get("temporary:access") == "no":
        return "road_closure", "high", "Temporary road closure"
    if tags.get("roadworks") == "yes":
        return "road_work", "medium", "Road works in progress"
    return "construction", "medium", "Road construction or closure"


def _classify_osm_node(tags: dict) -> tuple[str, str, str]:
    closed = tags.get("access") == "no"
    if tags.get("barrier") == "gate" and closed:
        return "barrier", "high", "Closed gate blocking access"
    if tags.get("barrier") == "bollard" and closed:
        return "barrier", "medium", "Bollards restricting access"
    if tags.get("highway") == "construction":
        return "construction", "medium", "Construction point"
    return "barrier", "medium", "Barrier or obstruction"


def osm_element_to_report(element: dict, now: datetime) -> Optional[HazardReport]:
    """One Overpass element as a hazard, or None if unlocated or no longer current."""
    kind = element.get("type")
    tags = {str(k): str(v) for k, v in (element.get("tags") or {}).items()}
    if kind == "way":
        point = element.get("center") or element
        hazard_type, severity, label = _classify_osm_way(tags)
        label = f"{label}: {tags.get('name', 'Unnamed road')}"
    elif kind == "node":
        point = element
        hazard_type, severity, label = _classify_osm_node(tags)
    else:
        return None
    if point.get("lat") is None or point.get("lon") is None:
        return None

    end_date = _first_tag(tags, _OSM_END_DATE_TAGS + (("opening_date",) if kind == "way" else ()))
    ends = _parse_osm_date(end_date)
    if ends is not None and ends < now:
        logger.debug(f"Skipping expired OSM {kind} {element.get('id')} (ended {end_date})")
        return None
    if kind == "way":
        started = _parse_osm_date(_first_tag(tags, _OSM_START_DATE_TAGS))
        if started is not None and started < now - timedelta(days=OSM_HAZARD_MAX_AGE_DAYS):
            logger.debug(f"Skipping stale OSM way {element.get('id')} (started {started:%Y-%m-%d})")
            return None

    if tags.get("note"):
        label += f" - {tags['note']}"
    return HazardReport(
        id=f"osm-{kind}-{element.get('id')}",
        lat=float(point["lat"]),
        lon=float(point["lon"]),
        type=hazard_type,
        severity=severity,
        source="osm",
        metadata={
            "provider": "osm",
            "osm_id": element.get("id"),
            "osm_type": kind,
            "name": tags.get("name"),
            "description": label,
            "end_date": end_date,
            "osm_version": element.get("version"),
            "tags": tags,
        },
        reported_at=_parse_timestamp(element.get("timestamp")),
    )


def parse_osm_hazards(data: dict, now: Optional[datetime] = None) -> list[HazardReport]:
    now = now or datetime.now(timezone.utc)
    reports = []
    for element in data.get("elements") or []:
        try:
            report = osm_element_to_report(element, now)
        except (TypeError, ValueError) as e:
            logger.warning(f"Error parsing OSM element: {e}")
            continue
        if report is not None:
            reports.append(report)
    return reports


class OverpassHazardProvider:
    """Road construction, closures and access barriers from OpenStreetMap.

    Answers are cached for OSM_HAZARD_CACHE_TTL_S per ~1km query location
    (coordinates rounded to two decimals).
    """

    def __init__(self, http: Optional[httpx.AsyncClient] = None,
                 endpoints: Optional[list[str]] = None,
                 cache_ttl_s: float = OSM_HAZARD_CACHE_TTL_S,
                 clock: Callable[[], float] = time.time,
                 now: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.http = http or client
        self.endpoints = list(endpoints or OVERPASS_ENDPOINTS)
        self._cache = TTLCache(maxsize=50, ttl=cache_ttl_s, timer=clock)
        self._cache_lock = threading.Lock()
        self._now = now

    @staticmethod
    def cache_key(lat: float, lon: float, radius_m: float) -> tuple:
        return round(lat, 2), round(lon, 2), round(radius_m)

    async def query_near(self, lat: float, lon: float, radius_m: float) -> list[HazardReport]:
        key = self.cache_key(lat, lon, radius_m)
        with self._cache_lock:
            cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"OSM hazard cache hit for {key}")
            return list(cached)

        query = build_overpass_hazard_query(lat, lon, radius_m)
        last_error: Optional[Exception] = None
        for endpoint in self.endpoints:
            try:
                r = await self.http.post(endpoint, data={"data": query})
                if r.status_code != 200:
                    raise ProviderError(f"HTTP {r.status_code}")
                reports = parse_osm_hazards(r.json(), self._now())
            except (httpx.HTTPError, ProviderError, ValueError) as e:
                logger.warning(f"Overpass endpoint {endpoint} failed: {e}")
                last_error = e
                continue
            with self._cache_lock:
                self._cache[key] = reports
            logger.info(f"Overpass ({endpoint}): {len(reports)} OSM hazards near ({lat:.4f}, {lon:.4f})")
            return list(reports)
        raise ProviderError(f"All Overpass endpoints failed: {last_error}")


# ─────────────────────────── Community Hazard Store ─────────────

class InMemoryHazardStore:
    """Community-reported hazards held in process memory."""

    def __init__(self, reports: Optional[list[HazardReport]] = None):
        self._reports: dict[str, HazardReport] = {}
        for report in reports or []:
            self.add(report)

    def add(self, report: HazardReport) -> HazardReport:
        if report.reported_at is None:
            report = report.model_copy(update={"reported_at": datetime.now(timezone.utc)})
        self._reports[report.id] = report
        return report

    def resolve(self, report_id: str) -> bool:
        report = self._reports.get(report_id)
        if report is None:
            return False
        self._reports[report_id] = report.model_copy(update={"status": "resolved"})
        return True

    async def query_near(self, lat: float, lon: float, radius_m: float) -> list[HazardReport]:
        return [
            r for r in self._reports.values()
            if r.status == "active" and haversine_m(lat, lon, r.lat, r.lon) <= radius_m
        ]
