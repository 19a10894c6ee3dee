"""Streetwise Engine - Configuration & Constants"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env from project root (one level up from streetwise/)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


# ── API Keys & Endpoints ──
TOMTOM_API_KEY = os.environ.get("TOMTOM_API_KEY", "")
TOMTOM_INCIDENTS_URL = "https://api.tomtom.com/traffic/services/5/incidentDetails"
OSRM_BASE_URL = os.environ.get("OSRM_BASE_URL", "https://router.project-osrm.org")
OVERPASS_ENDPOINTS = [
    e.strip() for e in os.environ.get(
        "OVERPASS_ENDPOINTS",
        "https://overpass-api.de/api/interpreter,"
        "https://overpass.kumi.systems/api/interpreter,"
        "https://overpass.openstreetmap.ru/api/interpreter",
    ).split(",") if e.strip()
]

# ── Grid ──
GRID_RESOLUTION_DEG = _env_float("GRID_RESOLUTION_DEG", 0.01)  # ~1km cells
MAX_CELL_RINGS = 25             # past this, radius lookups scan the feature store

# ── Timeouts (seconds) ──
PROVIDER_TIMEOUT_S = _env_float("PROVIDER_TIMEOUT_S", 10.0)
LIGHTING_REFRESH_TIMEOUT_S = _env_float("LIGHTING_REFRESH_TIMEOUT_S", 30.0)

# ── Lighting cache ──
LIGHTING_CACHE_TTL_DAYS = _env_int("LIGHTING_CACHE_TTL_DAYS", 30)
LIGHTING_FETCH_RADIUS_KM = _env_float("LIGHTING_FETCH_RADIUS_KM", 2.0)
LIGHTING_SEARCH_RADIUS_M = 100.0
MAX_QUERY_RADIUS_M = _env_float("MAX_QUERY_RADIUS_M", 5000.0)
DAYLIGHT_LIGHTING_INDEX = 0.1   # lighting is irrelevant in daylight
DARK_LIGHTING_INDEX = 0.7       # no lights found within the search radius
DAYTIME_HOURS = (6, 20)         # [06:00, 20:00) local

# ── Hazards ──
HAZARD_RADIUS_M = _env_float("HAZARD_RADIUS_M", 500.0)
HAZARD_BASELINE = 0.1           # nothing reported nearby
HAZARD_SATURATION = 3.0         # ~3 high-severity hazards in range = 1.0
COLLISION_BASELINE = 0.1
COLLISION_FALLBACK = 0.2
COLLISION_SATURATION = 2.0
COLLISION_ICON_CATEGORIES = (1, 6, 14)  # TomTom accident, jam, broken down vehicle
OSM_HAZARDS_ENABLED = os.environ.get("OSM_HAZARDS_ENABLED", "true").lower() in ("1", "true", "yes")
OSM_HAZARD_DEDUP_M = 50.0       # OSM hazard this close to a community report is a duplicate
OSM_HAZARD_CACHE_TTL_S = 15 * 60
OSM_HAZARD_MAX_AGE_DAYS = 730   # construction started earlier is likely finished

# ── Routes ──
ROUTE_SAMPLE_INTERVAL_M = _env_float("ROUTE_SAMPLE_INTERVAL_M", 100.0)
NEUTRAL_ROUTE_SCORE = 0.5
TRAVEL_SPEEDS_KMH = {"walking": 5.0, "cycling": 15.0, "driving": 30.0}

# ── Crime data ──
CRIME_DATA_DIR = os.environ.get(
    "CRIME_DATA_DIR", str(Path(__file__).resolve().parent.parent / "crimedata")
)
CRIME_DATA_MONTHS = _env_int("CRIME_DATA_MONTHS", 3)
CRIME_FILE_MATCH = os.environ.get("CRIME_FILE_MATCH", "metropolitan")

# Greater London study area (lat_min, lat_max, lon_min, lon_max)
STUDY_AREA = (51.3, 51.7, -0.5, 0.3)
STUDY_AREA_CENTER = (51.5074, -0.1278)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

# Factor weights for the composite safety score (need not sum to 1)
DEFAULT_FACTOR_WEIGHTS = {
    "crime": 0.4,
    "collision": 0.25,
    "lighting": 0.2,
    "hazard": 0.15,
}

# Hazard severity → impact weight
HAZARD_SEVERITY_WEIGHTS = {
    "low": 0.5,
    "medium": 1.2,
    "high": 2.5,
    "critical": 3.0,
}

# Collision incidents use a flatter scale than general hazards
COLLISION_SEVERITY_WEIGHTS = {
    "low": 0.5,
    "medium": 1.0,
    "high": 2.0,
    "critical": 3.0,
}

# police.uk crime category → severity (0-1)
CRIME_SEVERITY_WEIGHTS = {
    "Violence and sexual offences": 1.0,
    "Robbery": 0.9,
    "Burglary": 0.8,
    "Vehicle crime": 0.6,
    "Drugs": 0.7,
    "Possession of weapons": 0.9,
    "Public order": 0.5,
    "Theft from the person": 0.7,
    "Other theft": 0.5,
    "Criminal damage and arson": 0.6,
    "Shoplifting": 0.3,
    "Bicycle theft": 0.4,
    "Other crime": 0.5,
    "Anti-social behaviour": 0.3,
}
DEFAULT_CRIME_SEVERITY = 0.5

# Lit status → lighting score (lower = better lit)
LIT_STATUS_SCORES = {
    "yes": 0.1,
    "automatic": 0.15,
    "limited": 0.5,
    "no": 0.8,
    "unknown": 0.3,
}

# Light source → multiplier on the lit-status score
LIGHT_SOURCE_FACTORS = {
    "LED": 0.9,
    "metal_halide": 0.95,
    "gas_lantern": 1.2,
}
