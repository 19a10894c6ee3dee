"""Streetwise Engine - FastAPI Routes"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from streetwise.config import (
    CRIME_DATA_DIR, HAZARD_RADIUS_M, LIGHTING_SEARCH_RADIUS_M, MAX_QUERY_RADIUS_M,
)
from streetwise.engine import SafetyEngine
from streetwise.models import (
    EngineStats, GridRebuildRequest, HazardDensityResponse, HazardReport,
    HazardReportRequest, LightingResponse, RouteComparison, RouteRequest,
    RouteSafetyResult, RouteScoreRequest, SafetyMetrics, SafetyRequest,
)

logger = logging.getLogger("streetwise.api")


def create_app(engine: Optional[SafetyEngine] = None,
               crime_data_dir: Optional[str] = CRIME_DATA_DIR) -> FastAPI:
    engine = engine or SafetyEngine()
    app = FastAPI(title="Streetwise Safety API", version="1.0.0")
    app.state.engine = engine

    _allowed_origins = [
        f"http://localhost:{p}" for p in range(3000, 3010)
    ] + [
        f"http://localhost:{p}" for p in range(5173, 5180)
    ] + [
        f"http://127.0.0.1:{p}" for p in range(3000, 3010)
    ] + [
        f"http://127.0.0.1:{p}" for p in range(5173, 5180)
    ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def _load_crime_data() -> bool:
        if not crime_data_dir or not Path(crime_data_dir).is_dir():
            return False
        await asyncio.to_thread(engine.load_crime_directory, Path(crime_data_dir))
        return True

    # ─────────────────────────── Startup Event ──────────────────

    @app.on_event("startup")
    async def startup_event():
        """Build the safety grid from the crime data directory, if present."""
        if await _load_crime_data():
            stats = engine.stats()
            logger.info(f"Safety grid ready: {stats.grid_cells} cells, {stats.records_folded} records")
        else:
            logger.warning(f"No crime data at {crime_data_dir}, every point resolves to defaults")

    # ─────────────────────────── Point Safety ───────────────────

    @app.post("/api/safety", response_model=SafetyMetrics)
    async def get_safety(req: SafetyRequest):
        if req.live:
            return await engine.resolve_live(req.lat, req.lng)
        return engine.resolve_safety(req.lat, req.lng)

    @app.get("/api/hazards/density", response_model=HazardDensityResponse)
    async def get_hazard_density(lat: float, lng: float,
                                 radius: float = Query(HAZARD_RADIUS_M, gt=0, le=MAX_QUERY_RADIUS_M)):
        density = await engine.hazard_density(lat, lng, radius)
        return HazardDensityResponse(hazardDensity=density, radiusMeters=radius)

    @app.get("/api/lighting", response_model=LightingResponse)
    async def get_lighting(lat: float, lng: float,
                           radius: float = Query(LIGHTING_SEARCH_RADIUS_M, gt=0, le=MAX_QUERY_RADIUS_M),
                           mode: Optional[str] = None):
        index = await engine.lighting_index(lat, lng, radius, mode)
        return LightingResponse(lightingIndex=index, radiusMeters=radius)

    # ─────────────────────────── Routes ─────────────────────────

    @app.post("/api/route/score", response_model=RouteSafetyResult)
    async def score_route(req: RouteScoreRequest):
        return engine.score_route(req.coordinates)

    @app.post("/api/route", response_model=RouteComparison)
    async def find_route(req: RouteRequest):
        comparison = await engine.find_routes(
            req.originLat, req.originLng, req.destLat, req.destLng, req.mode,
        )
        if comparison.fallback and comparison.fastest.route.distance_m == 0:
            raise HTTPException(status_code=404, detail="Could not find route")
        return comparison

    # ─────────────────────────── Community Hazards ──────────────

    @app.post("/api/hazards", response_model=HazardReport)
    async def submit_hazard(req: HazardReportRequest):
        add = getattr(engine.community, "add", None)
        if add is None:
            raise HTTPException(status_code=501, detail="Hazard store is read-only")
        report = add(HazardReport(
            id=str(uuid.uuid4())[:8],
            lat=req.lat,
            lon=req.lng,
            type=req.type,
            severity=req.severity,
            source="community",
            metadata={"description": req.description, "affectsTraffic": req.affectsTraffic},
        ))
        logger.info(f"Hazard reported: {report.type} ({report.severity}) at ({req.lat:.4f}, {req.lng:.4f})")
        return report

    @app.post("/api/hazards/{report_id}/resolve")
    async def resolve_hazard(report_id: str):
        resolve = getattr(engine.community, "resolve", None)
        if resolve is None or not resolve(report_id):
            raise HTTPException(status_code=404, detail="Hazard report not found")
        return {"id": report_id, "status": "resolved"}

    # ─────────────────────────── Grid ───────────────────────────

    @app.post("/api/grid/rebuild", response_model=EngineStats)
    async def rebuild_grid(req: GridRebuildRequest):
        if not crime_data_dir or not Path(crime_data_dir).is_dir():
            raise HTTPException(status_code=404, detail="Crime data directory not found")
        await asyncio.to_thread(
            engine.load_crime_directory,
            Path(crime_data_dir),
            factor_weights=req.factorWeights,
            severity_overrides=req.severityWeights,
        )
        return engine.stats()

    @app.get("/api/stats", response_model=EngineStats)
    async def get_stats():
        return engine.stats()

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "snapshot_version": engine.snapshot.version}

    return app


app = create_app()
