"""
Surveillance Fusion API

FastAPI application exposing the fusion and outbreak-detection engine.

Endpoints:
- POST /aggregate: Fetch, fuse and store surveillance data
- POST /fuse: Fuse cells with an explicit fusion method
- POST /detect-outbreaks: Scan stored series for outbreaks
- GET /series/{region}/{disease}: Stored fused series
- GET /alerts: Open outbreak alerts
- GET /health: Health check
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from .config import EngineConfig, configure_logging
from .exceptions import InvalidMethodError
from .pipeline import SurveillanceEngine

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Surveillance Fusion API",
    description="Multi-source health surveillance fusion and outbreak detection",
    version="1.0.0",
)

# Engine shared by all requests
ENGINE_CACHE: Dict[str, SurveillanceEngine] = {}


class AggregateRequest(BaseModel):
    """Request body for /aggregate"""

    sources: Optional[List[str]] = Field(None, description="Source ids (default: routed by disease)")
    regions: List[str] = Field(..., min_length=1, description="Region codes")
    diseases: List[str] = Field(..., min_length=1, description="Disease codes (any source alias)")
    timeframe: str = Field(..., description="Bucket or inclusive range, e.g. 2025-W01/2025-W04")
    fusion_method: Optional[str] = Field(None, description="Fusion method (default from config)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "sources": ["who", "cdc", "ecdc"],
                "regions": ["US-CA"],
                "diseases": ["influenza"],
                "timeframe": "2025-W01/2025-W04",
                "fusion_method": "bayesian",
            }
        }
    )


class FuseRequest(BaseModel):
    """Request body for /fuse"""

    sources: Optional[List[str]] = None
    regions: List[str] = Field(..., min_length=1)
    diseases: List[str] = Field(..., min_length=1)
    timeframe: str
    fusion_method: str = Field("bayesian", description="weighted_average, bayesian, kalman_filter, dempster_shafer or ensemble")
    confidence_threshold: float = Field(0.6, ge=0, le=1, description="Minimum source quality to be fused")


class DetectRequest(BaseModel):
    """Request body for /detect-outbreaks"""

    detection_methods: Optional[List[str]] = Field(None, description="cusum, ewma, spatial_scan, seasonal")
    sensitivity: str = Field("medium", pattern="^(low|medium|high)$")
    temporal_window: int = Field(1, ge=1, description="Number of trailing buckets to evaluate")
    regions: Optional[List[str]] = None
    diseases: Optional[List[str]] = None


def get_engine() -> SurveillanceEngine:
    """Return the shared engine, building it from the environment on first use"""
    if "engine" not in ENGINE_CACHE:
        config = EngineConfig.from_env()
        ENGINE_CACHE["engine"] = SurveillanceEngine(config)
        logger.info("Surveillance engine initialised")
    return ENGINE_CACHE["engine"]


def set_engine(engine: SurveillanceEngine):
    """Install an engine (adapters, sinks) built by the host application"""
    ENGINE_CACHE["engine"] = engine


def _run(operation, **kwargs) -> Dict:
    try:
        return operation(**kwargs)
    except (InvalidMethodError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error in {operation.__name__}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@app.on_event("startup")
async def startup_event():
    """Configure logging and build the engine"""
    configure_logging(get_engine().config)
    logger.info("Starting Surveillance Fusion API...")


@app.on_event("shutdown")
async def shutdown_event():
    engine = ENGINE_CACHE.pop("engine", None)
    if engine is not None:
        engine.close()


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Surveillance Fusion API",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "aggregate": "/aggregate",
            "fuse": "/fuse",
            "detect_outbreaks": "/detect-outbreaks",
            "health": "/health",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    engine = get_engine()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sources_registered": sorted(engine.adapters),
        "series_tracked": len(engine.store.series_keys()),
        "open_alerts": len(engine.aggregator.open_alerts()),
    }


@app.post("/aggregate")
def aggregate(request: AggregateRequest) -> Dict:
    """Fetch, fuse and store surveillance data"""
    logger.info(f"Aggregate request: {request.regions} x {request.diseases} ({request.timeframe})")
    return _run(
        get_engine().aggregate,
        sources=request.sources,
        regions=request.regions,
        diseases=request.diseases,
        timeframe=request.timeframe,
        fusion_method=request.fusion_method,
    )


@app.post("/fuse")
def fuse(request: FuseRequest) -> Dict:
    """Fuse cells with an explicit method"""
    return _run(
        get_engine().fuse,
        sources=request.sources,
        fusion_method=request.fusion_method,
        confidence_threshold=request.confidence_threshold,
        regions=request.regions,
        diseases=request.diseases,
        timeframe=request.timeframe,
    )


@app.post("/detect-outbreaks")
def detect_outbreaks(request: DetectRequest) -> Dict:
    """Scan stored series for outbreaks"""
    return _run(
        get_engine().detect_outbreaks,
        detection_methods=request.detection_methods,
        sensitivity=request.sensitivity,
        temporal_window=request.temporal_window,
        regions=request.regions,
        diseases=request.diseases,
    )


@app.get("/series/{region}/{disease}")
def get_series(region: str, disease: str) -> Dict:
    """Stored fused series for a region and disease"""
    estimates = get_engine().series(region, disease)
    if not estimates:
        raise HTTPException(status_code=404, detail=f"No data for {region}/{disease}")
    return {"region": region, "disease": estimates[0].disease, "series": [e.to_dict() for e in estimates]}


@app.get("/alerts")
def get_alerts() -> Dict:
    """Open outbreak alerts"""
    alerts = get_engine().aggregator.open_alerts()
    return {"count": len(alerts), "alerts": [a.to_dict() for a in alerts]}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
