"""
ER Wait Time Agent - FastAPI Application

This module provides the REST API for the ER wait time service. It exposes
endpoints for wait-time predictions, a lightweight hospital listing, the
clock-derived context, and health checks.

================================================================================
API DESIGN
================================================================================

1. STATELESS PREDICTIONS:
   - Each /predict call is independent
   - The profile snapshot is loaded once per process and never mutated
   - Live context is resolved once per request and shared by all candidates

2. DEGRADE, DON'T FAIL:
   - Weather, events and AI failures fall back silently to documented defaults
   - Only bad coordinates (400) and missing data artifacts (500) surface

3. ERROR BODIES:
   - Every error response is {"error": "<message>"}

================================================================================
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .ai_fallback import AIFallbackAdapter
from .config import UrgencyLevel, settings
from .context_provider import ContextProvider
from .data_store import ProfileSnapshot, load_snapshot
from .exceptions import DataUnavailableError, InputValidationError
from .prediction_engine import PredictionEngine
from .service import INVALID_COORDINATES_MESSAGE, WaitTimeService, validate_query
from .service import time_context as clock_context

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC MODELS (Response Schemas)
# =============================================================================

class HealthResponse(BaseModel):
    """Response schema for health checks."""

    status: str
    service: str
    version: str
    timestamp: datetime
    checks: Dict[str, Dict[str, Any]]


class TimeContextResponse(BaseModel):
    """Clock-derived buckets for operational checks."""

    currentDateTime: str
    hour: int
    month: int
    timeOfDay: str
    season: str


# =============================================================================
# APPLICATION STATE
# =============================================================================

class AppState:
    """
    Application state management.

    Holds the profile snapshot and the long-lived collaborators (weather
    client, AI adapter). The snapshot is loaded lazily under a lock; a failed
    load is not cached, so the next request tries again.
    """

    def __init__(self):
        self.service: Optional[WaitTimeService] = None
        self.snapshot_loaded_at: Optional[datetime] = None
        self.context_provider: Optional[ContextProvider] = None
        self.predictor: Optional[AIFallbackAdapter] = None
        self._lock = asyncio.Lock()

    async def get_service(self) -> WaitTimeService:
        """Get or build the wait time service."""
        async with self._lock:
            if self.service is None:
                await self._load()
            return self.service

    async def _load(self) -> None:
        loop = asyncio.get_running_loop()
        snapshot: ProfileSnapshot = await loop.run_in_executor(None, load_snapshot, settings)

        if self.context_provider is None:
            self.context_provider = ContextProvider(settings)
        if self.predictor is None:
            self.predictor = AIFallbackAdapter(PredictionEngine(), settings)

        self.service = WaitTimeService(
            snapshot,
            context_provider=self.context_provider,
            predictor=self.predictor,
            settings=settings,
        )
        self.snapshot_loaded_at = datetime.utcnow()
        logger.info(f"Wait time service ready with {len(snapshot.profiles)} hospitals")

    async def close(self) -> None:
        if self.context_provider is not None:
            await self.context_provider.aclose()
        if self.predictor is not None:
            await self.predictor.aclose()


# Global application state
app_state = AppState()


# =============================================================================
# LIFESPAN MANAGEMENT
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting {settings.service_name} v{settings.service_version}")

    try:
        await app_state.get_service()
    except DataUnavailableError as e:
        logger.warning(f"Could not load hospital data at startup: {e}")

    yield

    # Shutdown
    await app_state.close()
    logger.info("Shutting down ER wait time agent")


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(
    title="ER Wait Time Agent",
    description="""
    Emergency-room wait time estimation from historical profiles and live context.

    ## Features
    - **Nearest Hospitals**: Region-diverse selection around the caller
    - **Explainable Estimates**: Every adjustment listed with its impact
    - **Confidence Scores**: Heuristic reliability in [0.50, 0.95]
    - **Graceful Degradation**: Weather, events and AI fall back silently

    ## Usage
    1. GET `/predict?latitude=..&longitude=..&urgency=High`
    2. GET `/hospitals` for a quick historical estimate
    3. GET `/health` for service status
    """,
    version=settings.service_version,
    lifespan=lifespan,
)

# CORS middleware for cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse, tags=["Operations"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint for Kubernetes probes.

    Checks:
    - Hospital snapshot loaded
    - Weather provider configuration
    - AI availability
    """
    checks = {}
    overall_status = "healthy"

    snapshot_check: Dict[str, Any] = {
        "status": "ok",
        "loaded_at": (
            app_state.snapshot_loaded_at.isoformat() if app_state.snapshot_loaded_at else None
        ),
    }
    if app_state.service is None:
        snapshot_check["status"] = "degraded"
        snapshot_check["message"] = "Hospital data not loaded"
        overall_status = "degraded"
    else:
        snapshot_check["hospitals"] = len(app_state.service.snapshot.profiles)
        snapshot_check["coordinates"] = len(app_state.service.snapshot.coordinates)
    checks["snapshot"] = snapshot_check

    checks["weather"] = {
        "status": "ok",
        "provider": settings.weather_api_url,
        "cache_ttl_seconds": settings.weather_cache_ttl_seconds,
    }

    ai_check: Dict[str, Any] = {"status": "ok" if settings.ai_available else "disabled"}
    if settings.ai_available:
        ai_check["model"] = settings.groq_model
    elif settings.ai_enabled:
        ai_check["status"] = "warning"
        ai_check["message"] = "AI enabled but no API key configured"
    checks["ai"] = ai_check

    return HealthResponse(
        status=overall_status,
        service=settings.service_name,
        version=settings.service_version,
        timestamp=datetime.utcnow(),
        checks=checks,
    )


@app.get("/predict", tags=["Predictions"])
async def predict_wait_times(
    latitude: Optional[float] = Query(default=None, description="Caller latitude (degrees)"),
    longitude: Optional[float] = Query(default=None, description="Caller longitude (degrees)"),
    urgency: str = Query(default=UrgencyLevel.DEFAULT, description="Critical, High, Medium or Low"),
) -> Dict[str, Any]:
    """
    Predict current wait times at the nearest hospitals.

    Returns the region-diverse nearest set, each hospital with a prediction
    (wait time, confidence, factor breakdown, provenance), plus the
    contextual factors used for every prediction in the response.
    """
    request_id = str(uuid.uuid4())
    logger.info(f"Prediction request: {request_id} ({latitude}, {longitude}) urgency={urgency}")

    validate_query(latitude, longitude)
    service = await app_state.get_service()
    response = await service.predict_wait_times(latitude, longitude, urgency)

    logger.info(f"Prediction complete: {request_id} ({len(response['hospitals'])} hospitals)")
    return response


@app.get("/hospitals", tags=["Predictions"])
async def list_hospitals(
    latitude: Optional[float] = Query(default=None, description="Caller latitude (degrees)"),
    longitude: Optional[float] = Query(default=None, description="Caller longitude (degrees)"),
    urgency: str = Query(default=UrgencyLevel.DEFAULT, description="Critical, High, Medium or Low"),
) -> Dict[str, Any]:
    """
    Nearest hospitals with a historical estimate only (no live context).
    """
    validate_query(latitude, longitude)
    service = await app_state.get_service()
    return service.list_hospitals(latitude, longitude, urgency)


@app.get("/context/time", response_model=TimeContextResponse, tags=["Operations"])
async def time_context() -> TimeContextResponse:
    """
    Current time-of-day bucket and season as the engine sees them.
    """
    if app_state.service is not None:
        return TimeContextResponse(**app_state.service.time_context())
    return TimeContextResponse(**clock_context(datetime.now()))


# =============================================================================
# EXCEPTION HANDLERS
# =============================================================================

@app.exception_handler(InputValidationError)
async def input_validation_handler(request, exc):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": str(exc)},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request, exc):
    """Non-numeric coordinates fail FastAPI parsing; report them like missing ones."""
    logger.info(f"Rejected request parameters: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": INVALID_COORDINATES_MESSAGE},
    )


@app.exception_handler(DataUnavailableError)
async def data_unavailable_handler(request, exc):
    logger.error(f"Hospital data unavailable: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": str(exc)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Failed to predict wait times"},
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "agents.er_wait_time.api:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
