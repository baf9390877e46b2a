"""
ER Wait Time Agent

A microservice for estimating emergency-room wait times at nearby hospitals.

This agent provides:
- Offline feature engineering from raw visit records to hospital profiles
- Region-diverse nearest-hospital selection
- Live context (time, season, traffic, weather, local events) with fallbacks
- A deterministic multiplicative factor model with explanations
- Optional Groq-backed predictions that fall back to the factor model
- REST API for predictions and hospital listings

Components:
-----------
- config: Environment-based configuration and signal vocabulary
- models: Visit, profile, signal and prediction types
- feature_engineering: Visit loading, profile aggregation, CLI
- data_store: Serving-time profile/coordinate snapshot
- geo_index: Haversine distance and diverse candidate selection
- context_provider: ContextualSignal resolution
- prediction_engine: PredictionEngine factor model
- ai_fallback: AIFallbackAdapter
- service: Request orchestration
- api: FastAPI application

Usage:
------
    # Build profiles from the visit CSV
    python -m agents.er_wait_time.feature_engineering --csv "ER Wait Time Dataset.csv"

    # As API server
    python -m uvicorn agents.er_wait_time.api:app --host 0.0.0.0 --port 8006

Author: Hospital AI Platform Team
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "Hospital AI Platform Team"

from .config import settings
from .prediction_engine import PredictionEngine

__all__ = [
    "settings",
    "PredictionEngine",
    "__version__",
]
