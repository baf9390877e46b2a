"""
ER Wait Time Agent - Configuration Module

This module centralizes all environment-based configuration for the ER wait
time microservice. It follows the 12-factor app methodology by externalizing
configuration through environment variables.

================================================================================
SIGNAL VOCABULARY
================================================================================

Historical profiles and live context share one vocabulary of buckets:

    Urgency        Critical | High | Medium | Low
    Time of day    Early Morning (5-9) | Late Morning (9-12) | Afternoon (12-17)
                   Evening (17-21) | Night (otherwise)
    Season         Spring (Mar-May) | Summer (Jun-Aug) | Fall (Sep-Nov)
                   Winter (otherwise)
    Traffic        Light | Moderate | Heavy
    Weather        Clear | Cloudy | Foggy | Rainy | Snowy | Stormy

The visit dataset, the feature-engineering pipeline and the prediction engine
must all agree on these labels, so they live here rather than in the modules
that use them.

================================================================================
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List, Optional
from functools import lru_cache
from pathlib import Path


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Pydantic Settings automatically reads from environment variables,
    with support for .env files and type validation.
    """

    # ==========================================================================
    # SERVICE IDENTIFICATION
    # ==========================================================================
    service_name: str = Field(
        default="er-wait-time-agent",
        description="Unique identifier for this microservice"
    )
    service_version: str = Field(
        default="1.0.0",
        description="Semantic version of this agent"
    )
    environment: str = Field(
        default="development",
        description="Runtime environment (development, staging, production)"
    )

    # ==========================================================================
    # HISTORICAL DATA
    # ==========================================================================
    # Profiles are produced offline by feature_engineering.py and read once
    # per process lifetime.
    data_dir: Path = Field(
        default=Path("./data"),
        description="Directory holding profile, coordinate and visit artifacts"
    )
    profile_files: List[str] = Field(
        default=["hospital-features.json", "real-hospital-features.json"],
        description="Profile files concatenated into the serving snapshot"
    )
    coordinates_file: str = Field(
        default="hospital-coordinates-real.json",
        description="Hospital id -> {lat, lon} lookup table"
    )
    visits_csv_path: Path = Field(
        default=Path("./ER Wait Time Dataset.csv"),
        description="Raw per-visit CSV consumed by the feature pipeline"
    )
    processed_visits_file: str = Field(
        default="processed-visits.json",
        description="Validated visit records written next to the profiles"
    )
    database_url: Optional[str] = Field(
        default=None,
        description="Optional SQL source for raw visit records"
    )
    db_pool_size: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Database connection pool size"
    )
    db_pool_timeout: int = Field(
        default=30,
        description="Timeout in seconds for acquiring a connection from pool"
    )
    ingest_read_retries: int = Field(
        default=2,
        ge=0,
        le=5,
        description="Extra attempts for a failed file read (never for parse errors)"
    )
    ingest_retry_delay_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Pause between file-read attempts"
    )

    # ==========================================================================
    # GEOGRAPHIC SELECTION
    # ==========================================================================
    per_region_cap: int = Field(
        default=3,
        ge=1,
        description="Maximum hospitals returned per region key"
    )
    sentinel_distance_km: float = Field(
        default=9999.0,
        description="Distance assigned to hospitals without coordinates"
    )
    hospital_list_limit: int = Field(
        default=10,
        ge=1,
        description="Number of hospitals returned by the /hospitals listing"
    )

    # ==========================================================================
    # WEATHER PROVIDER
    # ==========================================================================
    # Open-Meteo needs no API key; WMO weather codes are mapped locally.
    weather_api_url: str = Field(
        default="https://api.open-meteo.com/v1/forecast",
        description="Weather provider endpoint (lat/lon -> weather code)"
    )
    weather_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Single-attempt timeout for the weather call"
    )
    weather_cache_ttl_seconds: int = Field(
        default=1800,
        ge=0,
        description="How long an observed condition is reused per coordinate"
    )
    weather_cache_precision: int = Field(
        default=2,
        ge=0,
        le=6,
        description="Decimal places used to key the weather cache"
    )

    # ==========================================================================
    # LOCAL EVENTS (non-authoritative)
    # ==========================================================================
    events_probability: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Chance that a request reports simulated local events"
    )
    events_max: int = Field(
        default=2,
        ge=0,
        le=5,
        description="Maximum number of simulated events"
    )

    # ==========================================================================
    # GENERATIVE PREDICTION (optional)
    # ==========================================================================
    ai_enabled: bool = Field(
        default=False,
        description="Route predictions through the Groq model first"
    )
    groq_api_key: Optional[str] = Field(
        default=None,
        description="Groq API key (GROQ_API_KEY)"
    )
    groq_model: str = Field(
        default="llama-3.3-70b-versatile",
        description="Groq chat model used for predictions"
    )
    ai_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Single-attempt timeout for the AI call"
    )
    ai_temperature: float = Field(
        default=0.3,
        ge=0.0,
        le=2.0,
        description="Sampling temperature (low for stable predictions)"
    )
    ai_max_tokens: int = Field(
        default=1024,
        ge=64,
        description="Completion token budget"
    )

    # ==========================================================================
    # API CONFIGURATION
    # ==========================================================================
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8006,
        description="API server port"
    )
    api_workers: int = Field(
        default=1,
        description="Number of Uvicorn workers"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # ==========================================================================
    # LOGGING CONFIGURATION
    # ==========================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_format: str = Field(
        default="text",
        description="Log format (json, text)"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    @property
    def ai_available(self) -> bool:
        """AI predictions are attempted only when enabled and keyed."""
        return self.ai_enabled and bool(self.groq_api_key)

    def profile_paths(self) -> List[Path]:
        return [self.data_dir / name for name in self.profile_files]

    def coordinates_path(self) -> Path:
        return self.data_dir / self.coordinates_file


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached Settings instance.

    Using lru_cache ensures we only parse environment variables once,
    improving performance and consistency across the application.
    """
    return Settings()


# ==========================================================================
# CONVENIENCE EXPORTS
# ==========================================================================
settings = get_settings()


# ==========================================================================
# VOCABULARY CONSTANTS
# ==========================================================================
class UrgencyLevel:
    """
    Caller-supplied triage categories.

    Profiles keep one historical average per level; an unrecognized level
    falls back to the overall average instead of failing.
    """
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    ALL = (CRITICAL, HIGH, MEDIUM, LOW)
    DEFAULT = MEDIUM

    @classmethod
    def is_known(cls, level: str) -> bool:
        return level in cls.ALL


TIME_OF_DAY_BUCKETS = ("Early Morning", "Late Morning", "Afternoon", "Evening", "Night")

SEASONS = ("Winter", "Spring", "Summer", "Fall")

TRAFFIC_CONDITIONS = ("Light", "Moderate", "Heavy")

WEATHER_CONDITIONS = ("Clear", "Cloudy", "Foggy", "Rainy", "Snowy", "Stormy")

# Event names used by the simulated local-events source
SIMULATED_EVENT_NAMES = ("Sports Game", "Concert", "Festival", "Marathon", "Convention")
