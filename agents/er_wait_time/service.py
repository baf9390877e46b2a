"""
ER Wait Time Agent - Request Orchestration

WaitTimeService ties the pieces together for one request:

    validate query ─► select diverse candidates ─► resolve context once
                   ─► predict every candidate concurrently ─► response dict

The snapshot, context provider and prediction adapter are injected, so the
service itself holds no mutable per-request state.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .ai_fallback import AIFallbackAdapter
from .config import Settings, UrgencyLevel, settings as default_settings
from .context_provider import ContextProvider, season_for_month, time_of_day_for_hour
from .data_store import ProfileSnapshot
from .exceptions import InputValidationError
from .geo_index import Candidate, rank_by_distance, select_diverse_candidates
from .models import ContextualSignal, GeoCoordinate
from .prediction_engine import base_wait_time, season_factor, time_of_day_factor

logger = logging.getLogger(__name__)

INVALID_COORDINATES_MESSAGE = "Invalid coordinates. Please provide latitude and longitude."


def validate_query(lat: Optional[float], lon: Optional[float]) -> GeoCoordinate:
    """
    Reject absent, non-finite, out-of-range or (0, 0) coordinates.

    (0, 0) is how clients historically signalled "no location"; it is never
    treated as a real point in the Gulf of Guinea.
    """
    if lat is None or lon is None:
        raise InputValidationError(INVALID_COORDINATES_MESSAGE)
    try:
        lat, lon = float(lat), float(lon)
    except (TypeError, ValueError) as e:
        raise InputValidationError(INVALID_COORDINATES_MESSAGE) from e
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InputValidationError(INVALID_COORDINATES_MESSAGE)
    if lat == 0 and lon == 0:
        raise InputValidationError(INVALID_COORDINATES_MESSAGE)
    if not (-90 <= lat <= 90 and -180 <= lon <= 180):
        raise InputValidationError(INVALID_COORDINATES_MESSAGE)
    return GeoCoordinate(lat=lat, lon=lon)


def time_context(now: datetime) -> Dict[str, Any]:
    """Clock-derived buckets for a wall-clock time; month is 0-indexed."""
    return {
        "currentDateTime": now.isoformat(),
        "hour": now.hour,
        "month": now.month - 1,
        "timeOfDay": time_of_day_for_hour(now.hour),
        "season": season_for_month(now.month - 1),
    }


def contextual_factors(signal: ContextualSignal, urgency: str) -> Dict[str, Any]:
    return {
        "trafficCondition": signal.traffic,
        "weatherCondition": signal.weather,
        "localEvents": list(signal.events),
        "urgencyLevel": urgency,
        "timeOfDay": signal.time_of_day,
        "season": signal.season,
        "dayOfWeek": signal.day_of_week,
        "isWeekend": signal.is_weekend,
        "sources": {name: source.value for name, source in signal.sources.items()},
    }


def _hospital_entry(candidate: Candidate) -> Dict[str, Any]:
    profile = candidate.profile
    coordinate = candidate.coordinate
    return {
        "id": profile.id,
        "name": profile.name,
        "region": profile.region,
        "distanceKm": round(candidate.distance_km, 1),
        "facilitySize": profile.facility_size,
        "nurseToPatientRatio": profile.nurse_to_patient_ratio,
        "specialistAvailability": profile.specialist_availability,
        "patientSatisfaction": profile.patient_satisfaction,
        "visitCount": profile.visit_count,
        "historicalWaitTime": profile.overall_wait,
        "coordinates": (
            {"lat": coordinate.lat, "lng": coordinate.lon} if coordinate is not None else None
        ),
    }


class WaitTimeService:
    """
    Serves the /predict and /hospitals operations over a loaded snapshot.

    Example:
        >>> service = WaitTimeService(snapshot, ContextProvider(), AIFallbackAdapter())
        >>> response = await service.predict_wait_times(32.7, -117.1, "High")
        >>> [h["prediction"]["predictedWaitTime"] for h in response["hospitals"]]
    """

    def __init__(
        self,
        snapshot: ProfileSnapshot,
        context_provider: Optional[ContextProvider] = None,
        predictor: Optional[AIFallbackAdapter] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.snapshot = snapshot
        self.settings = settings or default_settings
        self.context_provider = context_provider or ContextProvider(self.settings)
        self.predictor = predictor or AIFallbackAdapter(settings=self.settings)
        self.clock = clock

    def select_candidates(self, query: GeoCoordinate) -> List[Candidate]:
        return select_diverse_candidates(
            self.snapshot.profiles,
            query,
            self.snapshot.coordinates,
            per_region_cap=self.settings.per_region_cap,
            sentinel_km=self.settings.sentinel_distance_km,
        )

    async def predict_wait_times(
        self,
        lat: Optional[float],
        lon: Optional[float],
        urgency: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Ranked wait-time predictions for the hospitals nearest the caller.

        Raises:
            InputValidationError: the coordinates are unusable.
        """
        query = validate_query(lat, lon)
        urgency = urgency or UrgencyLevel.DEFAULT
        now = self.clock()

        candidates = self.select_candidates(query)
        signal = await self.context_provider.resolve(query, now)

        results = await asyncio.gather(*(
            self.predictor.predict(c.profile, urgency, signal, now, c.distance_km)
            for c in candidates
        ))

        hospitals = []
        for candidate, result in zip(candidates, results):
            entry = _hospital_entry(candidate)
            entry["prediction"] = result.to_dict()
            hospitals.append(entry)

        logger.info(
            f"Predicted wait times for {len(hospitals)} hospitals near "
            f"({query.lat:.4f}, {query.lon:.4f}), urgency={urgency}"
        )
        return {
            "hospitals": hospitals,
            "contextualFactors": contextual_factors(signal, urgency),
            "generatedAt": now.isoformat(),
        }

    def list_hospitals(
        self,
        lat: Optional[float],
        lon: Optional[float],
        urgency: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Nearest hospitals with a historical estimate, no live context.

        estimatedWaitTime = base(urgency) x time-of-day x season, rounded to
        whole minutes.
        """
        query = validate_query(lat, lon)
        urgency = urgency or UrgencyLevel.DEFAULT
        now = self.clock()
        bucket = time_of_day_for_hour(now.hour)
        season = season_for_month(now.month - 1)

        ranked = rank_by_distance(
            self.snapshot.profiles,
            query,
            self.snapshot.coordinates,
            sentinel_km=self.settings.sentinel_distance_km,
        )[: self.settings.hospital_list_limit]

        hospitals = []
        for candidate in ranked:
            profile = candidate.profile
            estimate = (
                base_wait_time(profile, urgency)
                * time_of_day_factor(profile, bucket)
                * season_factor(profile, season)
            )
            entry = _hospital_entry(candidate)
            entry["estimatedWaitTime"] = int(math.floor(estimate + 0.5))
            hospitals.append(entry)

        return {
            "hospitals": hospitals,
            "metadata": {"timeOfDay": bucket, "season": season, "urgencyLevel": urgency},
        }

    def time_context(self) -> Dict[str, Any]:
        return time_context(self.clock())
