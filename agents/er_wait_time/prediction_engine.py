"""
ER Wait Time Agent - Multiplicative Factor Model

This module implements the PredictionEngine, the system of record for wait
time estimates. It is a pure function of (profile, urgency, signal,
wall-clock, distance): no hidden state, no I/O.

================================================================================
THE FACTOR MODEL
================================================================================

    raw = baseWaitTime × timeOfDay × season × dayOfWeek × traffic
                       × weather × staffing × peakHours × events

    predictedWaitTime = round_to_5( clamp(raw, 5, 240) )

BASE:
    The profile's historical average for the caller's urgency level; the
    overall average when the level is unknown.

PROFILE-RELATIVE FACTORS:
    timeOfDay = byTimeOfDay[bucket] / overall
    season    = bySeason[season]    / overall
    A facility with no history at all (overall = 0) gets neutral factors.
    An empty bucket with a non-zero overall yields 0, which drags the
    estimate down to the 5-minute floor; this is the historical behaviour
    and is preserved.

FIXED MULTIPLIERS:
    ┌─────────────┬──────────────────────────────────────────────────────┐
    │ day of week │ 1.22 weekend; 1.12 Monday; 1.08 Friday; else 1.0     │
    │ traffic     │ 1.18 Heavy; 1.08 Moderate; 1.0 Light                 │
    │ weather     │ 1.28 Stormy; 1.25 Snowy; 1.12 Rainy; 1.10 Foggy      │
    │ staffing    │ 1.25 ratio<0.20; 1.12 <0.25; 0.92 >0.35; else 1.0    │
    │ peak hours  │ 1.15 for hours 7-10 and 17-20                        │
    │ events      │ 1.30 if any local event                              │
    └─────────────┴──────────────────────────────────────────────────────┘

CONFIDENCE (heuristic, not a probability):
    0.90 − min(0.10, distance/200) − 0.10 if visitCount < 10
         − 0.05 if hour < 6 or hour > 22, clamped to [0.50, 0.95]

Every factor that is not 1.0 is rendered into an explanation string.

================================================================================
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import List

from .config import UrgencyLevel
from .models import (
    ContextualSignal,
    HospitalProfile,
    PredictionFactors,
    PredictionResult,
    Provenance,
)

logger = logging.getLogger(__name__)

MIN_WAIT_MINUTES = 5
MAX_WAIT_MINUTES = 240
WAIT_GRANULARITY = 5

MIN_CONFIDENCE = 0.50
MAX_CONFIDENCE = 0.95
BASE_CONFIDENCE = 0.90

TRAFFIC_FACTORS = {"Heavy": 1.18, "Moderate": 1.08}
WEATHER_FACTORS = {"Stormy": 1.28, "Snowy": 1.25, "Rainy": 1.12, "Foggy": 1.10}
WEEKEND_FACTOR = 1.22
WEEKDAY_FACTORS = {"Monday": 1.12, "Friday": 1.08}
PEAK_HOURS_FACTOR = 1.15
EVENTS_FACTOR = 1.30


# =============================================================================
# FACTOR RULES
# =============================================================================

def base_wait_time(profile: HospitalProfile, urgency: str) -> float:
    """Urgency-specific average, or the overall average for unknown levels."""
    waits = profile.average_wait_times
    if UrgencyLevel.is_known(urgency):
        return waits.by_urgency[urgency]
    return waits.overall


def time_of_day_factor(profile: HospitalProfile, bucket: str) -> float:
    overall = profile.average_wait_times.overall
    if overall <= 0:
        return 1.0
    return profile.average_wait_times.by_time_of_day.get(bucket, overall) / overall


def season_factor(profile: HospitalProfile, season: str) -> float:
    overall = profile.average_wait_times.overall
    if overall <= 0:
        return 1.0
    return profile.average_wait_times.by_season.get(season, overall) / overall


def day_of_week_factor(day_of_week: str, is_weekend: bool) -> float:
    if is_weekend:
        return WEEKEND_FACTOR
    return WEEKDAY_FACTORS.get(day_of_week, 1.0)


def traffic_factor(traffic: str) -> float:
    return TRAFFIC_FACTORS.get(traffic, 1.0)


def weather_factor(weather: str) -> float:
    return WEATHER_FACTORS.get(weather, 1.0)


def staffing_factor(nurse_to_patient_ratio: float) -> float:
    if nurse_to_patient_ratio < 0.20:
        return 1.25
    if nurse_to_patient_ratio < 0.25:
        return 1.12
    if nurse_to_patient_ratio > 0.35:
        return 0.92
    return 1.0


def is_peak_hour(hour: int) -> bool:
    return 7 <= hour <= 10 or 17 <= hour <= 20


def peak_hours_factor(hour: int) -> float:
    return PEAK_HOURS_FACTOR if is_peak_hour(hour) else 1.0


def events_factor(events) -> float:
    return EVENTS_FACTOR if events else 1.0


# =============================================================================
# BOUNDS
# =============================================================================

def finalize_wait_time(raw: float) -> int:
    """Clamp to [5, 240] then round half-up to the nearest 5 minutes."""
    if not math.isfinite(raw):
        raw = MAX_WAIT_MINUTES if raw > 0 else MIN_WAIT_MINUTES
    clamped = max(MIN_WAIT_MINUTES, min(MAX_WAIT_MINUTES, raw))
    return int(math.floor(clamped / WAIT_GRANULARITY + 0.5)) * WAIT_GRANULARITY


def clamp_confidence(score: float) -> float:
    if not math.isfinite(score):
        return MIN_CONFIDENCE
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, score))


def confidence_score(visit_count: int, distance_km: float, hour: int) -> float:
    score = BASE_CONFIDENCE
    score -= min(0.10, max(0.0, distance_km) / 200)
    if visit_count < 10:
        score -= 0.10
    if hour < 6 or hour > 22:
        score -= 0.05
    return clamp_confidence(score)


# =============================================================================
# EXPLANATIONS
# =============================================================================

def _pct(factor: float) -> str:
    return f"{(factor - 1) * 100:+.0f}%"


def explain_factors(factors: PredictionFactors, signal: ContextualSignal) -> List[str]:
    """One human-readable line per factor that moved the estimate."""
    lines = []
    if factors.time_of_day_factor != 1.0:
        lines.append(f"{signal.time_of_day} pattern ({_pct(factors.time_of_day_factor)})")
    if factors.season_factor != 1.0:
        lines.append(f"{signal.season} season ({_pct(factors.season_factor)})")
    if factors.day_of_week_factor != 1.0:
        if signal.is_weekend:
            lines.append(f"Weekend volume ({_pct(factors.day_of_week_factor)})")
        else:
            lines.append(f"{signal.day_of_week} volume ({_pct(factors.day_of_week_factor)})")
    if factors.traffic_factor != 1.0:
        lines.append(f"{signal.traffic} traffic ({_pct(factors.traffic_factor)})")
    if factors.weather_factor != 1.0:
        lines.append(f"{signal.weather} weather ({_pct(factors.weather_factor)})")
    if factors.events_factor != 1.0:
        lines.append(
            f"Local events (simulated): {', '.join(signal.events)} ({_pct(factors.events_factor)})"
        )
    if factors.staffing_factor != 1.0:
        lines.append(f"Staffing level ({_pct(factors.staffing_factor)})")
    if factors.peak_hours_factor != 1.0:
        lines.append(f"Peak hours ({_pct(factors.peak_hours_factor)})")
    return lines


# =============================================================================
# ENGINE
# =============================================================================

class PredictionEngine:
    """
    Deterministic wait-time estimator.

    Stateless; one instance can serve every request concurrently.

    Example:
        >>> engine = PredictionEngine()
        >>> result = engine.predict(profile, "Critical", signal, now, distance_km=4.2)
        >>> result.predicted_wait_time % 5
        0
    """

    def compute_factors(
        self,
        profile: HospitalProfile,
        urgency: str,
        signal: ContextualSignal,
        now: datetime,
    ) -> PredictionFactors:
        factors = PredictionFactors(
            base_wait_time=base_wait_time(profile, urgency),
            time_of_day_factor=time_of_day_factor(profile, signal.time_of_day),
            season_factor=season_factor(profile, signal.season),
            day_of_week_factor=day_of_week_factor(signal.day_of_week, signal.is_weekend),
            traffic_factor=traffic_factor(signal.traffic),
            weather_factor=weather_factor(signal.weather),
            staffing_factor=staffing_factor(profile.nurse_to_patient_ratio),
            peak_hours_factor=peak_hours_factor(now.hour),
            events_factor=events_factor(signal.events),
        )
        factors.other_factors = explain_factors(factors, signal)
        return factors

    def predict(
        self,
        profile: HospitalProfile,
        urgency: str,
        signal: ContextualSignal,
        now: datetime,
        distance_km: float = 0.0,
    ) -> PredictionResult:
        if not UrgencyLevel.is_known(urgency):
            logger.debug(f"Unknown urgency '{urgency}' for {profile.id}; using overall average")

        factors = self.compute_factors(profile, urgency, signal, now)
        raw = factors.base_wait_time * factors.product()

        return PredictionResult(
            hospital_id=profile.id,
            predicted_wait_time=finalize_wait_time(raw),
            confidence_score=confidence_score(profile.visit_count, distance_km, now.hour),
            factors=factors,
            provenance=Provenance.FORMULA,
        )
