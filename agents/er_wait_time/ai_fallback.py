"""
ER Wait Time Agent - Generative Prediction Path

Optional enhancement over the factor model: the same inputs are encoded into
a structured prompt, a Groq-hosted model is asked for a same-shaped result,
and the reply is validated against the PredictionResult schema.

================================================================================
FAILURE POLICY
================================================================================

The factor model (prediction_engine.py) is the system of record. This path
is best-effort and must be invisible when it fails:

    network error / timeout / SDK error  ──┐
    empty or non-JSON reply              ──┼──► PredictionEngine.predict()
    schema mismatch                      ──┘      provenance = "formula"

    valid reply ──► normalised to the output contract, provenance = "ai"

Single attempt, bounded timeout, no retry. Parsing returns a ParseOutcome
instead of raising, so no parse exception can reach the caller.

================================================================================
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from groq import AsyncGroq
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .config import Settings, settings as default_settings
from .exceptions import ExternalServiceError
from .models import (
    ContextualSignal,
    HospitalProfile,
    PredictionFactors,
    PredictionResult,
    Provenance,
)
from .prediction_engine import (
    PredictionEngine,
    base_wait_time,
    clamp_confidence,
    explain_factors,
    finalize_wait_time,
    is_peak_hour,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an expert AI system for predicting emergency room wait times."

_FENCED_JSON = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


# =============================================================================
# RESPONSE SCHEMA
# =============================================================================

class AIFactorsPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    base_wait_time: float = Field(ge=0)
    time_of_day_factor: float = Field(ge=0)
    season_factor: float = Field(ge=0)
    day_of_week_factor: float = Field(ge=0)
    traffic_factor: float = Field(ge=0)
    weather_factor: float = Field(ge=0)
    other_factors: List[str] = Field(default_factory=list)


class AIPredictionPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    predicted_wait_time: float
    confidence_score: float
    factors: AIFactorsPayload


@dataclass(frozen=True)
class ParseOutcome:
    """Either a validated payload or the reason parsing failed."""
    payload: Optional[AIPredictionPayload] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.payload is not None


def parse_ai_prediction(content: Optional[str]) -> ParseOutcome:
    """Validate a model reply; never raises."""
    if not content or not content.strip():
        return ParseOutcome(error="empty response")

    text = content.strip()
    fenced = _FENCED_JSON.match(text)
    if fenced:
        text = fenced.group(1)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return ParseOutcome(error=f"response is not JSON: {e.msg}")

    if not isinstance(data, dict):
        return ParseOutcome(error="response JSON is not an object")

    try:
        return ParseOutcome(payload=AIPredictionPayload.model_validate(data))
    except ValidationError as e:
        return ParseOutcome(error=f"schema mismatch: {e.error_count()} error(s)")


def payload_to_result(
    payload: AIPredictionPayload,
    hospital_id: str,
    signal: ContextualSignal,
) -> PredictionResult:
    """
    Normalise a valid reply to the same contract as the factor model.

    Every reported factor away from 1.0 gets the same explanation line the
    factor model would write; the model's own notes follow, minus duplicates.
    """
    f = payload.factors
    factors = PredictionFactors(
        base_wait_time=f.base_wait_time,
        time_of_day_factor=f.time_of_day_factor,
        season_factor=f.season_factor,
        day_of_week_factor=f.day_of_week_factor,
        traffic_factor=f.traffic_factor,
        weather_factor=f.weather_factor,
    )
    explained = explain_factors(factors, signal)
    factors.other_factors = explained + [
        note for note in f.other_factors if note not in explained
    ]
    return PredictionResult(
        hospital_id=hospital_id,
        predicted_wait_time=finalize_wait_time(payload.predicted_wait_time),
        confidence_score=clamp_confidence(payload.confidence_score),
        factors=factors,
        provenance=Provenance.AI,
    )


# =============================================================================
# PROMPT
# =============================================================================

def _staffing_label(ratio: float) -> str:
    if ratio < 0.2:
        return "UNDERSTAFFED"
    if ratio > 0.35:
        return "WELL-STAFFED"
    return "ADEQUATE"


def build_prediction_prompt(
    profile: HospitalProfile,
    urgency: str,
    signal: ContextualSignal,
    now: datetime,
    distance_km: Optional[float] = None,
) -> str:
    waits = profile.average_wait_times
    base = base_wait_time(profile, urgency)
    vs_baseline = (base / waits.overall - 1) * 100 if waits.overall > 0 else 0.0

    lines = [
        "Predict the current emergency room wait time for the facility below.",
        "",
        "## HOSPITAL PROFILE",
        f"Facility: {profile.name}",
        f"Location: {profile.region}",
        f"Capacity: {profile.facility_size} beds",
        f"Staffing ratio: {profile.nurse_to_patient_ratio:.2f} nurses per patient "
        f"({_staffing_label(profile.nurse_to_patient_ratio)})",
        f"Specialist availability: {profile.specialist_availability:.2f}",
        f"Patient satisfaction: {profile.patient_satisfaction:.1f}",
        f"Historical data points: {profile.visit_count} visits",
    ]
    if distance_km is not None:
        lines.append(f"Distance from patient: {distance_km:.1f} km")

    lines += [
        "",
        "## HISTORICAL PATTERNS (minutes)",
        f"- Baseline average: {waits.overall:.0f}",
        f"- {urgency} urgency: {base:.0f} ({vs_baseline:+.0f}% vs baseline)",
        f"- {signal.time_of_day} period: {waits.by_time_of_day.get(signal.time_of_day, 0.0):.0f}",
        f"- {signal.season} season: {waits.by_season.get(signal.season, 0.0):.0f}",
        "",
        "## REAL-TIME CONTEXT",
        f"- Day: {signal.day_of_week} ({'WEEKEND' if signal.is_weekend else 'weekday'})",
        f"- Hour: {now.hour:02d}:00{' (PEAK HOURS)' if is_peak_hour(now.hour) else ''}",
        f"- Traffic: {signal.traffic}",
        f"- Weather: {signal.weather}",
        "- Local events: "
        + (", ".join(signal.events) + " (unverified)" if signal.events else "none reported"),
        "",
        "## TASK",
        "Start from the urgency-specific average, apply time-of-day and seasonal",
        "multipliers, then staffing, traffic, weather, weekend and event effects.",
        "Confidence: 0.85-0.95 for large datasets in normal conditions, 0.70-0.84 for",
        "limited data or unusual conditions, 0.50-0.69 for very limited data.",
        "",
        "Respond ONLY with a JSON object of this shape, no markdown:",
        json.dumps({
            "predictedWaitTime": "<integer minutes>",
            "confidenceScore": "<0.50-0.95>",
            "factors": {
                "baseWaitTime": "<minutes>",
                "timeOfDayFactor": "<multiplier>",
                "seasonFactor": "<multiplier>",
                "dayOfWeekFactor": "<multiplier>",
                "trafficFactor": "<multiplier>",
                "weatherFactor": "<multiplier>",
                "otherFactors": ["<impact description>"],
            },
        }, indent=2),
    ]
    return "\n".join(lines)


# =============================================================================
# ADAPTER
# =============================================================================

class AIFallbackAdapter:
    """
    Tries the Groq model first and defers to the factor model on any failure.

    When AI is disabled (no client, or settings.ai_available is false) every
    call goes straight to the engine.
    """

    def __init__(
        self,
        engine: Optional[PredictionEngine] = None,
        settings: Optional[Settings] = None,
        client: Optional[AsyncGroq] = None,
    ) -> None:
        self.engine = engine or PredictionEngine()
        self.settings = settings or default_settings
        self._client = client
        if self._client is None and self.settings.ai_available:
            self._client = AsyncGroq(
                api_key=self.settings.groq_api_key,
                timeout=self.settings.ai_timeout_seconds,
                max_retries=0,
            )
        elif self._client is None and self.settings.ai_enabled:
            logger.warning("AI predictions enabled but GROQ_API_KEY is not set; using formula only")

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def _complete(self, prompt: str) -> str:
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self.settings.groq_model,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    temperature=self.settings.ai_temperature,
                    max_tokens=self.settings.ai_max_tokens,
                ),
                timeout=self.settings.ai_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("groq", "request timed out") from e
        except Exception as e:
            raise ExternalServiceError("groq", f"{type(e).__name__}: {e}") from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise ExternalServiceError("groq", f"malformed completion: {e}") from e
        if not content:
            raise ExternalServiceError("groq", "no prediction content received")
        return content

    async def predict(
        self,
        profile: HospitalProfile,
        urgency: str,
        signal: ContextualSignal,
        now: datetime,
        distance_km: float = 0.0,
    ) -> PredictionResult:
        if not self.enabled:
            return self.engine.predict(profile, urgency, signal, now, distance_km)

        prompt = build_prediction_prompt(profile, urgency, signal, now, distance_km)
        try:
            content = await self._complete(prompt)
        except ExternalServiceError as e:
            logger.warning(f"AI prediction failed for {profile.id}, using formula: {e}")
            return self.engine.predict(profile, urgency, signal, now, distance_km)

        outcome = parse_ai_prediction(content)
        if not outcome.ok:
            logger.warning(f"AI prediction rejected for {profile.id}, using formula: {outcome.error}")
            return self.engine.predict(profile, urgency, signal, now, distance_km)

        return payload_to_result(outcome.payload, profile.id, signal)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
