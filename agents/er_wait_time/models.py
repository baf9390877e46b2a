"""
ER Wait Time Agent - Domain Types

Typed records that flow between the feature pipeline and the prediction
engine. Serialized artifacts (profile files, processed visits) use the
camelCase field names of the historical data files; Python attributes are
snake_case.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .config import SEASONS, TIME_OF_DAY_BUCKETS, UrgencyLevel


def _require_finite(name: str, value: float, minimum: Optional[float] = 0.0) -> float:
    value = float(value)
    if not math.isfinite(value):
        raise ValueError(f"{name} must be finite, got {value!r}")
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value!r}")
    return value


def _complete_buckets(name: str, values: Mapping[str, Any], keys: Tuple[str, ...]) -> Dict[str, float]:
    """Every bucket present, defaulting to 0 when it had no matching visits."""
    return {
        key: _require_finite(f"{name}[{key}]", values.get(key, 0.0))
        for key in keys
    }


@dataclass(frozen=True)
class VisitRecord:
    """One raw ER visit, validated."""
    visit_id: str
    hospital_id: str
    hospital_name: str
    region: str
    visit_date: str
    day_of_week: str
    season: str
    time_of_day: str
    urgency_level: str
    nurse_to_patient_ratio: float
    specialist_availability: float
    facility_size: int
    time_to_registration: float
    time_to_triage: float
    time_to_medical_professional: float
    total_wait_time: float
    patient_outcome: str
    patient_satisfaction: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "visitId": self.visit_id,
            "hospitalId": self.hospital_id,
            "hospitalName": self.hospital_name,
            "region": self.region,
            "visitDate": self.visit_date,
            "dayOfWeek": self.day_of_week,
            "season": self.season,
            "timeOfDay": self.time_of_day,
            "urgencyLevel": self.urgency_level,
            "nurseToPatientRatio": self.nurse_to_patient_ratio,
            "specialistAvailability": self.specialist_availability,
            "facilitySize": self.facility_size,
            "timeToRegistration": self.time_to_registration,
            "timeToTriage": self.time_to_triage,
            "timeToMedicalProfessional": self.time_to_medical_professional,
            "totalWaitTime": self.total_wait_time,
            "patientOutcome": self.patient_outcome,
            "patientSatisfaction": self.patient_satisfaction,
        }


@dataclass(frozen=True)
class AverageWaitTimes:
    """Mean total wait (minutes) overall and per bucket."""
    overall: float
    by_urgency: Dict[str, float]
    by_time_of_day: Dict[str, float]
    by_season: Dict[str, float]

    def __post_init__(self) -> None:
        object.__setattr__(self, "overall", _require_finite("overall", self.overall))
        object.__setattr__(
            self, "by_urgency", _complete_buckets("byUrgency", self.by_urgency, UrgencyLevel.ALL)
        )
        object.__setattr__(
            self, "by_time_of_day",
            _complete_buckets("byTimeOfDay", self.by_time_of_day, TIME_OF_DAY_BUCKETS)
        )
        object.__setattr__(
            self, "by_season", _complete_buckets("bySeason", self.by_season, SEASONS)
        )

    def empty_buckets(self) -> List[str]:
        """Bucket names whose average is 0 (no matching visits)."""
        empty = []
        for prefix, buckets in (
            ("urgency", self.by_urgency),
            ("timeOfDay", self.by_time_of_day),
            ("season", self.by_season),
        ):
            empty.extend(f"{prefix}:{key}" for key, value in buckets.items() if value == 0)
        return empty

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AverageWaitTimes":
        return cls(
            overall=data["overall"],
            by_urgency=dict(data.get("byUrgency") or {}),
            by_time_of_day=dict(data.get("byTimeOfDay") or {}),
            by_season=dict(data.get("bySeason") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall,
            "byUrgency": dict(self.by_urgency),
            "byTimeOfDay": dict(self.by_time_of_day),
            "bySeason": dict(self.by_season),
        }


@dataclass(frozen=True)
class HospitalProfile:
    """
    Aggregated historical statistics for one facility.

    Built once per feature-engineering run and replaced wholesale; read-only
    at serving time. Construction validates every numeric field.
    """
    id: str
    name: str
    region: str
    facility_size: int
    average_wait_times: AverageWaitTimes
    nurse_to_patient_ratio: float
    specialist_availability: float
    patient_satisfaction: float
    visit_count: int

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("HospitalProfile.id is required")
        if self.visit_count < 0:
            raise ValueError(f"visit_count must be >= 0, got {self.visit_count}")
        for name in ("nurse_to_patient_ratio", "specialist_availability", "patient_satisfaction"):
            object.__setattr__(self, name, _require_finite(name, getattr(self, name)))
        object.__setattr__(self, "facility_size", int(self.facility_size))

    @property
    def overall_wait(self) -> float:
        return self.average_wait_times.overall

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HospitalProfile":
        """Build from the camelCase profile-file representation."""
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            region=str(data.get("region", "")),
            facility_size=int(data.get("facilitySize", 0)),
            average_wait_times=AverageWaitTimes.from_dict(data["averageWaitTimes"]),
            nurse_to_patient_ratio=data.get("nurseToPatientRatio", 0.0),
            specialist_availability=data.get("specialistAvailability", 0.0),
            patient_satisfaction=data.get("patientSatisfaction", 0.0),
            visit_count=int(data.get("visitCount", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "region": self.region,
            "facilitySize": self.facility_size,
            "averageWaitTimes": self.average_wait_times.to_dict(),
            "nurseToPatientRatio": self.nurse_to_patient_ratio,
            "specialistAvailability": self.specialist_availability,
            "patientSatisfaction": self.patient_satisfaction,
            "visitCount": self.visit_count,
        }


@dataclass(frozen=True)
class GeoCoordinate:
    """Latitude/longitude in degrees."""
    lat: float
    lon: float


class SignalSource(Enum):
    """Whether a contextual sub-signal was measured or made up."""
    OBSERVED = "observed"
    SIMULATED = "simulated"


@dataclass(frozen=True)
class ContextualSignal:
    """Live context resolved once per request; never persisted."""
    time_of_day: str
    season: str
    day_of_week: str
    is_weekend: bool
    traffic: str
    weather: str
    events: Tuple[str, ...] = ()
    sources: Dict[str, SignalSource] = field(default_factory=dict)

    def source_of(self, signal: str) -> SignalSource:
        return self.sources.get(signal, SignalSource.SIMULATED)


class Provenance(Enum):
    """Which path produced a prediction."""
    FORMULA = "formula"
    AI = "ai"


@dataclass
class PredictionFactors:
    """Numeric breakdown of a prediction plus its explanation strings."""
    base_wait_time: float
    time_of_day_factor: float = 1.0
    season_factor: float = 1.0
    day_of_week_factor: float = 1.0
    traffic_factor: float = 1.0
    weather_factor: float = 1.0
    staffing_factor: float = 1.0
    peak_hours_factor: float = 1.0
    events_factor: float = 1.0
    other_factors: List[str] = field(default_factory=list)

    def product(self) -> float:
        return (
            self.time_of_day_factor
            * self.season_factor
            * self.day_of_week_factor
            * self.traffic_factor
            * self.weather_factor
            * self.staffing_factor
            * self.peak_hours_factor
            * self.events_factor
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseWaitTime": self.base_wait_time,
            "timeOfDayFactor": self.time_of_day_factor,
            "seasonFactor": self.season_factor,
            "dayOfWeekFactor": self.day_of_week_factor,
            "trafficFactor": self.traffic_factor,
            "weatherFactor": self.weather_factor,
            "staffingFactor": self.staffing_factor,
            "peakHoursFactor": self.peak_hours_factor,
            "eventsFactor": self.events_factor,
            "otherFactors": list(self.other_factors),
        }


@dataclass
class PredictionResult:
    """
    A bounded, explainable estimate for one hospital.

    predicted_wait_time is an integer multiple of 5 in [5, 240];
    confidence_score lies in [0.50, 0.95].
    """
    hospital_id: str
    predicted_wait_time: int
    confidence_score: float
    factors: PredictionFactors
    provenance: Provenance = Provenance.FORMULA

    def to_dict(self) -> Dict[str, Any]:
        return {
            "predictedWaitTime": self.predicted_wait_time,
            "confidenceScore": self.confidence_score,
            "factors": self.factors.to_dict(),
            "provenance": self.provenance.value,
        }
