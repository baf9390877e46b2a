"""
Shared fixtures for the ER wait time agent tests.
"""

from datetime import datetime

import pytest

from agents.er_wait_time.config import Settings
from agents.er_wait_time.models import (
    AverageWaitTimes,
    ContextualSignal,
    GeoCoordinate,
    HospitalProfile,
    SignalSource,
)


# Wednesday, Winter, Afternoon, outside peak hours: every clock factor is neutral
FIXED_NOW = datetime(2024, 1, 17, 14, 0)

# Saturday, same season and bucket
SATURDAY_NOW = datetime(2024, 1, 20, 14, 0)


def make_profile(
    hospital_id="H001",
    name="Mercy General",
    region="San Diego, CA",
    overall=100.0,
    by_urgency=None,
    by_time_of_day=None,
    by_season=None,
    ratio=0.30,
    visit_count=50,
):
    by_urgency = by_urgency or {"Critical": 25.0, "High": 60.0, "Medium": 100.0, "Low": 150.0}
    by_time_of_day = by_time_of_day or {
        "Early Morning": 80.0,
        "Late Morning": 90.0,
        "Afternoon": 100.0,
        "Evening": 120.0,
        "Night": 110.0,
    }
    by_season = by_season or {"Winter": 100.0, "Spring": 95.0, "Summer": 90.0, "Fall": 105.0}
    return HospitalProfile(
        id=hospital_id,
        name=name,
        region=region,
        facility_size=200,
        average_wait_times=AverageWaitTimes(
            overall=overall,
            by_urgency=by_urgency,
            by_time_of_day=by_time_of_day,
            by_season=by_season,
        ),
        nurse_to_patient_ratio=ratio,
        specialist_availability=5.0,
        patient_satisfaction=3.5,
        visit_count=visit_count,
    )


def make_signal(
    time_of_day="Afternoon",
    season="Winter",
    day_of_week="Wednesday",
    is_weekend=False,
    traffic="Light",
    weather="Clear",
    events=(),
):
    return ContextualSignal(
        time_of_day=time_of_day,
        season=season,
        day_of_week=day_of_week,
        is_weekend=is_weekend,
        traffic=traffic,
        weather=weather,
        events=tuple(events),
        sources={
            "traffic": SignalSource.SIMULATED,
            "weather": SignalSource.OBSERVED,
            "events": SignalSource.SIMULATED,
        },
    )


@pytest.fixture
def profile():
    return make_profile()


@pytest.fixture
def neutral_signal():
    return make_signal()


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def test_settings(tmp_path):
    """Settings isolated from the environment and pointed at a temp data dir."""
    return Settings(
        _env_file=None,
        data_dir=tmp_path,
        ai_enabled=False,
        groq_api_key=None,
        weather_cache_ttl_seconds=1800,
        events_probability=0.0,
    )


@pytest.fixture
def san_diego():
    return GeoCoordinate(lat=32.7157, lon=-117.1611)


def visit_row(
    visit_id="V1",
    hospital_id="H001",
    hospital_name="Mercy General",
    region="San Diego, CA",
    urgency="Medium",
    time_of_day="Afternoon",
    season="Winter",
    total_wait="100",
    ratio="0.3",
    specialists="5",
    beds="200",
    satisfaction="4",
):
    """A raw CSV row keyed by the dataset's column headers."""
    return {
        "Visit ID": visit_id,
        "Hospital ID": hospital_id,
        "Hospital Name": hospital_name,
        "Region": region,
        "Visit Date": "2024-01-17 14:00:00",
        "Day of Week": "Wednesday",
        "Season": season,
        "Time of Day": time_of_day,
        "Urgency Level": urgency,
        "Nurse-to-Patient Ratio": ratio,
        "Specialist Availability": specialists,
        "Facility Size (Beds)": beds,
        "Time to Registration (min)": "5",
        "Time to Triage (min)": "10",
        "Time to Medical Professional (min)": "20",
        "Total Wait Time (min)": total_wait,
        "Patient Outcome": "Discharged",
        "Patient Satisfaction": satisfaction,
    }
