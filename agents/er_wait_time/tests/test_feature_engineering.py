"""
ER Wait Time Agent - Feature Engineering Tests

Run with: pytest agents/er_wait_time/tests/test_feature_engineering.py -v
"""

import json
import logging
import random

import pandas as pd
import pytest
from sqlalchemy import create_engine

from agents.er_wait_time.exceptions import AggregationDataError, DataUnavailableError
from agents.er_wait_time.feature_engineering import (
    FeatureEngineer,
    VisitLoader,
    parse_visit,
    run_pipeline,
    save_profiles,
)
from agents.er_wait_time.models import HospitalProfile

from conftest import visit_row


@pytest.fixture
def engineer():
    return FeatureEngineer()


@pytest.fixture
def rows():
    return [
        visit_row("V1", urgency="Critical", time_of_day="Afternoon", season="Winter",
                  total_wait="20", ratio="0.3"),
        visit_row("V2", urgency="Medium", time_of_day="Afternoon", season="Winter",
                  total_wait="100", ratio="0.25"),
        visit_row("V3", urgency="Low", time_of_day="Evening", season="Summer",
                  total_wait="180", ratio="0.2"),
        visit_row("V4", hospital_id="H002", hospital_name="Scripps", region="La Jolla, CA",
                  urgency="High", total_wait="40"),
    ]


class TestParseVisit:
    """Tests for per-record validation."""

    def test_parses_csv_headers(self):
        visit = parse_visit(visit_row(total_wait="42.5", beds="150"))

        assert visit.hospital_id == "H001"
        assert visit.total_wait_time == 42.5
        assert visit.facility_size == 150
        assert visit.urgency_level == "Medium"

    def test_accepts_snake_case_keys(self):
        row = {
            "visit_id": "V9", "hospital_id": "H009", "hospital_name": "X", "region": "Y",
            "nurse_to_patient_ratio": 0.3, "specialist_availability": 2,
            "facility_size": 80, "time_to_registration": 1, "time_to_triage": 2,
            "time_to_medical_professional": 3, "total_wait_time": 30,
            "patient_satisfaction": 4,
        }
        assert parse_visit(row).hospital_id == "H009"

    @pytest.mark.parametrize("bad", ["", "abc", "nan", "inf", "-5"])
    def test_rejects_malformed_wait_time(self, bad):
        with pytest.raises(AggregationDataError) as exc_info:
            parse_visit(visit_row(total_wait=bad))
        assert exc_info.value.field == "total_wait_time"

    def test_rejects_missing_hospital_id(self):
        with pytest.raises(AggregationDataError) as exc_info:
            parse_visit(visit_row(hospital_id="  "))
        assert exc_info.value.field == "hospital_id"

    def test_rejects_fractional_facility_size(self):
        with pytest.raises(AggregationDataError, match="not a whole number") as exc_info:
            parse_visit(visit_row(beds="120.7"))
        assert exc_info.value.field == "facility_size"

    def test_accepts_whole_float_facility_size(self):
        assert parse_visit(visit_row(beds="120.0")).facility_size == 120


class TestQuarantine:
    """Malformed rows are skipped with a reason; the batch completes."""

    def test_bad_rows_are_quarantined(self, engineer, rows, caplog):
        rows.append(visit_row("V5", total_wait="not-a-number"))

        with caplog.at_level(logging.WARNING):
            result = engineer.run(rows)

        assert result.skipped_count == 1
        assert result.quarantined[0].row_number == 5
        assert result.quarantined[0].visit_id == "V5"
        assert "total_wait_time" in result.quarantined[0].reason
        assert len(result.visits) == 4
        assert "Quarantined visit row 5" in caplog.text

    def test_quarantined_values_do_not_affect_averages(self, engineer, rows):
        clean = engineer.run(rows).profiles
        dirty = engineer.run(rows + [visit_row("V6", total_wait="oops")]).profiles

        assert [p.to_dict() for p in clean] == [p.to_dict() for p in dirty]

    def test_summary_counts(self, engineer, rows):
        result = engineer.run(rows + [visit_row("V7", ratio="")])

        assert result.summary() == {
            "visits_read": 5,
            "visits_used": 4,
            "visits_skipped": 1,
            "profiles_built": 2,
        }


class TestBuildProfiles:
    """Tests for aggregation into HospitalProfiles."""

    def test_one_profile_per_hospital(self, engineer, rows):
        profiles = engineer.run(rows).profiles

        assert [p.id for p in profiles] == ["H001", "H002"]
        assert all(isinstance(p, HospitalProfile) for p in profiles)

    def test_bucket_averages(self, engineer, rows):
        profile = engineer.run(rows).profiles[0]
        waits = profile.average_wait_times

        assert waits.overall == pytest.approx(100.0)
        assert waits.by_urgency == {"Critical": 20.0, "High": 0.0, "Medium": 100.0, "Low": 180.0}
        assert waits.by_time_of_day["Afternoon"] == pytest.approx(60.0)
        assert waits.by_time_of_day["Evening"] == pytest.approx(180.0)
        assert waits.by_season["Winter"] == pytest.approx(60.0)
        assert waits.by_season["Summer"] == pytest.approx(180.0)

    def test_empty_buckets_are_zero_not_missing(self, engineer, rows):
        profile = engineer.run(rows).profiles[1]
        waits = profile.average_wait_times

        assert set(waits.by_time_of_day) == {
            "Early Morning", "Late Morning", "Afternoon", "Evening", "Night"
        }
        assert waits.by_time_of_day["Night"] == 0.0
        assert waits.by_season["Fall"] == 0.0
        assert waits.by_urgency["Critical"] == 0.0

    def test_staffing_and_counts(self, engineer, rows):
        profile = engineer.run(rows).profiles[0]

        assert profile.nurse_to_patient_ratio == pytest.approx(0.25)
        assert profile.specialist_availability == pytest.approx(5.0)
        assert profile.patient_satisfaction == pytest.approx(4.0)
        assert profile.visit_count == 3
        assert profile.facility_size == 200

    def test_order_independent(self, engineer, rows):
        shuffled = list(rows)
        random.Random(7).shuffle(shuffled)

        first = engineer.run(rows).profiles
        second = engineer.run(shuffled).profiles

        assert [p.id for p in first] == [p.id for p in second]
        for a, b in zip(first, second):
            assert a.average_wait_times == b.average_wait_times
            assert a.nurse_to_patient_ratio == pytest.approx(b.nurse_to_patient_ratio)
            assert a.visit_count == b.visit_count

    def test_conflicting_metadata_first_record_wins(self, engineer, caplog):
        rows = [
            visit_row("V1", hospital_name="Mercy General"),
            visit_row("V2", hospital_name="Mercy Hospital"),
        ]

        with caplog.at_level(logging.WARNING):
            profile = engineer.run(rows).profiles[0]

        assert profile.name == "Mercy General"
        assert "Conflicting metadata for hospital H001" in caplog.text

    def test_empty_input(self, engineer):
        result = engineer.run([])

        assert result.profiles == []
        assert result.skipped_count == 0


class TestVisitLoader:
    """Tests for CSV and SQL loading."""

    def test_load_csv(self, tmp_path, rows, test_settings):
        path = tmp_path / "visits.csv"
        pd.DataFrame(rows).to_csv(path, index=False)

        loaded = VisitLoader(settings=test_settings).load_csv(path)

        assert len(loaded) == 4
        assert loaded[0]["Hospital ID"] == "H001"
        assert loaded[0]["Total Wait Time (min)"] == "20"

    def test_empty_csv_returns_no_rows(self, tmp_path, test_settings):
        path = tmp_path / "empty.csv"
        path.write_text("")

        assert VisitLoader(settings=test_settings).load_csv(path) == []

    def test_missing_csv_retries_then_fails(self, tmp_path, test_settings, caplog):
        settings = test_settings.model_copy(
            update={"ingest_read_retries": 2, "ingest_retry_delay_seconds": 0.0}
        )

        with caplog.at_level(logging.WARNING):
            with pytest.raises(DataUnavailableError, match="after 3 attempts"):
                VisitLoader(settings=settings).load_csv(tmp_path / "missing.csv")

        assert caplog.text.count("Read of") == 2

    def test_load_database(self, tmp_path, rows, test_settings):
        url = f"sqlite:///{tmp_path / 'visits.db'}"
        engine = create_engine(url)
        pd.DataFrame(rows).to_sql("er_visits", engine, index=False)
        engine.dispose()

        loader = VisitLoader(database_url=url, settings=test_settings)
        try:
            loaded = loader.load_database("er_visits")
        finally:
            loader.close()

        result = FeatureEngineer().run(loaded)
        assert [p.id for p in result.profiles] == ["H001", "H002"]

    def test_rejects_unsafe_table_name(self, test_settings):
        loader = VisitLoader(database_url="sqlite://", settings=test_settings)
        with pytest.raises(ValueError):
            loader.load_database("visits; DROP TABLE visits")

    def test_engine_requires_database_url(self, test_settings):
        with pytest.raises(DataUnavailableError):
            VisitLoader(settings=test_settings).engine


class TestPersistence:
    """Tests for atomic profile output."""

    def test_save_profiles_replaces_file(self, tmp_path, engineer, rows):
        path = tmp_path / "hospital-features.json"
        path.write_text('[{"stale": true}]')

        profiles = engineer.run(rows).profiles
        save_profiles(profiles, path)

        saved = json.loads(path.read_text())
        assert [p["id"] for p in saved] == ["H001", "H002"]
        assert saved[0]["averageWaitTimes"]["byUrgency"]["Critical"] == 20.0
        assert [p.name for p in tmp_path.iterdir()] == ["hospital-features.json"]

    def test_run_pipeline_writes_both_artifacts(self, tmp_path, rows, test_settings):
        csv_path = tmp_path / "visits.csv"
        pd.DataFrame(rows).to_csv(csv_path, index=False)
        output_dir = tmp_path / "out"

        result = run_pipeline(csv_path=csv_path, output_dir=output_dir, settings=test_settings)

        assert len(result.profiles) == 2
        profiles = json.loads((output_dir / "hospital-features.json").read_text())
        visits = json.loads((output_dir / "processed-visits.json").read_text())
        assert len(profiles) == 2
        assert len(visits) == 4
        assert visits[0]["visitId"] == "V1"
        assert HospitalProfile.from_dict(profiles[0]).visit_count == 3
