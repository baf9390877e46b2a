"""
ER Wait Time Agent - Feature Engineering Pipeline

This module turns raw per-visit ER records into per-facility historical
profiles, the only artifact the online prediction engine reads.

================================================================================
PIPELINE STAGES
================================================================================

1. LOAD:
   Raw rows come from the visit CSV (original column headers) or from a SQL
   table with the same columns. File reads are retried on I/O errors only;
   a file that cannot be parsed is never retried.

2. VALIDATE:
   Every row is parsed into a VisitRecord. Rows with malformed numeric
   fields are quarantined with a logged reason instead of being coerced to
   NaN and averaged in. The batch always completes.

3. AGGREGATE:
   Visits are grouped by hospital id (order-independent). Per group:
   - mean total wait overall and per urgency / time-of-day / season bucket
     (a bucket without visits is 0, never NaN or omitted)
   - mean nurse-to-patient ratio, specialist availability, satisfaction
   - facility metadata from the first record of the group

4. PERSIST:
   The full profile set (and the validated visits) are written atomically,
   replacing the previous files wholesale. Readers never see a partial set.

================================================================================
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
import tempfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd
from sqlalchemy import MetaData, Table, create_engine, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError

from .config import SEASONS, TIME_OF_DAY_BUCKETS, Settings, UrgencyLevel, settings as default_settings
from .exceptions import AggregationDataError, DataUnavailableError
from .models import AverageWaitTimes, HospitalProfile, VisitRecord

logger = logging.getLogger(__name__)


# =============================================================================
# RAW RECORD SCHEMA
# =============================================================================

# VisitRecord field -> CSV header
RAW_COLUMNS: Dict[str, str] = {
    "visit_id": "Visit ID",
    "hospital_id": "Hospital ID",
    "hospital_name": "Hospital Name",
    "region": "Region",
    "visit_date": "Visit Date",
    "day_of_week": "Day of Week",
    "season": "Season",
    "time_of_day": "Time of Day",
    "urgency_level": "Urgency Level",
    "nurse_to_patient_ratio": "Nurse-to-Patient Ratio",
    "specialist_availability": "Specialist Availability",
    "facility_size": "Facility Size (Beds)",
    "time_to_registration": "Time to Registration (min)",
    "time_to_triage": "Time to Triage (min)",
    "time_to_medical_professional": "Time to Medical Professional (min)",
    "total_wait_time": "Total Wait Time (min)",
    "patient_outcome": "Patient Outcome",
    "patient_satisfaction": "Patient Satisfaction",
}

TEXT_FIELDS = (
    "visit_id", "hospital_name", "region", "visit_date", "day_of_week",
    "season", "time_of_day", "urgency_level", "patient_outcome",
)

NUMERIC_FIELDS = (
    "nurse_to_patient_ratio", "specialist_availability", "facility_size",
    "time_to_registration", "time_to_triage", "time_to_medical_professional",
    "total_wait_time", "patient_satisfaction",
)

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _raw_value(row: Mapping[str, Any], field_name: str) -> Any:
    """Accept either the CSV header or the snake_case field name."""
    header = RAW_COLUMNS[field_name]
    if header in row:
        return row[header]
    return row.get(field_name)


def _parse_number(row: Mapping[str, Any], field_name: str) -> float:
    raw = _raw_value(row, field_name)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise AggregationDataError(f"{field_name} is missing", field=field_name)
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise AggregationDataError(f"{field_name} is not numeric: {raw!r}", field=field_name)
    if not math.isfinite(value):
        raise AggregationDataError(f"{field_name} is not finite: {raw!r}", field=field_name)
    if value < 0:
        raise AggregationDataError(f"{field_name} is negative: {raw!r}", field=field_name)
    return value


def parse_visit(row: Mapping[str, Any]) -> VisitRecord:
    """
    Validate one raw row into a VisitRecord.

    Raises:
        AggregationDataError: when the hospital id is missing or a numeric
            field is empty, non-numeric, non-finite or negative, or when
            facility_size is fractional.
    """
    hospital_id = _raw_value(row, "hospital_id")
    if hospital_id is None or not str(hospital_id).strip():
        raise AggregationDataError("hospital_id is missing", field="hospital_id")

    numbers = {name: _parse_number(row, name) for name in NUMERIC_FIELDS}
    if not numbers["facility_size"].is_integer():
        raise AggregationDataError(
            f"facility_size is not a whole number: {_raw_value(row, 'facility_size')!r}",
            field="facility_size",
        )
    texts = {
        name: "" if _raw_value(row, name) is None else str(_raw_value(row, name)).strip()
        for name in TEXT_FIELDS
    }

    return VisitRecord(
        hospital_id=str(hospital_id).strip(),
        facility_size=int(numbers.pop("facility_size")),
        **numbers,
        **texts,
    )


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class QuarantinedRecord:
    """A raw row that failed validation, kept for the batch report."""
    row_number: int
    visit_id: Optional[str]
    reason: str


@dataclass
class FeatureEngineeringResult:
    """Output of one engineering run."""
    profiles: List[HospitalProfile]
    visits: List[VisitRecord]
    quarantined: List[QuarantinedRecord] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return len(self.quarantined)

    def summary(self) -> Dict[str, int]:
        return {
            "visits_read": len(self.visits) + self.skipped_count,
            "visits_used": len(self.visits),
            "visits_skipped": self.skipped_count,
            "profiles_built": len(self.profiles),
        }


# =============================================================================
# FEATURE ENGINEER
# =============================================================================

class FeatureEngineer:
    """
    Batch transform from visit records to HospitalProfiles.

    Pure: no I/O happens here. Loading and persistence are separate,
    explicit steps (VisitLoader, save_profiles).

    Example:
        >>> engineer = FeatureEngineer()
        >>> result = engineer.run(raw_rows)
        >>> result.skipped_count
        0
    """

    def validate(
        self, rows: Iterable[Mapping[str, Any]]
    ) -> Tuple[List[VisitRecord], List[QuarantinedRecord]]:
        """Split raw rows into valid visits and quarantined rows."""
        visits: List[VisitRecord] = []
        quarantined: List[QuarantinedRecord] = []

        for row_number, row in enumerate(rows, start=1):
            try:
                visits.append(parse_visit(row))
            except AggregationDataError as e:
                visit_id = _raw_value(row, "visit_id")
                record = QuarantinedRecord(
                    row_number=row_number,
                    visit_id=None if visit_id is None else str(visit_id),
                    reason=str(e),
                )
                quarantined.append(record)
                logger.warning(
                    f"Quarantined visit row {row_number} (visit_id={record.visit_id}): {record.reason}"
                )

        return visits, quarantined

    def build_profiles(self, visits: Sequence[VisitRecord]) -> List[HospitalProfile]:
        """
        Aggregate visits into one profile per distinct hospital id.

        Output is ordered by hospital id, so shuffled input yields the same
        profiles (up to floating-point summation order).
        """
        if not visits:
            return []

        df = pd.DataFrame([asdict(v) for v in visits])
        by_hospital = df.groupby("hospital_id", sort=True)

        overall = by_hospital["total_wait_time"].mean()
        means = by_hospital[
            ["nurse_to_patient_ratio", "specialist_availability", "patient_satisfaction"]
        ].mean()
        counts = by_hospital.size()
        metadata = by_hospital[["hospital_name", "region", "facility_size"]].first()

        by_urgency = self._bucket_means(df, "urgency_level", UrgencyLevel.ALL)
        by_time_of_day = self._bucket_means(df, "time_of_day", TIME_OF_DAY_BUCKETS)
        by_season = self._bucket_means(df, "season", SEASONS)

        self._warn_on_conflicting_metadata(by_hospital)

        profiles = []
        for hospital_id in overall.index:
            wait_times = AverageWaitTimes(
                overall=float(overall[hospital_id]),
                by_urgency=by_urgency.loc[hospital_id].to_dict(),
                by_time_of_day=by_time_of_day.loc[hospital_id].to_dict(),
                by_season=by_season.loc[hospital_id].to_dict(),
            )
            profile = HospitalProfile(
                id=str(hospital_id),
                name=str(metadata.at[hospital_id, "hospital_name"]),
                region=str(metadata.at[hospital_id, "region"]),
                facility_size=int(metadata.at[hospital_id, "facility_size"]),
                average_wait_times=wait_times,
                nurse_to_patient_ratio=float(means.at[hospital_id, "nurse_to_patient_ratio"]),
                specialist_availability=float(means.at[hospital_id, "specialist_availability"]),
                patient_satisfaction=float(means.at[hospital_id, "patient_satisfaction"]),
                visit_count=int(counts[hospital_id]),
            )
            empty = wait_times.empty_buckets()
            if empty:
                logger.warning(
                    f"Hospital {profile.id} has empty buckets defaulted to 0: {', '.join(empty)}"
                )
            profiles.append(profile)

        return profiles

    def run(self, rows: Iterable[Mapping[str, Any]]) -> FeatureEngineeringResult:
        """Validate then aggregate a batch of raw rows."""
        visits, quarantined = self.validate(rows)
        profiles = self.build_profiles(visits)
        result = FeatureEngineeringResult(
            profiles=profiles, visits=visits, quarantined=quarantined
        )
        logger.info(f"Feature engineering complete: {result.summary()}")
        return result

    @staticmethod
    def _bucket_means(df: pd.DataFrame, column: str, buckets: Sequence[str]) -> pd.DataFrame:
        """Mean wait per (hospital, bucket); missing buckets are 0.0."""
        matched = df[df[column].isin(buckets)]
        if matched.empty:
            table = pd.DataFrame(dtype=float)
        else:
            table = (
                matched
                .groupby(["hospital_id", column])["total_wait_time"]
                .mean()
                .unstack(fill_value=0.0)
            )
        return table.reindex(
            index=sorted(df["hospital_id"].unique()),
            columns=list(buckets),
            fill_value=0.0,
        ).fillna(0.0).astype(float)

    @staticmethod
    def _warn_on_conflicting_metadata(by_hospital) -> None:
        distinct = by_hospital[["hospital_name", "region", "facility_size"]].nunique()
        conflicting = distinct[(distinct > 1).any(axis=1)]
        for hospital_id in conflicting.index:
            logger.warning(
                f"Conflicting metadata for hospital {hospital_id}; keeping the first record's values"
            )


# =============================================================================
# LOADING
# =============================================================================

class VisitLoader:
    """
    Loads raw visit rows from the visit CSV or a SQL table.

    The database engine is created lazily, so CSV-only runs never need a
    database driver.
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.database_url = database_url or self.settings.database_url
        self._engine: Optional[Engine] = None

    @property
    def engine(self) -> Engine:
        """Lazily create database engine."""
        if self._engine is None:
            if not self.database_url:
                raise DataUnavailableError("No database_url configured for visit loading")
            url = make_url(self.database_url)
            if url.get_backend_name() == "sqlite":
                self._engine = create_engine(url)
            else:
                self._engine = create_engine(
                    url,
                    pool_size=self.settings.db_pool_size,
                    pool_timeout=self.settings.db_pool_timeout,
                    pool_pre_ping=True,
                )
        return self._engine

    def load_csv(self, path: Path) -> List[Dict[str, Any]]:
        """
        Read the raw visit CSV as a list of row dicts (all values as text).

        I/O errors are retried up to ``ingest_read_retries`` times; parse
        errors are raised immediately as DataUnavailableError.
        """
        path = Path(path)
        attempts = self.settings.ingest_read_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                df = pd.read_csv(path, dtype=str, keep_default_na=False)
                break
            except pd.errors.EmptyDataError:
                logger.warning(f"Visit file {path} is empty")
                return []
            except (pd.errors.ParserError, UnicodeDecodeError) as e:
                raise DataUnavailableError(f"Could not parse visit file {path}: {e}") from e
            except OSError as e:
                if attempt == attempts:
                    raise DataUnavailableError(
                        f"Could not read visit file {path} after {attempts} attempts: {e}"
                    ) from e
                logger.warning(f"Read of {path} failed (attempt {attempt}/{attempts}): {e}")
                time.sleep(self.settings.ingest_retry_delay_seconds)

        logger.info(f"Loaded {len(df)} visit rows from {path}")
        return df.to_dict(orient="records")

    def load_database(self, table_name: str = "er_visits") -> List[Dict[str, Any]]:
        """Read every row of a visit table (CSV headers or snake_case columns)."""
        if not _TABLE_NAME.match(table_name):
            raise ValueError(f"Invalid table name: {table_name!r}")

        try:
            table = Table(table_name, MetaData(), autoload_with=self.engine)
            with self.engine.connect() as conn:
                rows = [dict(row._mapping) for row in conn.execute(select(table))]
        except SQLAlchemyError as e:
            logger.error(f"Database query failed: {e}")
            raise DataUnavailableError(f"Could not load visits from {table_name}: {e}") from e

        logger.info(f"Loaded {len(rows)} visit rows from table {table_name}")
        return rows

    def close(self) -> None:
        """Close database connections."""
        if self._engine:
            self._engine.dispose()
            self._engine = None


# =============================================================================
# PERSISTENCE
# =============================================================================

def _atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON to a temp file in the target directory, then rename over."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def save_profiles(profiles: Sequence[HospitalProfile], path: Path) -> None:
    """Replace the profile file with the full profile set."""
    _atomic_write_json(Path(path), [p.to_dict() for p in profiles])
    logger.info(f"Saved {len(profiles)} hospital profiles to {path}")


def save_processed_visits(visits: Sequence[VisitRecord], path: Path) -> None:
    _atomic_write_json(Path(path), [v.to_dict() for v in visits])
    logger.info(f"Saved {len(visits)} processed visits to {path}")


def run_pipeline(
    csv_path: Optional[Path] = None,
    output_dir: Optional[Path] = None,
    table_name: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> FeatureEngineeringResult:
    """
    Load, engineer and persist in one call.

    Reads from ``table_name`` when given (requires database_url), otherwise
    from ``csv_path`` (default: settings.visits_csv_path).
    """
    settings = settings or default_settings
    output_dir = Path(output_dir or settings.data_dir)
    loader = VisitLoader(settings=settings)

    try:
        if table_name:
            rows = loader.load_database(table_name)
        else:
            rows = loader.load_csv(Path(csv_path or settings.visits_csv_path))
    finally:
        loader.close()

    result = FeatureEngineer().run(rows)

    save_processed_visits(result.visits, output_dir / settings.processed_visits_file)
    save_profiles(result.profiles, output_dir / settings.profile_files[0])

    return result


if __name__ == "__main__":
    """
    Command-line interface for the feature pipeline.

    Usage:
        python -m agents.er_wait_time.feature_engineering [--csv PATH] [--output-dir DIR]
        python -m agents.er_wait_time.feature_engineering --table er_visits
    """
    import argparse
    import sys

    logging.basicConfig(
        level=getattr(logging, default_settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = argparse.ArgumentParser(description="Build hospital wait-time profiles")
    parser.add_argument("--csv", type=Path, default=None, help="Raw visit CSV")
    parser.add_argument("--output-dir", type=Path, default=None, help="Profile output directory")
    parser.add_argument(
        "--table",
        type=str,
        default=None,
        help="Load visits from this table via DATABASE_URL instead of a CSV",
    )
    args = parser.parse_args()

    try:
        result = run_pipeline(
            csv_path=args.csv,
            output_dir=args.output_dir,
            table_name=args.table,
        )
    except DataUnavailableError as e:
        logger.error(f"Feature engineering failed: {e}")
        sys.exit(1)

    print(f"\n{'='*60}")
    print("FEATURE ENGINEERING COMPLETE")
    print(f"{'='*60}")
    print(
        f"Processed {len(result.visits)} visits from {len(result.profiles)} hospitals "
        f"({result.skipped_count} quarantined)"
    )
    for profile in result.profiles:
        print(
            f"- {profile.name} ({profile.id}): {profile.visit_count} visits, "
            f"avg wait: {profile.overall_wait:.1f} mins"
        )
    print(f"{'='*60}")
