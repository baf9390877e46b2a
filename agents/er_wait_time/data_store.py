"""
Serving-time snapshot of historical profiles and hospital coordinates.

The snapshot is loaded once per process and injected into the service; it is
never mutated afterwards. Missing or unreadable artifacts are a deployment
problem and surface as DataUnavailableError (HTTP 500), without retry.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .config import Settings, settings as default_settings
from .exceptions import DataUnavailableError
from .models import GeoCoordinate, HospitalProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProfileSnapshot:
    """Immutable profile set plus the id -> coordinate side table."""
    profiles: Tuple[HospitalProfile, ...]
    coordinates: Mapping[str, GeoCoordinate] = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def build(
        cls,
        profiles: Iterable[HospitalProfile],
        coordinates: Optional[Mapping[str, GeoCoordinate]] = None,
    ) -> "ProfileSnapshot":
        return cls(
            profiles=tuple(profiles),
            coordinates=MappingProxyType(dict(coordinates or {})),
        )

    def coordinate_for(self, hospital_id: str) -> Optional[GeoCoordinate]:
        return self.coordinates.get(hospital_id)


def _read_json(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise DataUnavailableError(f"Could not read {path.name}: {e}") from e


def parse_profiles(payload: Any, source: str) -> List[HospitalProfile]:
    if not isinstance(payload, list):
        raise DataUnavailableError(f"{source} must contain a list of hospital profiles")
    try:
        return [HospitalProfile.from_dict(item) for item in payload]
    except (KeyError, TypeError, ValueError) as e:
        raise DataUnavailableError(f"Invalid hospital profile in {source}: {e}") from e


def parse_coordinates(payload: Any, source: str) -> Dict[str, GeoCoordinate]:
    if not isinstance(payload, dict):
        raise DataUnavailableError(f"{source} must map hospital ids to coordinates")
    coordinates = {}
    try:
        for hospital_id, coords in payload.items():
            coordinates[str(hospital_id)] = GeoCoordinate(
                lat=float(coords["lat"]), lon=float(coords["lon"])
            )
    except (KeyError, TypeError, ValueError) as e:
        raise DataUnavailableError(f"Invalid coordinate entry in {source}: {e}") from e
    return coordinates


def load_snapshot(settings: Optional[Settings] = None) -> ProfileSnapshot:
    """
    Load every configured profile file that exists plus the coordinate table.

    Raises:
        DataUnavailableError: no profile file exists, the coordinate table
            is missing, or any present artifact cannot be parsed.
    """
    settings = settings or default_settings

    profiles: List[HospitalProfile] = []
    found = 0
    for path in settings.profile_paths():
        if not path.exists():
            logger.warning(f"Profile file not found: {path}")
            continue
        found += 1
        profiles.extend(parse_profiles(_read_json(path), path.name))

    if found == 0:
        raise DataUnavailableError(
            "Hospital data not found. Please run the feature engineering pipeline first."
        )

    coords_path = settings.coordinates_path()
    if not coords_path.exists():
        raise DataUnavailableError(f"Hospital coordinate table not found: {coords_path.name}")
    coordinates = parse_coordinates(_read_json(coords_path), coords_path.name)

    missing = sum(1 for p in profiles if p.id not in coordinates)
    logger.info(
        f"Loaded snapshot: {len(profiles)} profiles, {len(coordinates)} coordinates "
        f"({missing} profiles without coordinates)"
    )
    return ProfileSnapshot.build(profiles, coordinates)
