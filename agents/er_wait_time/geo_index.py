"""
Great-circle distance and region-diverse nearest-hospital selection.

Distances are computed in one vectorized pass over the candidate set; there
is no shared mutable state, so the selection is safe to call concurrently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from .models import GeoCoordinate, HospitalProfile

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
SENTINEL_DISTANCE_KM = 9999.0


@dataclass(frozen=True)
class Candidate:
    """A profile paired with its distance from the query point."""
    profile: HospitalProfile
    distance_km: float
    coordinate: Optional[GeoCoordinate] = None


def haversine_km(lat1, lon1, lat2, lon2):
    """Haversine distance in km; accepts scalars or numpy arrays (degrees)."""
    lat1, lon1, lat2, lon2 = map(np.radians, (lat1, lon1, lat2, lon2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    a = np.clip(a, 0.0, 1.0)
    return EARTH_RADIUS_KM * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def distance_km(a: GeoCoordinate, b: GeoCoordinate) -> float:
    return float(haversine_km(a.lat, a.lon, b.lat, b.lon))


def region_key(region: str) -> str:
    """'San Diego, CA' -> 'San Diego'; a region without a comma is its own key."""
    return region.split(",", 1)[0].strip()


def rank_by_distance(
    profiles: Sequence[HospitalProfile],
    query: GeoCoordinate,
    coordinates: Mapping[str, GeoCoordinate],
    sentinel_km: float = SENTINEL_DISTANCE_KM,
) -> List[Candidate]:
    """
    All profiles sorted nearest-first.

    Profiles without a registered coordinate get ``sentinel_km`` and sort
    last; ties keep input order.
    """
    if not profiles:
        return []

    coords = [coordinates.get(p.id) for p in profiles]
    known = np.array([c is not None for c in coords])
    lats = np.array([c.lat if c is not None else 0.0 for c in coords])
    lons = np.array([c.lon if c is not None else 0.0 for c in coords])

    distances = np.where(
        known,
        haversine_km(query.lat, query.lon, lats, lons),
        sentinel_km,
    )
    order = np.argsort(distances, kind="stable")

    return [
        Candidate(profile=profiles[i], distance_km=float(distances[i]), coordinate=coords[i])
        for i in order
    ]


def select_diverse_candidates(
    profiles: Sequence[HospitalProfile],
    query: GeoCoordinate,
    coordinates: Mapping[str, GeoCoordinate],
    per_region_cap: int = 3,
    sentinel_km: float = SENTINEL_DISTANCE_KM,
) -> List[Candidate]:
    """
    Nearest hospitals with at most ``per_region_cap`` per region key.

    Keeps one dense metro area from monopolizing the result. The union of
    the per-region picks is returned nearest-first. Empty input gives an
    empty list.
    """
    if per_region_cap < 0:
        raise ValueError(f"per_region_cap must be >= 0, got {per_region_cap}")

    ranked = rank_by_distance(profiles, query, coordinates, sentinel_km)

    taken: Dict[str, int] = {}
    selected: List[Candidate] = []
    for candidate in ranked:
        key = region_key(candidate.profile.region)
        if taken.get(key, 0) < per_region_cap:
            taken[key] = taken.get(key, 0) + 1
            selected.append(candidate)

    # ranked is already nearest-first, so the filtered union keeps that order
    logger.debug(
        f"Selected {len(selected)} of {len(ranked)} hospitals across {len(taken)} regions"
    )
    return selected
