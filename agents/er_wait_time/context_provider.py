"""
ER Wait Time Agent - Contextual Signal Provider

Resolves the live signal bundle used by every prediction in a request:

    time of day, season, day of week   pure functions of the wall clock
    traffic                            heuristic of hour / day / latitude band
    weather                            Open-Meteo call, cached ~30 min per
                                       coordinate, time-of-day fallback
    local events                       simulated, tagged non-authoritative

Contract: resolve() always returns a complete ContextualSignal. Any failing
sub-signal degrades to its documented default and is tagged SIMULATED.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from .config import SIMULATED_EVENT_NAMES, Settings, settings as default_settings
from .exceptions import ExternalServiceError
from .models import ContextualSignal, GeoCoordinate, SignalSource

logger = logging.getLogger(__name__)

DAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


# =============================================================================
# CLOCK-DERIVED SIGNALS
# =============================================================================

def time_of_day_for_hour(hour: int) -> str:
    if 5 <= hour < 9:
        return "Early Morning"
    if 9 <= hour < 12:
        return "Late Morning"
    if 12 <= hour < 17:
        return "Afternoon"
    if 17 <= hour < 21:
        return "Evening"
    return "Night"


def season_for_month(month_index: int) -> str:
    """Season for a 0-indexed month (0 = January)."""
    if 2 <= month_index <= 4:
        return "Spring"
    if 5 <= month_index <= 7:
        return "Summer"
    if 8 <= month_index <= 10:
        return "Fall"
    return "Winter"


def day_info(now: datetime) -> Tuple[str, bool]:
    """(day name, is_weekend) for a wall-clock time."""
    weekday = now.weekday()
    return DAY_NAMES[weekday], weekday >= 5


# =============================================================================
# TRAFFIC HEURISTIC
# =============================================================================

def is_urban_band(lat: float) -> bool:
    """Rough proxy for dense road networks (mid-latitudes)."""
    return 30 < abs(lat) < 50


def traffic_condition(hour: int, is_weekend: bool, lat: float) -> str:
    """Light / Moderate / Heavy from rush-hour patterns; no external call."""
    if is_weekend:
        if 10 <= hour <= 14 or 17 <= hour <= 20:
            return "Moderate"
        return "Light"

    if is_urban_band(lat):
        if 7 <= hour <= 9 or 16 <= hour <= 19:
            return "Heavy"
        if 10 <= hour <= 15 or 19 <= hour <= 22:
            return "Moderate"
    else:
        if 7 <= hour <= 9 or 16 <= hour <= 18:
            return "Moderate"

    return "Light"


# =============================================================================
# WEATHER
# =============================================================================

def weather_condition_for_code(code: int) -> str:
    """Map a WMO weather interpretation code to a condition label."""
    if code == 0:
        return "Clear"
    if 1 <= code <= 3:
        return "Cloudy"
    if 45 <= code <= 48:
        return "Foggy"
    if 51 <= code <= 67:
        return "Rainy"
    if 71 <= code <= 86:
        return "Snowy"
    if code >= 95:
        return "Stormy"
    return "Clear"


def fallback_weather(hour: int) -> str:
    """Used whenever the provider fails: daytime Clear, otherwise Cloudy."""
    return "Clear" if 6 <= hour <= 18 else "Cloudy"


class WeatherCache:
    """Per-coordinate TTL cache of observed conditions."""

    def __init__(
        self,
        ttl_seconds: float,
        precision: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.precision = precision
        self._clock = clock
        self._entries: Dict[Tuple[float, float], Tuple[str, float]] = {}

    def _key(self, lat: float, lon: float) -> Tuple[float, float]:
        return round(lat, self.precision), round(lon, self.precision)

    def get(self, lat: float, lon: float) -> Optional[str]:
        key = self._key(lat, lon)
        entry = self._entries.get(key)
        if entry is None:
            return None
        condition, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return condition

    def put(self, lat: float, lon: float, condition: str) -> None:
        if self.ttl_seconds <= 0:
            return
        self._entries[self._key(lat, lon)] = (condition, self._clock() + self.ttl_seconds)

    def __len__(self) -> int:
        return len(self._entries)


class WeatherClient:
    """
    Open-Meteo client: single attempt, bounded timeout, no retry.

    Successful observations are cached; fallbacks are not.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        cache: Optional[WeatherCache] = None,
    ) -> None:
        self.settings = settings or default_settings
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.weather_timeout_seconds),
            headers={"User-Agent": f"{self.settings.service_name}/{self.settings.service_version}"},
        )
        self.cache = cache if cache is not None else WeatherCache(
            ttl_seconds=self.settings.weather_cache_ttl_seconds,
            precision=self.settings.weather_cache_precision,
        )

    async def fetch_condition(self, lat: float, lon: float) -> str:
        """
        Query the provider for the current condition.

        Raises:
            ExternalServiceError: on network error, timeout, non-2xx status
                or an unexpected payload.
        """
        params = {
            "latitude": lat,
            "longitude": lon,
            "current": "temperature_2m,precipitation,rain,snowfall,weather_code",
            "timezone": "auto",
        }
        try:
            response = await asyncio.wait_for(
                self._client.get(self.settings.weather_api_url, params=params),
                timeout=self.settings.weather_timeout_seconds,
            )
            response.raise_for_status()
            current = response.json()["current"]
            code = current.get("weather_code", current.get("weathercode"))
            return weather_condition_for_code(int(code))
        except asyncio.TimeoutError as e:
            raise ExternalServiceError("weather", "request timed out") from e
        except httpx.HTTPError as e:
            raise ExternalServiceError("weather", f"{type(e).__name__}: {e}") from e
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ExternalServiceError("weather", f"unexpected payload: {e}") from e

    async def get_condition(self, lat: float, lon: float, hour: int) -> Tuple[str, SignalSource]:
        """Cached or fresh observation, else the time-of-day fallback."""
        cached = self.cache.get(lat, lon)
        if cached is not None:
            return cached, SignalSource.OBSERVED

        try:
            condition = await self.fetch_condition(lat, lon)
        except ExternalServiceError as e:
            condition = fallback_weather(hour)
            logger.warning(f"Weather unavailable, using fallback '{condition}': {e}")
            return condition, SignalSource.SIMULATED

        self.cache.put(lat, lon, condition)
        return condition, SignalSource.OBSERVED

    async def aclose(self) -> None:
        await self._client.aclose()


# =============================================================================
# LOCAL EVENTS
# =============================================================================

def simulate_local_events(
    rng: random.Random,
    probability: float = 0.3,
    max_events: int = 2,
) -> List[str]:
    """
    0..max_events distinct event names.

    There is no authoritative events feed; callers must tag the result
    SIMULATED.
    """
    if max_events <= 0 or rng.random() >= probability:
        return []
    count = rng.randint(1, min(max_events, len(SIMULATED_EVENT_NAMES)))
    return rng.sample(SIMULATED_EVENT_NAMES, count)


# =============================================================================
# PROVIDER
# =============================================================================

class ContextProvider:
    """Builds the ContextualSignal for a query point at a wall-clock time."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        weather_client: Optional[WeatherClient] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.weather_client = weather_client or WeatherClient(self.settings)
        self.rng = rng or random.Random()

    def _traffic(self, query: GeoCoordinate, now: datetime, is_weekend: bool) -> str:
        try:
            return traffic_condition(now.hour, is_weekend, query.lat)
        except Exception as e:
            logger.warning(f"Traffic heuristic failed, defaulting to Light: {e}")
            return "Light"

    def _events(self) -> List[str]:
        try:
            return simulate_local_events(
                self.rng, self.settings.events_probability, self.settings.events_max
            )
        except Exception as e:
            logger.warning(f"Event simulation failed, reporting none: {e}")
            return []

    async def _weather(self, query: GeoCoordinate, now: datetime) -> Tuple[str, SignalSource]:
        try:
            return await self.weather_client.get_condition(query.lat, query.lon, now.hour)
        except Exception as e:
            condition = fallback_weather(now.hour)
            logger.warning(f"Weather lookup failed, using fallback '{condition}': {e}")
            return condition, SignalSource.SIMULATED

    async def resolve(self, query: GeoCoordinate, now: datetime) -> ContextualSignal:
        """Complete signal bundle; never raises for sub-signal failures."""
        day_of_week, is_weekend = day_info(now)
        weather, weather_source = await self._weather(query, now)

        signal = ContextualSignal(
            time_of_day=time_of_day_for_hour(now.hour),
            season=season_for_month(now.month - 1),
            day_of_week=day_of_week,
            is_weekend=is_weekend,
            traffic=self._traffic(query, now, is_weekend),
            weather=weather,
            events=tuple(self._events()),
            sources={
                "traffic": SignalSource.SIMULATED,
                "weather": weather_source,
                "events": SignalSource.SIMULATED,
            },
        )
        logger.debug(f"Resolved context: {signal}")
        return signal

    async def aclose(self) -> None:
        await self.weather_client.aclose()
