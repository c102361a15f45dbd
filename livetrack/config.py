# livetrack/config.py
"""
Configuration parameters for the LiveTrack assignment and tracking service.

This module centralizes all tunable parameters, making it easy to:
- Adjust the assignment search radius
- Tune the simulated delivery trip
- Configure the geocoder and live-stream behaviour

Values can be overridden from the environment (or a `.env` file next to the
working directory). All parameters are documented with their purpose.
"""

import os
from typing import Final

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# GEOGRAPHY
# =============================================================================

EARTH_RADIUS_KM: Final[float] = 6371.0
"""Mean Earth radius used by the haversine formula."""

SEARCH_RADIUS_KM: float = _env_float("SEARCH_RADIUS_KM", 20.0)
"""
Radius around the restaurant searched for candidate partners.
Keeps the candidate set small; partners further away are never considered
while the geospatial lookup works.
"""

GEO_CELL_DEGREES: float = _env_float("GEO_CELL_DEGREES", 0.1)
"""
Grid cell size (degrees) of the partner location index.
0.1 degrees is roughly 11 km of latitude.
"""

MAX_INDEX_CELLS: int = _env_int("MAX_INDEX_CELLS", 2500)
"""Queries covering more cells than this scan every indexed partner instead."""

STRICT_GEO_LOOKUP: bool = _env_bool("STRICT_GEO_LOOKUP", False)
"""
When True, a failed geospatial lookup raises instead of falling back to an
unfiltered scan of all available partners.
"""

DEFAULT_CITY_LAT: float = _env_float("DEFAULT_CITY_LAT", 13.0827)
"""Latitude used when an address cannot be resolved (Chennai)."""

DEFAULT_CITY_LNG: float = _env_float("DEFAULT_CITY_LNG", 80.2707)
"""Longitude used when an address cannot be resolved (Chennai)."""

# =============================================================================
# MOVEMENT SIMULATION
# =============================================================================

SIMULATION_DURATION_SECONDS: float = _env_float("SIMULATION_DURATION_SECONDS", 120.0)
"""Length of a simulated trip from restaurant to customer."""

SIMULATION_TICK_SECONDS: float = _env_float("SIMULATION_TICK_SECONDS", 1.0)
"""Interval between two simulated position samples."""

SIMULATED_DRIVER_ID: Final[str] = "simulated"
"""Partner id stamped on samples produced by the simulator."""

AUTO_UPDATE_INTERVAL_SECONDS: float = _env_float("AUTO_UPDATE_INTERVAL_SECONDS", 120.0)
"""
Interval at which a partner's last registry position is re-broadcast to
the order they deliver while auto-update is on.
"""

# =============================================================================
# LIVE UPDATES
# =============================================================================

LOCK_SHARDS: int = _env_int("LOCK_SHARDS", 16)
"""Number of lock shards for registry and broadcaster maps."""

SUBSCRIBER_QUEUE_SIZE: int = _env_int("SUBSCRIBER_QUEUE_SIZE", 64)
"""
Buffered events per queue-backed subscriber.
When full, the oldest event is discarded: slow consumers miss intermediate
samples instead of slowing down publishers.
"""

STREAM_KEEPALIVE_SECONDS: float = _env_float("STREAM_KEEPALIVE_SECONDS", 15.0)
"""Idle time after which an event stream sends a keep-alive comment."""

STREAM_POLL_SECONDS: float = _env_float("STREAM_POLL_SECONDS", 1.0)
"""How often an idle event stream checks whether its client went away."""

# =============================================================================
# GEOCODING (Nominatim)
# =============================================================================

USE_GEOCODING: bool = _env_bool("USE_GEOCODING", True)
"""
Resolve addresses to coordinates when an order arrives without them.
When False, unresolved points fall back to the default city coordinates.
"""

GEOCODER_URL: str = os.getenv("GEOCODER_URL", "https://nominatim.openstreetmap.org/search")
"""Nominatim-compatible search endpoint."""

GEOCODER_USER_AGENT: str = os.getenv("GEOCODER_USER_AGENT", "livetrack-dispatch/1.0")
"""Nominatim's usage policy requires an identifying User-Agent."""

GEOCODER_TIMEOUT_SECONDS: float = _env_float("GEOCODER_TIMEOUT_SECONDS", 5.0)
"""Timeout for geocoder requests. Fail fast to avoid blocking order creation."""

GEOCODER_DELAY_SECONDS: float = _env_float("GEOCODER_DELAY_SECONDS", 0.3)
"""Politeness delay before each uncached geocoder request."""

GEOCODE_CACHE_SIZE: int = _env_int("GEOCODE_CACHE_SIZE", 1000)
"""Maximum number of cached address lookups."""

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
"""Default log level for the CLI and the HTTP server."""
