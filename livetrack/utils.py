# livetrack/utils.py
"""
Utility functions for the LiveTrack assignment and tracking service.

Provides geographic calculations, lock sharding and address geocoding.
Includes Nominatim integration for resolving delivery addresses.
"""

from __future__ import annotations

import logging
import math
import numbers
import threading
import time
from collections.abc import Mapping
from typing import Any, Dict, Hashable, Iterable, List, Optional, Tuple

import requests

from . import config
from .errors import PreconditionFailed
from .models import CoordSource, GeoPoint

# Configure logging
logger = logging.getLogger(__name__)


def is_finite_number(value: Any) -> bool:
    """True for real, finite numbers (booleans are rejected)."""
    return (
        isinstance(value, numbers.Real)
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def is_valid_coordinate(lat: Any, lng: Any) -> bool:
    """
    Check that a latitude/longitude pair is usable.

    Args:
        lat: Latitude in decimal degrees, must lie in [-90, 90]
        lng: Longitude in decimal degrees, must lie in [-180, 180]

    Returns:
        True when both values are finite and in range
    """
    if not (is_finite_number(lat) and is_finite_number(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def haversine_distance(lat1: Any, lon1: Any, lat2: Any, lon2: Any) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Uses the Haversine formula on a mean Earth radius of 6371 km. Missing or
    non-finite inputs never raise: the distance is reported as infinite so
    that callers can rank "unknown" as the worst candidate.

    Args:
        lat1: Latitude of point 1 in decimal degrees
        lon1: Longitude of point 1 in decimal degrees
        lat2: Latitude of point 2 in decimal degrees
        lon2: Longitude of point 2 in decimal degrees

    Returns:
        Distance in kilometers, or math.inf for unusable input

    Example:
        >>> haversine_distance(13.08, 80.27, 13.09, 80.28)
        1.5305...  # ~1.5 km
    """
    if not all(is_finite_number(v) for v in (lat1, lon1, lat2, lon2)):
        return math.inf

    # Convert decimal degrees to radians
    lon1, lat1, lon2, lat2 = map(math.radians, [lon1, lat1, lon2, lat2])

    # Haversine formula
    dlon = lon2 - lon1
    dlat = lat2 - lat1
    a = math.sin(dlat / 2)**2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2)**2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))

    return c * config.EARTH_RADIUS_KM


# Short alias used throughout the codebase
distance_km = haversine_distance


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def lerp(start: float, end: float, fraction: float) -> float:
    """Linear interpolation between start and end."""
    return start + (end - start) * fraction


class ShardedLock:
    """
    A fixed set of mutexes selected by key hash.

    Mutations for different orders/partners usually land on different shards
    and never wait for each other.
    """

    def __init__(self, shards: int = None, reentrant: bool = False) -> None:
        if shards is None:
            shards = config.LOCK_SHARDS
        factory = threading.RLock if reentrant else threading.Lock
        self._locks: List[threading.Lock] = [factory() for _ in range(max(1, shards))]

    def __len__(self) -> int:
        return len(self._locks)

    def index_for(self, key: Hashable) -> int:
        return hash(key) % len(self._locks)

    def for_key(self, key: Hashable) -> threading.Lock:
        """Return the lock guarding `key`."""
        return self._locks[self.index_for(key)]


# =============================================================================
# GEOCODING
# =============================================================================

def build_address(parts: Any) -> str:
    """
    Flatten an address into a single geocoder query string.

    Args:
        parts: Either a ready string or a mapping with any of
            street, city, state, pincode, landmark

    Returns:
        Comma-separated address, or '' when nothing usable was given

    Raises:
        PreconditionFailed: If `parts` is neither a string nor a mapping
    """
    if not parts:
        return ""
    if isinstance(parts, str):
        return parts.strip()
    if not isinstance(parts, Mapping):
        raise PreconditionFailed(f"Unsupported address: {parts!r}")
    keys = ("street", "city", "state", "pincode", "landmark")
    return ", ".join(str(parts[k]).strip() for k in keys if parts.get(k))


def default_city_point() -> GeoPoint:
    """Last-resort coordinates for unresolvable addresses."""
    return GeoPoint(config.DEFAULT_CITY_LAT, config.DEFAULT_CITY_LNG, CoordSource.DEFAULT)


class Geocoder:
    """
    Address lookup against a Nominatim-compatible search endpoint.

    Successful lookups (including "no match") are cached in memory so that
    repeated orders to the same address cost a single request. Transport
    failures are not cached and simply yield None.
    """

    def __init__(
        self,
        url: str = None,
        session: Optional[requests.Session] = None,
        timeout: float = None,
        delay: float = None,
        cache_size: int = None,
    ) -> None:
        self.url = url or config.GEOCODER_URL
        self.session = session or requests.Session()
        self.timeout = config.GEOCODER_TIMEOUT_SECONDS if timeout is None else timeout
        self.delay = config.GEOCODER_DELAY_SECONDS if delay is None else delay
        self.cache_size = config.GEOCODE_CACHE_SIZE if cache_size is None else cache_size
        self._cache: Dict[str, Optional[Tuple[float, float]]] = {}
        self._lock = threading.Lock()

    def geocode(self, query: str) -> Optional[Tuple[float, float]]:
        """
        Resolve an address to coordinates.

        Args:
            query: Free-form address

        Returns:
            (lat, lng) of the best match, or None if unresolved
        """
        query = (query or "").strip()
        if not query:
            return None

        with self._lock:
            if query in self._cache:
                return self._cache[query]

        # Basic politeness delay to avoid getting blocked
        if self.delay > 0:
            time.sleep(self.delay)

        try:
            response = self.session.get(
                self.url,
                params={"format": "json", "q": query, "limit": 1},
                headers={"Accept-Language": "en", "User-Agent": config.GEOCODER_USER_AGENT},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout:
            logger.warning("Geocoder request timed out")
            return None
        except requests.exceptions.RequestException as e:
            logger.warning(f"Geocoder request failed: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Geocoder response parsing failed: {e}")
            return None

        result: Optional[Tuple[float, float]] = None
        try:
            if isinstance(data, list) and data:
                lat, lng = float(data[0]["lat"]), float(data[0]["lon"])
                if is_valid_coordinate(lat, lng):
                    result = (lat, lng)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Geocoder response parsing failed: {e}")
            return None

        self._remember(query, result)
        return result

    def _remember(self, query: str, result: Optional[Tuple[float, float]]) -> None:
        with self._lock:
            if len(self._cache) >= self.cache_size > 0:
                # Remove oldest entries (first 10% of cache)
                for key in list(self._cache.keys())[:max(1, self.cache_size // 10)]:
                    del self._cache[key]
            self._cache[query] = result

    def clear_cache(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache = {}
        return count


def resolve_point(
    explicit: Optional[Iterable[float]],
    address: Any = None,
    geocoder: Optional[Geocoder] = None,
) -> GeoPoint:
    """
    Pick coordinates for an order endpoint and tag their provenance.

    Preference order: client-supplied coordinates (STORED), a geocoded
    address (GEOCODED), then the default city point (DEFAULT).

    Args:
        explicit: (lat, lng) given by the client, or None
        address: Address string or mapping used for geocoding
        geocoder: Geocoder to use; None skips the lookup

    Returns:
        A GeoPoint, never None
    """
    if explicit is not None:
        lat, lng = explicit
        if is_valid_coordinate(lat, lng):
            return GeoPoint(float(lat), float(lng), CoordSource.STORED)
        logger.warning(f"Ignoring invalid client coordinates ({lat}, {lng})")

    if geocoder is not None:
        found = geocoder.geocode(build_address(address))
        if found is not None:
            return GeoPoint(found[0], found[1], CoordSource.GEOCODED)

    return default_city_point()
