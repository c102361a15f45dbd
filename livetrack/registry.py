# livetrack/registry.py
"""
Partner Registry for the LiveTrack assignment and tracking service.

Holds every delivery partner's availability, workload and last known
location, and answers "who is available near this point?".

Writers are limited to:
1. The partner's own client (availability and location reports)
2. The assignment flow (workload increments/decrements)

Proximity queries go through a coarse grid index over last-known locations
followed by an exact haversine filter. When the index is unavailable the
registry degrades to returning every available partner.
"""

from __future__ import annotations

import csv
import logging
import math
import os
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Set, Tuple

from . import config, utils
from .errors import DegradedLookup, PreconditionFailed
from .models import DeliveryPartner, Location, utc_now

logger = logging.getLogger(__name__)

# Kilometers per degree of latitude
KM_PER_DEGREE: float = 111.32

Cell = Tuple[int, int]


class PartnerRegistry:
    """
    Thread-safe store of delivery partners.

    Partner records are sharded across `config.LOCK_SHARDS` mutexes keyed by
    partner id. All read methods return copies, so callers can never mutate
    registry state behind its back.

    Attributes:
        strict_geo_lookup: Raise DegradedLookup instead of falling back
            to an unfiltered scan
    """

    def __init__(
        self,
        use_geo_index: bool = True,
        cell_degrees: float = None,
        shards: int = None,
        strict_geo_lookup: bool = None,
        clock: Callable = utc_now,
    ) -> None:
        self.cell_degrees: float = cell_degrees or config.GEO_CELL_DEGREES
        self.strict_geo_lookup: bool = (
            config.STRICT_GEO_LOOKUP if strict_geo_lookup is None else strict_geo_lookup
        )
        self._clock = clock
        self._partners: Dict[str, DeliveryPartner] = {}
        self._locks = utils.ShardedLock(shards)

        # Grid index: cell -> partner ids, plus the reverse mapping
        self._index_lock = threading.Lock()
        self._index: Dict[Cell, Set[str]] = {}
        self._cells: Dict[str, Cell] = {}
        self._index_enabled: bool = use_geo_index

    def __len__(self) -> int:
        return len(self._partners)

    def __contains__(self, partner_id: str) -> bool:
        return partner_id in self._partners

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _get_or_create(self, partner_id: str) -> DeliveryPartner:
        """Caller must hold the partner's shard lock."""
        partner = self._partners.get(partner_id)
        if partner is None:
            partner = DeliveryPartner(partner_id=partner_id)
            self._partners[partner_id] = partner
        return partner

    def register(
        self,
        partner_id: str,
        name: str = "",
        phone: str = "",
        vehicle_type: str = "motorbike",
        vehicle_id: str = "",
        is_available: bool = False,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> DeliveryPartner:
        """
        Create or update a partner's profile (partner signup).

        Workload is left untouched for existing partners.

        Returns:
            A copy of the stored record
        """
        if not partner_id:
            raise PreconditionFailed("partner_id is required")
        with self._locks.for_key(partner_id):
            partner = self._get_or_create(partner_id)
            partner.name = name
            partner.phone = phone
            partner.vehicle_type = vehicle_type
            partner.vehicle_id = vehicle_id
            partner.is_available = bool(is_available)
            snapshot = replace(partner)

        if lat is not None or lng is not None:
            self.report_location(partner_id, lat, lng)
            return self.get(partner_id)
        return snapshot

    def set_availability(self, partner_id: str, is_available: bool) -> DeliveryPartner:
        """
        Mark a partner online or offline. Idempotent.

        Creates the record on first use.
        """
        with self._locks.for_key(partner_id):
            partner = self._get_or_create(partner_id)
            if partner.is_available != bool(is_available):
                logger.info(f"Partner {partner_id} is now {'available' if is_available else 'offline'}")
            partner.is_available = bool(is_available)
            return replace(partner)

    def report_location(self, partner_id: str, lat: float, lng: float) -> Location:
        """
        Upsert the partner's last known location with the current time.

        Raises:
            PreconditionFailed: If the coordinates are not finite and in range
        """
        if not utils.is_valid_coordinate(lat, lng):
            raise PreconditionFailed(f"Invalid coordinates for partner {partner_id}: ({lat}, {lng})")

        location = Location(float(lat), float(lng), self._clock())
        with self._locks.for_key(partner_id):
            partner = self._get_or_create(partner_id)
            partner.location = location
            self._reindex(partner_id, location)
        return location

    def increment_workload(self, partner_id: str, delta: int) -> Optional[int]:
        """
        Adjust a partner's active order count, clamped at zero.

        Args:
            partner_id: Partner to adjust
            delta: +1 on assignment, -1 on a terminal order state

        Returns:
            The new count, or None if the partner is unknown
        """
        with self._locks.for_key(partner_id):
            partner = self._partners.get(partner_id)
            if partner is None:
                logger.warning(f"Workload change for unknown partner {partner_id}")
                return None
            partner.active_orders = max(0, partner.active_orders + int(delta))
            return partner.active_orders

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, partner_id: str) -> Optional[DeliveryPartner]:
        partner = self._partners.get(partner_id)
        if partner is None:
            return None
        with self._locks.for_key(partner_id):
            return replace(partner)

    def all(self) -> List[DeliveryPartner]:
        """Copies of every partner, sorted by id."""
        result = []
        for partner_id in sorted(list(self._partners.keys())):
            partner = self.get(partner_id)
            if partner is not None:
                result.append(partner)
        return result

    def available(self) -> List[DeliveryPartner]:
        """Every partner currently marked available (unfiltered scan)."""
        return [p for p in self.all() if p.is_available]

    def find_candidates(
        self,
        origin_lat: Optional[float],
        origin_lng: Optional[float],
        max_radius_km: float = None,
    ) -> List[DeliveryPartner]:
        """
        Available partners within `max_radius_km` of the origin.

        Graceful degradation: an unusable origin or an unavailable index
        returns all available partners rather than an empty list.

        Args:
            origin_lat: Latitude of the search center (restaurant)
            origin_lng: Longitude of the search center
            max_radius_km: Search radius (default: config.SEARCH_RADIUS_KM)

        Returns:
            Copies of the matching partners

        Raises:
            DegradedLookup: Only when strict_geo_lookup is enabled
        """
        if max_radius_km is None:
            max_radius_km = config.SEARCH_RADIUS_KM

        if not utils.is_valid_coordinate(origin_lat, origin_lng):
            logger.debug("No usable origin; scanning all available partners")
            return self.available()

        try:
            return self.near(origin_lat, origin_lng, max_radius_km)
        except DegradedLookup as e:
            if self.strict_geo_lookup:
                raise
            logger.warning(f"Geospatial lookup unavailable ({e}); falling back to full scan")
            return self.available()

    def near(self, lat: float, lng: float, radius_km: float) -> List[DeliveryPartner]:
        """
        Index-backed proximity query, without any fallback.

        Raises:
            DegradedLookup: If the index is disabled
        """
        if not self._index_enabled:
            raise DegradedLookup("partner location index is not available")

        partner_ids = self._ids_near(lat, lng, radius_km)
        result: List[DeliveryPartner] = []
        for partner_id in partner_ids:
            partner = self.get(partner_id)
            if partner is None or not partner.is_available or partner.location is None:
                continue
            dist = utils.distance_km(lat, lng, partner.location.lat, partner.location.lng)
            if dist <= radius_km:
                result.append(partner)
        return result

    # -------------------------------------------------------------------------
    # Grid index
    # -------------------------------------------------------------------------

    @property
    def index_available(self) -> bool:
        return self._index_enabled

    def disable_index(self) -> None:
        """Simulate an index outage; proximity queries degrade to full scans."""
        with self._index_lock:
            self._index_enabled = False
            self._index.clear()
            self._cells.clear()

    def enable_index(self) -> None:
        """Rebuild the index from the stored locations."""
        with self._index_lock:
            self._index_enabled = True
        for partner in self.all():
            if partner.location is not None:
                with self._locks.for_key(partner.partner_id):
                    self._reindex(partner.partner_id, partner.location)

    def _cell_for(self, lat: float, lng: float) -> Cell:
        return (math.floor(lat / self.cell_degrees), math.floor(lng / self.cell_degrees))

    def _reindex(self, partner_id: str, location: Location) -> None:
        """Move a partner to the cell of its new location."""
        cell = self._cell_for(location.lat, location.lng)
        with self._index_lock:
            if not self._index_enabled:
                return
            previous = self._cells.get(partner_id)
            if previous == cell:
                return
            if previous is not None:
                members = self._index.get(previous)
                if members is not None:
                    members.discard(partner_id)
                    if not members:
                        del self._index[previous]
            self._index.setdefault(cell, set()).add(partner_id)
            self._cells[partner_id] = cell

    def _ids_near(self, lat: float, lng: float, radius_km: float) -> Set[str]:
        """Candidate ids from every cell overlapping the radius' bounding box."""
        dlat = radius_km / KM_PER_DEGREE
        cos_lat = math.cos(math.radians(lat))
        dlng = radius_km / (KM_PER_DEGREE * cos_lat) if cos_lat > 1e-9 else 360.0

        lat_lo = math.floor(max(-90.0, lat - dlat) / self.cell_degrees)
        lat_hi = math.floor(min(90.0, lat + dlat) / self.cell_degrees)
        lng_lo = math.floor((lng - dlng) / self.cell_degrees)
        lng_hi = math.floor((lng + dlng) / self.cell_degrees)
        cell_count = (lat_hi - lat_lo + 1) * (lng_hi - lng_lo + 1)

        with self._index_lock:
            if dlng >= 180.0 or cell_count > config.MAX_INDEX_CELLS:
                # Too wide for cell enumeration; every indexed partner is a candidate
                return set(self._cells.keys())

            ids: Set[str] = set()
            for lat_cell in range(lat_lo, lat_hi + 1):
                for raw_lng_cell in range(lng_lo, lng_hi + 1):
                    # Wrap longitude cells across the antimeridian
                    wrapped = ((raw_lng_cell + 0.5) * self.cell_degrees + 180.0) % 360.0 - 180.0
                    members = self._index.get((lat_cell, math.floor(wrapped / self.cell_degrees)))
                    if members:
                        ids.update(members)
            return ids

    # -------------------------------------------------------------------------
    # Seeding
    # -------------------------------------------------------------------------

    def load_csv(self, partner_file: str) -> int:
        """
        Seed the registry from a CSV file.

        Expected columns: partner_id, name, phone, vehicle_type, vehicle_id,
        is_available, lat, lng (lat/lng may be blank).

        Returns:
            Number of partners loaded

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If a row is malformed
        """
        if not os.path.exists(partner_file):
            raise FileNotFoundError(f"Partner file not found: {partner_file}")

        count = 0
        with open(partner_file, "r", newline="") as f:
            reader = csv.DictReader(f)
            for row in reader:
                try:
                    lat_raw = (row.get("lat") or "").strip()
                    lng_raw = (row.get("lng") or "").strip()
                    self.register(
                        partner_id=row["partner_id"],
                        name=row.get("name", ""),
                        phone=row.get("phone", ""),
                        vehicle_type=row.get("vehicle_type") or "motorbike",
                        vehicle_id=row.get("vehicle_id", ""),
                        is_available=(row.get("is_available", "").strip().lower() in ("1", "true", "yes")),
                        lat=float(lat_raw) if lat_raw else None,
                        lng=float(lng_raw) if lng_raw else None,
                    )
                except (KeyError, ValueError, PreconditionFailed) as e:
                    raise ValueError(f"Invalid partner data in {partner_file}: {e}")
                count += 1
        logger.info(f"Loaded {count} partners from {partner_file}")
        return count
