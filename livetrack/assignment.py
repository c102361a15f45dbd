# livetrack/assignment.py
"""
Assignment Engine for the LiveTrack service.

Picks the delivery partner for a newly placed order:

1. Resolve the restaurant's coordinates (unknown -> every distance infinite,
   so the choice falls back to pure workload ordering).
2. Ask the Partner Registry for available partners within the search
   radius; if the geospatial path fails, scan all available partners.
3. Rank by (distance_km, active_orders).
4. Return the best partner id, or None when nobody is available.

The engine has no side effects. Binding the partner to the order and
incrementing its workload is the caller's job.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from . import config, utils
from .models import GeoPoint
from .registry import PartnerRegistry
from .scoring import ScoredCandidate, rank_candidates

logger = logging.getLogger(__name__)

RestaurantLocator = Callable[[str], Optional[GeoPoint]]


class AssignmentEngine:
    """
    Proximity-and-workload partner selection.

    Attributes:
        registry: Source of candidate partners
        locate_restaurant: Maps a restaurant id to its location (or None)
        search_radius_km: Radius of the geospatial prefilter
    """

    def __init__(
        self,
        registry: PartnerRegistry,
        locate_restaurant: RestaurantLocator,
        search_radius_km: float = None,
    ) -> None:
        self.registry = registry
        self.locate_restaurant = locate_restaurant
        self.search_radius_km = (
            config.SEARCH_RADIUS_KM if search_radius_km is None else search_radius_km
        )

    def assign(self, restaurant_id: Optional[str]) -> Optional[str]:
        """
        Select the best partner for an order from `restaurant_id`.

        Returns:
            The chosen partner id, or None if no partner is available
        """
        origin = self.locate_restaurant(restaurant_id) if restaurant_id else None
        ranked = self.rank(origin)
        if not ranked:
            logger.info(f"No available partner for restaurant {restaurant_id}")
            return None

        best = ranked[0]
        logger.info(
            f"Restaurant {restaurant_id}: picked {best.partner_id} "
            f"(distance={best.distance_km:.2f}km, active={best.active_orders}) "
            f"out of {len(ranked)} candidates"
        )
        return best.partner_id

    def rank(self, origin: Optional[GeoPoint]) -> List[ScoredCandidate]:
        """
        All current candidates for `origin`, best first.

        Args:
            origin: Restaurant location; None or invalid means unknown

        Raises:
            DegradedLookup: Only from a registry running with strict_geo_lookup
        """
        if origin is not None and not utils.is_valid_coordinate(origin.lat, origin.lng):
            origin = None

        if origin is None:
            candidates = self.registry.available()
        else:
            # Falls back to a full scan by itself unless the registry is strict
            candidates = self.registry.find_candidates(
                origin.lat, origin.lng, self.search_radius_km
            )

        return rank_candidates(candidates, origin)
