# livetrack/scoring.py
"""
Candidate scoring for partner assignment.

Each available partner is scored by a tuple:

    (distance to the restaurant in km, active orders)

Lower is better. Distance dominates; workload only breaks ties, so a
partner next door with two orders beats an idle partner across town.
Unknown positions score an infinite distance and sink to the bottom.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from . import utils
from .models import DeliveryPartner, GeoPoint


@dataclass(frozen=True)
class ScoredCandidate:
    """
    A partner together with its assignment score.

    Attributes:
        partner: Snapshot of the partner at scoring time
        distance_km: Distance to the origin (math.inf if unknown)
        active_orders: Workload at scoring time
    """
    partner: DeliveryPartner
    distance_km: float
    active_orders: int

    @property
    def partner_id(self) -> str:
        return self.partner.partner_id

    @property
    def sort_key(self) -> Tuple[float, int, str]:
        """Ordering key; partner id makes equal scores deterministic."""
        return (self.distance_km, self.active_orders, self.partner.partner_id)

    def to_dict(self) -> dict:
        return {
            "partnerId": self.partner_id,
            "name": self.partner.name,
            "distanceKm": None if math.isinf(self.distance_km) else round(self.distance_km, 3),
            "activeOrders": self.active_orders,
        }


def score_candidate(partner: DeliveryPartner, origin: Optional[GeoPoint]) -> ScoredCandidate:
    """
    Score one partner against the restaurant location.

    Args:
        partner: Candidate partner
        origin: Restaurant location, or None if unknown

    Returns:
        The scored candidate
    """
    if origin is None or partner.location is None:
        distance = math.inf
    else:
        distance = utils.distance_km(
            origin.lat, origin.lng,
            partner.location.lat, partner.location.lng
        )
    return ScoredCandidate(
        partner=partner,
        distance_km=distance,
        active_orders=max(0, partner.active_orders),
    )


def rank_candidates(
    partners: Iterable[DeliveryPartner],
    origin: Optional[GeoPoint]
) -> List[ScoredCandidate]:
    """Score and sort candidates, best first."""
    scored = [score_candidate(p, origin) for p in partners]
    scored.sort(key=lambda c: c.sort_key)
    return scored
