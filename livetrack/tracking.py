# livetrack/tracking.py
"""
Tracking Query Facade: the synchronous read path for tracking pages.

Clients call it before attaching to the live stream. A missing order is
reported as None. A found order that has no position yet is a snapshot
whose `position` is None.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .broadcaster import Broadcaster
from .models import DeliveryPartner, Order, PositionSample, Restaurant, isoformat
from .orders import OrderBook
from .registry import PartnerRegistry


@dataclass(frozen=True)
class TrackingSnapshot:
    order: Order
    restaurant: Optional[Restaurant]
    partner: Optional[DeliveryPartner]
    position: Optional[PositionSample]

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape served to tracking pages."""
        return {
            "order": self.order.summary(),
            "restaurant": self.restaurant.summary() if self.restaurant else None,
            "driver": self.partner.summary() if self.partner else None,
            "location": {
                "lat": self.position.lat,
                "lng": self.position.lng,
                "updatedAt": isoformat(self.position.timestamp),
                "driverId": self.position.source_partner_id,
            } if self.position else None,
        }


class TrackingQuery:
    """Assembles snapshots from the order book, registry and position store."""

    def __init__(self, orders: OrderBook, registry: PartnerRegistry, broadcaster: Broadcaster) -> None:
        self.orders = orders
        self.registry = registry
        self.broadcaster = broadcaster

    def get_snapshot(self, identifier: Optional[str]) -> Optional[TrackingSnapshot]:
        """
        Snapshot for a public order code or an internal order id.

        Returns:
            The snapshot, or None if neither identifier form matches an order
        """
        order = self.orders.find(identifier)
        if order is None:
            return None

        partner = None
        if order.assigned_partner_id:
            partner = self.registry.get(order.assigned_partner_id)

        return TrackingSnapshot(
            order=order,
            restaurant=self.orders.get_restaurant(order.restaurant_id),
            partner=partner,
            position=self.broadcaster.latest(order.order_id),
        )
